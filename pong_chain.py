"""Blockchain collaborator: contract reads, signed writes and confirmations.

One ``ChainClient`` is constructed per process and injected into the
challenge and settlement components.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from x402.mechanisms.evm.constants import TX_STATUS_SUCCESS
from x402.mechanisms.evm.types import TransactionReceipt

from logging_utils import get_logger, short_hex

logger = get_logger("pong_chain")

T = TypeVar("T")

# transferFrom cannot be estimated before the permit that funds its allowance lands.
TRANSFER_FROM_GAS_LIMIT = 120_000

USD1_ABI: list[dict[str, Any]] = [
    {
        "name": "name",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "version",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "DOMAIN_SEPARATOR",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "name": "eip712Domain",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "fields", "type": "bytes1"},
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
            {"name": "salt", "type": "bytes32"},
            {"name": "extensions", "type": "uint256[]"},
        ],
    },
    {
        "name": "nonces",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "authorizationState",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "permit",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "transferFrom",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transferWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
]

_TRANSIENT_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError)


def _hex32(value: str | bytes) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class ChainClient:
    """Async web3 client bound to one token contract and one facilitator key."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        token_address: str,
        chain_id: int,
        *,
        request_timeout: float = 30,
        receipt_timeout: float = 180,
        read_retries: int = 2,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.account: LocalAccount = Account.from_key(private_key)
        self.token_address = Web3.to_checksum_address(token_address)
        self.chain_id = chain_id
        self.request_timeout = request_timeout
        self.receipt_timeout = receipt_timeout
        self.read_retries = read_retries
        self.token = self.w3.eth.contract(address=self.token_address, abi=USD1_ABI)
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: int | None = None

    @classmethod
    def from_settings(cls, settings) -> "ChainClient":
        return cls(
            settings.rpc_url,
            settings.facilitator_private_key,
            settings.token_address,
            settings.chain_id,
            request_timeout=settings.rpc_timeout_seconds,
            receipt_timeout=settings.receipt_timeout_seconds,
            read_retries=settings.rpc_read_retries,
        )

    @property
    def address(self) -> str:
        return self.account.address

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def _read(self, label: str, factory: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(factory(), timeout=self.request_timeout)
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self.read_retries:
                    raise
                attempt += 1
                logger.warning(
                    "RPC read %s failed (%s); retry %d/%d",
                    label,
                    exc,
                    attempt,
                    self.read_retries,
                )
                await asyncio.sleep(0.25 * attempt)

    async def _write(self, factory: Callable[[], Awaitable[T]]) -> T:
        return await asyncio.wait_for(factory(), timeout=self.request_timeout)

    # Reads

    async def read_eip712_domain(self) -> tuple:
        return tuple(
            await self._read("eip712Domain", self.token.functions.eip712Domain().call)
        )

    async def read_name(self) -> str:
        return await self._read("name", self.token.functions.name().call)

    async def read_version(self) -> str:
        return await self._read("version", self.token.functions.version().call)

    async def read_domain_separator(self) -> bytes:
        return bytes(
            await self._read(
                "DOMAIN_SEPARATOR", self.token.functions.DOMAIN_SEPARATOR().call
            )
        )

    async def read_nonce(self, owner: str) -> int:
        call = self.token.functions.nonces(Web3.to_checksum_address(owner)).call
        return int(await self._read("nonces", call))

    async def read_authorization_state(self, authorizer: str, nonce: str | bytes) -> bool:
        call = self.token.functions.authorizationState(
            Web3.to_checksum_address(authorizer), _hex32(nonce)
        ).call
        return bool(await self._read("authorizationState", call))

    async def get_code(self, address: str) -> bytes:
        return bytes(
            await self._read(
                "eth_getCode",
                lambda: self.w3.eth.get_code(Web3.to_checksum_address(address)),
            )
        )

    async def get_balance(self, address: str) -> int:
        return int(
            await self._read(
                "eth_getBalance",
                lambda: self.w3.eth.get_balance(Web3.to_checksum_address(address)),
            )
        )

    # Sender nonces

    async def reserve_nonces(self, count: int = 1) -> list[int]:
        """Hand out ``count`` consecutive sender nonces, never reusing one."""
        async with self._nonce_lock:
            pending = await self._read(
                "eth_getTransactionCount",
                lambda: self.w3.eth.get_transaction_count(self.address, "pending"),
            )
            start = max(int(pending), self._next_nonce or 0)
            self._next_nonce = start + count
            return list(range(start, start + count))

    async def release_nonce(self, nonce: int) -> None:
        """Return an unsent nonce; only the most recently issued one can be reclaimed."""
        async with self._nonce_lock:
            if self._next_nonce == nonce + 1:
                self._next_nonce = nonce

    # Writes

    async def _fee_params(self) -> dict[str, int]:
        latest = await self._read("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            try:
                priority = await self._read(
                    "eth_maxPriorityFeePerGas", lambda: self.w3.eth.max_priority_fee
                )
            except Exception:
                priority = Web3.to_wei(1, "gwei")
            return {
                "type": 2,
                "maxFeePerGas": int(base_fee) * 2 + int(priority),
                "maxPriorityFeePerGas": int(priority),
            }
        gas_price = await self._read("eth_gasPrice", lambda: self.w3.eth.gas_price)
        return {"gasPrice": int(gas_price)}

    async def _send(self, label: str, call, *, nonce: int | None = None, gas: int | None = None) -> str:
        if nonce is None:
            (nonce,) = await self.reserve_nonces(1)
        params: dict[str, Any] = {
            "from": self.address,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        if gas is not None:
            params["gas"] = gas
        try:
            params.update(await self._fee_params())
            tx = await self._write(lambda: call.build_transaction(params))
            if gas is None:
                gas_est = await self._write(lambda: self.w3.eth.estimate_gas(tx))
                tx["gas"] = int(gas_est * 12 // 10)

            signed = self.account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
            tx_hash = await self._write(lambda: self.w3.eth.send_raw_transaction(raw))
        except Exception:
            await self.release_nonce(nonce)
            raise
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("%s sent: %s (sender nonce %d)", label, tx_hex, nonce)
        return tx_hex

    async def send_permit(
        self,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        v: int,
        r: str,
        s: str,
        *,
        nonce: int | None = None,
    ) -> str:
        logger.debug(
            "permit(owner=%s, spender=%s, value=%d, deadline=%d, v=%d, r=%s, s=%s)",
            owner,
            spender,
            value,
            deadline,
            v,
            short_hex(r),
            short_hex(s),
        )
        call = self.token.functions.permit(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender),
            int(value),
            int(deadline),
            int(v),
            _hex32(r),
            _hex32(s),
        )
        return await self._send("permit()", call, nonce=nonce)

    async def send_transfer_from(
        self,
        owner: str,
        to: str,
        value: int,
        *,
        nonce: int | None = None,
        gas: int | None = None,
    ) -> str:
        call = self.token.functions.transferFrom(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(to),
            int(value),
        )
        return await self._send("transferFrom()", call, nonce=nonce, gas=gas)

    async def send_transfer_with_authorization(
        self,
        from_address: str,
        to: str,
        value: int,
        valid_after: int,
        valid_before: int,
        authorization_nonce: str,
        v: int,
        r: str,
        s: str,
        *,
        nonce: int | None = None,
    ) -> str:
        call = self.token.functions.transferWithAuthorization(
            Web3.to_checksum_address(from_address),
            Web3.to_checksum_address(to),
            int(value),
            int(valid_after),
            int(valid_before),
            _hex32(authorization_nonce),
            int(v),
            _hex32(r),
            _hex32(s),
        )
        return await self._send("transferWithAuthorization()", call, nonce=nonce)

    async def wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout
        )
        return TransactionReceipt(
            status=int(receipt.get("status", 0)),
            block_number=int(receipt.get("blockNumber") or 0),
            tx_hash=tx_hash,
        )


def receipt_succeeded(receipt: TransactionReceipt) -> bool:
    return receipt.status == TX_STATUS_SUCCESS
