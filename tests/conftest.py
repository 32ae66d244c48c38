"""Shared fixtures: an in-memory token chain, settings and a controllable clock."""

import itertools

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError
from x402.mechanisms.evm.types import TransactionReceipt

from pong_challenge import ChallengeBuilder, DomainResolver
from pong_config import Settings
from pong_errors import _selector
from pong_settlement import SettlementExecutor, SettlementValidator
from pong_tiers import build_tiers
from pong_typed_data import (
    PERMIT,
    TRANSFER_WITH_AUTHORIZATION,
    SignatureParts,
    TokenDomain,
    recover_signer,
)

NOW = 1_760_000_000
TOKEN = Web3.to_checksum_address("0x8d0d000ee44948fc98c9b98a4fa4921476f08b0d")
TOKEN_NAME = "World Liberty Financial USD"


class FrozenClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int) -> None:
        self.now += seconds


def _revert(signature: str, message: str) -> ContractLogicError:
    return ContractLogicError(message=f"execution reverted: {message}", data=_selector(signature))


class FakeChain:
    """Token contract plus facilitator account, held in memory.

    Mirrors the contract's own checks (permit signature and nonce,
    allowance, authorization state) so a bad authorization that slips
    past validation still fails the way it would on chain.
    """

    def __init__(self, facilitator_key: str, token_address: str = TOKEN, chain_id: int = 56):
        self.account = Account.from_key(facilitator_key)
        self.token_address = Web3.to_checksum_address(token_address)
        self.chain_id = chain_id
        self.name = TOKEN_NAME
        self.version = "1"
        self.supports_eip712_domain = True
        self.supports_version = True
        self.failing_reads: set[str] = set()

        self.nonces: dict[str, int] = {}
        self.used_authorizations: set[tuple[str, bytes]] = set()
        self.allowances: dict[tuple[str, str], int] = {}
        self.balances: dict[str, int] = {}
        self.native_balances: dict[str, int] = {self.account.address: 10**17}
        self.code = b"\x60\x80"

        self.writes: list[tuple[str, dict]] = []
        self.receipts: dict[str, int] = {}
        self.failing_receipts: set[str] = set()
        self.send_errors: dict[str, BaseException] = {}
        self.sender_nonce = 0
        self.closed = False
        self._hashes = itertools.count(1)

    # Collaborator surface

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def domain(self) -> TokenDomain:
        return TokenDomain(self.name, self.version, self.chain_id, self.token_address)

    def _check_read(self, label: str) -> None:
        if label in self.failing_reads:
            raise ConnectionError(f"{label} unavailable")

    async def close(self) -> None:
        self.closed = True

    async def read_eip712_domain(self) -> tuple:
        self._check_read("eip712Domain")
        if not self.supports_eip712_domain:
            raise _revert("NotImplemented()", "eip712Domain")
        return (b"\x0f", self.name, self.version, self.chain_id, self.token_address, b"\x00" * 32, [])

    async def read_name(self) -> str:
        self._check_read("name")
        return self.name

    async def read_version(self) -> str:
        self._check_read("version")
        if not self.supports_version:
            raise _revert("NotImplemented()", "version")
        return self.version

    async def read_domain_separator(self) -> bytes:
        self._check_read("DOMAIN_SEPARATOR")
        return self.domain.separator()

    async def read_nonce(self, owner: str) -> int:
        self._check_read("nonces")
        return self.nonces.get(Web3.to_checksum_address(owner), 0)

    async def read_authorization_state(self, authorizer: str, nonce) -> bool:
        self._check_read("authorizationState")
        key = (Web3.to_checksum_address(authorizer), _as_bytes(nonce))
        return key in self.used_authorizations

    async def get_code(self, address: str) -> bytes:
        self._check_read("eth_getCode")
        return self.code

    async def get_balance(self, address: str) -> int:
        self._check_read("eth_getBalance")
        return self.native_balances.get(Web3.to_checksum_address(address), 0)

    async def reserve_nonces(self, count: int = 1) -> list[int]:
        start = self.sender_nonce
        self.sender_nonce += count
        return list(range(start, start + count))

    async def release_nonce(self, nonce: int) -> None:
        if self.sender_nonce == nonce + 1:
            self.sender_nonce = nonce

    def _record(self, method: str, **kwargs) -> str:
        if method in self.send_errors:
            raise self.send_errors[method]
        self.writes.append((method, kwargs))
        tx_hash = Web3.to_hex(Web3.keccak(text=f"{method}:{next(self._hashes)}"))
        self.receipts[tx_hash] = 0 if method in self.failing_receipts else 1
        return tx_hash

    async def send_permit(self, owner, spender, value, deadline, v, r, s, *, nonce=None):
        tx_hash = self._record(
            "permit", owner=owner, spender=spender, value=value, deadline=deadline, nonce=nonce
        )
        if self.receipts[tx_hash] == 0:
            return tx_hash
        owner = Web3.to_checksum_address(owner)
        message = {
            "owner": owner,
            "spender": spender,
            "value": value,
            "nonce": self.nonces.get(owner, 0),
            "deadline": deadline,
        }
        signer = recover_signer(self.domain, PERMIT, message, SignatureParts(v, r, s))
        if signer != owner:
            raise _revert("ERC2612InvalidSigner(address,address)", "invalid signer")
        self.nonces[owner] = self.nonces.get(owner, 0) + 1
        self.allowances[(owner, Web3.to_checksum_address(spender))] = int(value)
        return tx_hash

    async def send_transfer_from(self, owner, to, value, *, nonce=None, gas=None):
        tx_hash = self._record("transferFrom", owner=owner, to=to, value=value, nonce=nonce, gas=gas)
        if self.receipts[tx_hash] == 0:
            return tx_hash
        owner = Web3.to_checksum_address(owner)
        key = (owner, self.address)
        if self.allowances.get(key, 0) < value:
            raise _revert(
                "ERC20InsufficientAllowance(address,uint256,uint256)", "insufficient allowance"
            )
        self.allowances[key] -= value
        self._move(owner, to, value)
        return tx_hash

    async def send_transfer_with_authorization(
        self, from_address, to, value, valid_after, valid_before, authorization_nonce, v, r, s,
        *, nonce=None,
    ):
        tx_hash = self._record(
            "transferWithAuthorization",
            from_address=from_address,
            to=to,
            value=value,
            authorization_nonce=authorization_nonce,
            nonce=nonce,
        )
        if self.receipts[tx_hash] == 0:
            return tx_hash
        key = (Web3.to_checksum_address(from_address), _as_bytes(authorization_nonce))
        if key in self.used_authorizations:
            raise ContractLogicError(message="execution reverted: FiatTokenV2: authorization is used or canceled")
        message = {
            "from": from_address,
            "to": to,
            "value": value,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": key[1],
        }
        signer = recover_signer(
            self.domain, TRANSFER_WITH_AUTHORIZATION, message, SignatureParts(v, r, s)
        )
        if signer != key[0]:
            raise ContractLogicError(message="execution reverted: FiatTokenV2: invalid signature")
        self.used_authorizations.add(key)
        self._move(key[0], to, value)
        return tx_hash

    def _move(self, source: str, to: str, value: int) -> None:
        to = Web3.to_checksum_address(to)
        if self.balances.get(source, 0) < value:
            raise _revert(
                "ERC20InsufficientBalance(address,uint256,uint256)", "insufficient balance"
            )
        self.balances[source] -= value
        self.balances[to] = self.balances.get(to, 0) + value

    async def wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        return TransactionReceipt(status=self.receipts[tx_hash], block_number=100, tx_hash=tx_hash)

    # Helpers for tests

    def method_calls(self) -> list[str]:
        return [method for method, _ in self.writes]


def _as_bytes(nonce) -> bytes:
    if isinstance(nonce, (bytes, bytearray)):
        return bytes(nonce)
    return bytes.fromhex(nonce.removeprefix("0x"))


@pytest.fixture
def facilitator():
    return Account.create()


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def treasury():
    return Account.create().address


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def make_settings(facilitator, treasury):
    def _make(**overrides) -> Settings:
        values = {
            "facilitator_private_key": Web3.to_hex(facilitator.key),
            "treasury": treasury,
            "token_address": TOKEN,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def chain(facilitator, payer):
    fake = FakeChain(Web3.to_hex(facilitator.key))
    fake.balances[payer.address] = 100 * 10**18
    return fake


@pytest.fixture
def tiers(settings):
    return build_tiers(settings.tier_amounts, settings.pong_per_usd1, settings.token_decimals)


@pytest.fixture
def domains(chain, settings):
    return DomainResolver(chain, settings)


@pytest.fixture
def builder(chain, settings, domains, clock):
    return ChallengeBuilder(chain, settings, domains, clock=clock)


@pytest.fixture
def validator(chain, settings, domains, tiers, clock):
    return SettlementValidator(chain, settings, domains, tiers, clock=clock)


@pytest.fixture
def executor(chain, settings):
    return SettlementExecutor(chain, settings)
