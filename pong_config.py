"""Environment-driven settings for the PONG faucet.

Settings are built once per process by ``Settings.from_env()`` and passed
into every component. Security-relevant values (facilitator key, treasury)
are never defaulted.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from pong_errors import ConfigurationError

DEFAULT_RPC_URL = "https://bsc-dataseed.binance.org"
# Official USD1 deployment on BNB Smart Chain.
DEFAULT_USD1_TOKEN = "0x8d0D000Ee44948FC98c9B98A4FA4921476f08B0d"
DEFAULT_TOKEN_NAME = "World Liberty Financial USD"
DEFAULT_TOKEN_VERSION = "1"


class SignaturePolicy(str, Enum):
    RECOVER = "recover"
    VERIFY = "verify"
    CONTRACT = "contract"


class ExecutionStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {name}: must be an integer") from exc


def _env_tiers(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {name}: expected comma-separated integers") from exc


def _env_enum(name: str, enum_cls, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {name}: expected one of {allowed}") from exc


def _to_checksum(raw: str, field_name: str) -> str:
    if not isinstance(raw, str) or not Web3.is_address(raw):
        raise ConfigurationError(f"Invalid {field_name}: {raw!r}")
    return Web3.to_checksum_address(raw)


@dataclass(frozen=True)
class Settings:
    facilitator_private_key: str = field(repr=False)
    treasury: str
    token_address: str = DEFAULT_USD1_TOKEN
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = 56
    network: str = "bsc"
    token_decimals: int = 18
    token_name_fallback: str = DEFAULT_TOKEN_NAME
    token_version_fallback: str = DEFAULT_TOKEN_VERSION
    challenge_minutes: int = 15
    pong_per_usd1: int = 4000
    tier_amounts: tuple[int, ...] = (1, 5, 10)
    default_eip3009_tier: int = 10
    signature_policy: SignaturePolicy = SignaturePolicy.RECOVER
    settlement_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL
    rpc_timeout_seconds: int = 30
    receipt_timeout_seconds: int = 180
    rpc_read_retries: int = 2
    max_payment_header_bytes: int = 16384

    def __post_init__(self) -> None:
        if not self.facilitator_private_key:
            raise ConfigurationError("FACILITATOR_PK env not set")
        try:
            Account.from_key(self.facilitator_private_key)
        except Exception as exc:
            raise ConfigurationError("Invalid FACILITATOR_PK") from exc

        if not self.treasury:
            raise ConfigurationError("TREASURY env not set")
        object.__setattr__(self, "treasury", _to_checksum(self.treasury, "TREASURY"))
        object.__setattr__(
            self, "token_address", _to_checksum(self.token_address, "USD1_TOKEN")
        )

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ("http", "https"):
            raise ConfigurationError(
                f"Invalid RPC_URL scheme: {parsed.scheme!r}. Expected http or https"
            )

        if self.challenge_minutes <= 0:
            raise ConfigurationError("CHALLENGE_MINUTES must be > 0")
        if self.pong_per_usd1 <= 0:
            raise ConfigurationError("PONG_PER_USD1 must be > 0")
        if not self.tier_amounts or any(amount <= 0 for amount in self.tier_amounts):
            raise ConfigurationError("PONG_TIERS must list positive amounts")
        if len(set(self.tier_amounts)) != len(self.tier_amounts):
            raise ConfigurationError("PONG_TIERS must not repeat amounts")
        if self.default_eip3009_tier not in self.tier_amounts:
            raise ConfigurationError("DEFAULT_EIP3009_TIER must be one of PONG_TIERS")
        if self.rpc_timeout_seconds <= 0 or self.receipt_timeout_seconds <= 0:
            raise ConfigurationError("RPC timeouts must be > 0")
        if self.rpc_read_retries < 0:
            raise ConfigurationError("RPC_READ_RETRIES must be >= 0")

    @property
    def facilitator_address(self) -> str:
        return Account.from_key(self.facilitator_private_key).address

    @property
    def challenge_seconds(self) -> int:
        return self.challenge_minutes * 60

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            facilitator_private_key=os.getenv("FACILITATOR_PK", "").strip(),
            treasury=os.getenv("TREASURY", "").strip(),
            token_address=os.getenv("USD1_TOKEN", DEFAULT_USD1_TOKEN).strip(),
            rpc_url=os.getenv("RPC_URL", DEFAULT_RPC_URL).strip(),
            chain_id=_env_int("CHAIN_ID", 56),
            network=os.getenv("NETWORK", "bsc").strip(),
            token_decimals=_env_int("TOKEN_DECIMALS", 18),
            token_name_fallback=os.getenv("TOKEN_NAME", DEFAULT_TOKEN_NAME),
            token_version_fallback=os.getenv("TOKEN_VERSION", DEFAULT_TOKEN_VERSION),
            challenge_minutes=_env_int("CHALLENGE_MINUTES", 15),
            pong_per_usd1=_env_int("PONG_PER_USD1", 4000),
            tier_amounts=_env_tiers("PONG_TIERS", (1, 5, 10)),
            default_eip3009_tier=_env_int("DEFAULT_EIP3009_TIER", 10),
            signature_policy=_env_enum(
                "SIGNATURE_POLICY", SignaturePolicy, SignaturePolicy.RECOVER
            ),
            settlement_strategy=_env_enum(
                "SETTLEMENT_STRATEGY", ExecutionStrategy, ExecutionStrategy.SEQUENTIAL
            ),
            rpc_timeout_seconds=_env_int("RPC_TIMEOUT_SECONDS", 30),
            receipt_timeout_seconds=_env_int("RECEIPT_TIMEOUT_SECONDS", 180),
            rpc_read_retries=_env_int("RPC_READ_RETRIES", 2),
            max_payment_header_bytes=_env_int("MAX_PAYMENT_HEADER_BYTES", 16384),
        )
