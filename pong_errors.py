"""
Error taxonomy for the PONG faucet.

Every error a request can surface derives from ``PongError`` and carries
the HTTP status the server renders it with. Chain failures are classified
through a single table in ``classify_chain_error``.
"""

from typing import Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from x402.mechanisms.evm.constants import (
    ERR_INSUFFICIENT_BALANCE,
    ERR_INVALID_SIGNATURE,
    ERR_NONCE_ALREADY_USED,
    ERR_TRANSACTION_FAILED,
)


class PongError(Exception):
    """Base error for every request-level failure."""

    status_code = 400

    def __init__(self, error: str, details: Any = None):
        self.error = error
        self.details = details
        super().__init__(error if details is None else f"{error}: {details}")

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class InputValidationError(PongError):
    """Malformed address, disallowed tier amount or missing fields."""

    status_code = 400


class StaleChallengeError(PongError):
    """Expired deadline or consumed nonce; the client must request a new challenge."""

    status_code = 422


class AuthorizationError(PongError):
    """Wrong spender/recipient or an invalid signature."""

    status_code = 422


class ChainExecutionError(PongError):
    """A transaction reverted, timed out or could not be submitted."""

    def __init__(
        self,
        error: str,
        details: Any = None,
        *,
        reason: str = ERR_TRANSACTION_FAILED,
        status_code: int = 400,
    ):
        self.reason = reason
        self.status_code = status_code
        super().__init__(error, details)


class ConfigurationError(PongError, RuntimeError):
    """Missing or invalid deployment configuration."""

    status_code = 500


def _selector(signature: str) -> str:
    return "0x" + Web3.keccak(text=signature)[:4].hex().removeprefix("0x")


# (reason code, status, error message, revert selectors, message substrings)
# Order matters: the first row that matches wins.
_CHAIN_ERROR_TABLE: tuple[tuple[str, int, str, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        ERR_INVALID_SIGNATURE,
        422,
        "Invalid signature or unauthorized signer",
        (
            _selector("ERC2612InvalidSigner(address,address)"),
            _selector("ECDSAInvalidSignature()"),
            _selector("ECDSAInvalidSignatureS(bytes32)"),
        ),
        ("signature", "invalid signer"),
    ),
    (
        ERR_NONCE_ALREADY_USED,
        422,
        "Nonce already used or invalid",
        (
            _selector("InvalidAccountNonce(address,uint256)"),
            _selector("ERC2612ExpiredSignature(uint256)"),
        ),
        ("nonce", "authorization is used"),
    ),
    (
        ERR_INSUFFICIENT_BALANCE,
        400,
        "Insufficient balance or gas",
        (
            _selector("ERC20InsufficientBalance(address,uint256,uint256)"),
            _selector("ERC20InsufficientAllowance(address,uint256,uint256)"),
        ),
        ("insufficient",),
    ),
    (
        ERR_TRANSACTION_FAILED,
        400,
        "Contract execution reverted",
        (),
        ("execution reverted",),
    ),
)


def _revert_selector(exc: BaseException) -> str | None:
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        return data[:10].lower()
    return None


def _short_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__


def classify_chain_error(exc: BaseException) -> PongError:
    """Map a client-library exception onto the caller-facing taxonomy."""
    if isinstance(exc, PongError):
        return exc

    details = _short_message(exc)

    if isinstance(exc, TimeExhausted):
        return ChainExecutionError(
            "Transaction confirmation timed out",
            details,
            reason=ERR_TRANSACTION_FAILED,
        )

    if isinstance(exc, ContractLogicError):
        selector = _revert_selector(exc)
        if selector:
            for reason, status, error, selectors, _ in _CHAIN_ERROR_TABLE:
                if selector in selectors:
                    return ChainExecutionError(
                        error, details, reason=reason, status_code=status
                    )

    haystack = str(exc).lower()
    for reason, status, error, _, needles in _CHAIN_ERROR_TABLE:
        if any(needle in haystack for needle in needles):
            return ChainExecutionError(error, details, reason=reason, status_code=status)

    return ChainExecutionError("Settlement failed", details)
