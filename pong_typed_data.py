"""EIP-712 helpers for EIP-2612 Permit and EIP-3009 TransferWithAuthorization.

The domain built here must hash to exactly the separator the token contract
computes internally, otherwise every signature fails at settlement time.
"""

from dataclasses import dataclass
from typing import Any

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3
from x402.mechanisms.evm.types import AUTHORIZATION_TYPES, DOMAIN_TYPES

from pong_errors import AuthorizationError, InputValidationError

PERMIT = "Permit"
TRANSFER_WITH_AUTHORIZATION = "TransferWithAuthorization"

PERMIT_TYPES: dict[str, list[dict[str, str]]] = {
    PERMIT: [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}

_MESSAGE_TYPES = {
    PERMIT: PERMIT_TYPES,
    TRANSFER_WITH_AUTHORIZATION: AUTHORIZATION_TYPES,
}

DOMAIN_TYPEHASH = Web3.keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)

# Version strings seen in the wild for tokens that do not expose version().
CANDIDATE_VERSIONS = ("1", "2", "v1", "V1", "", "1.0", "0")


@dataclass(frozen=True)
class TokenDomain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    def separator(self) -> bytes:
        return compute_domain_separator(
            self.name, self.version, self.chain_id, self.verifying_contract
        )


def compute_domain_separator(
    name: str, version: str, chain_id: int, verifying_contract: str
) -> bytes:
    return bytes(
        Web3.keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    DOMAIN_TYPEHASH,
                    Web3.keccak(text=name),
                    Web3.keccak(text=version),
                    int(chain_id),
                    Web3.to_checksum_address(verifying_contract),
                ],
            )
        )
    )


def probe_domain_version(
    name: str,
    chain_id: int,
    verifying_contract: str,
    expected_separator: bytes,
    candidates: tuple[str, ...] = CANDIDATE_VERSIONS,
) -> str | None:
    """Return the candidate version whose separator matches ``expected_separator``."""
    expected = bytes(expected_separator)
    for version in candidates:
        if compute_domain_separator(name, version, chain_id, verifying_contract) == expected:
            return version
    return None


def message_types(primary_type: str) -> dict[str, list[dict[str, str]]]:
    try:
        return _MESSAGE_TYPES[primary_type]
    except KeyError as exc:
        raise InputValidationError(f"Unsupported primary type: {primary_type}") from exc


def _as_uint(raw: Any, field_name: str) -> int:
    if isinstance(raw, bool):
        raise InputValidationError(f"Invalid {field_name}")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
    else:
        raise InputValidationError(f"Invalid {field_name}")
    if value < 0 or value >= 2**256:
        raise InputValidationError(f"Invalid {field_name}")
    return value


def _as_bytes32(raw: Any, field_name: str) -> bytes:
    if isinstance(raw, (bytes, bytearray)) and len(raw) == 32:
        return bytes(raw)
    if isinstance(raw, str):
        body = raw[2:] if raw.startswith("0x") else raw
        if len(body) == 64:
            try:
                return bytes.fromhex(body)
            except ValueError:
                pass
    raise InputValidationError(f"Invalid {field_name}: expected 32-byte hex")


def _as_address(raw: Any, field_name: str) -> str:
    if not isinstance(raw, str) or not Web3.is_address(raw):
        raise InputValidationError(f"Invalid {field_name} address")
    return Web3.to_checksum_address(raw)


def coerce_message(primary_type: str, message: dict[str, Any]) -> dict[str, Any]:
    """Normalize JSON-shaped message values into the types eth-account encodes."""
    coerced: dict[str, Any] = {}
    for entry in message_types(primary_type)[primary_type]:
        name, kind = entry["name"], entry["type"]
        if name not in message:
            raise InputValidationError(f"Missing {name} in {primary_type} message")
        raw = message[name]
        if kind == "address":
            coerced[name] = _as_address(raw, name)
        elif kind == "uint256":
            coerced[name] = _as_uint(raw, name)
        elif kind == "bytes32":
            coerced[name] = _as_bytes32(raw, name)
        else:
            coerced[name] = raw
    return coerced


def typed_data(
    domain: TokenDomain, primary_type: str, message: dict[str, Any]
) -> dict[str, Any]:
    return {
        "types": {**DOMAIN_TYPES, **message_types(primary_type)},
        "primaryType": primary_type,
        "domain": domain.to_dict(),
        "message": coerce_message(primary_type, message),
    }


@dataclass(frozen=True)
class SignatureParts:
    v: int
    r: str
    s: str

    def to_bytes(self) -> bytes:
        return bytes.fromhex(self.r[2:]) + bytes.fromhex(self.s[2:]) + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


def _normalize_v(v: int) -> int:
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise AuthorizationError("Invalid signature", f"unsupported v value {v}")
    return v


def split_signature(signature: Any) -> SignatureParts:
    if not isinstance(signature, str):
        raise AuthorizationError("Invalid signature", "signature must be a hex string")
    body = signature[2:] if signature.startswith("0x") else signature
    if len(body) != 130:
        raise AuthorizationError(
            "Invalid signature", f"expected 65 bytes, got {len(body) // 2}"
        )
    try:
        raw = bytes.fromhex(body)
    except ValueError as exc:
        raise AuthorizationError("Invalid signature", "signature is not hex") from exc
    return SignatureParts(
        v=_normalize_v(raw[64]),
        r="0x" + raw[:32].hex(),
        s="0x" + raw[32:64].hex(),
    )


def join_signature(v: Any, r: Any, s: Any) -> SignatureParts:
    try:
        v_int = int(v, 0) if isinstance(v, str) else int(v)
    except (TypeError, ValueError) as exc:
        raise AuthorizationError("Invalid signature", "v must be an integer") from exc
    parts = []
    for label, component in (("r", r), ("s", s)):
        if not isinstance(component, str):
            raise AuthorizationError("Invalid signature", f"{label} must be a hex string")
        body = component[2:] if component.startswith("0x") else component
        if len(body) != 64:
            raise AuthorizationError("Invalid signature", f"{label} must be 32 bytes")
        try:
            bytes.fromhex(body)
        except ValueError as exc:
            raise AuthorizationError("Invalid signature", f"{label} is not hex") from exc
        parts.append("0x" + body.lower())
    return SignatureParts(v=_normalize_v(v_int), r=parts[0], s=parts[1])


def recover_signer(
    domain: TokenDomain,
    primary_type: str,
    message: dict[str, Any],
    signature: SignatureParts,
) -> str:
    signable = encode_typed_data(full_message=typed_data(domain, primary_type, message))
    try:
        recovered = Account.recover_message(signable, signature=signature.to_bytes())
    except Exception as exc:
        raise AuthorizationError(
            "Invalid signature - could not recover signer", str(exc)
        ) from exc
    return Web3.to_checksum_address(recovered)


def sign_typed_data(
    private_key: str,
    domain: TokenDomain,
    primary_type: str,
    message: dict[str, Any],
) -> str:
    signable = encode_typed_data(full_message=typed_data(domain, primary_type, message))
    signed = Account.sign_message(signable, private_key=private_key)
    return Web3.to_hex(signed.signature)
