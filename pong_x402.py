"""x402 v1 wire helpers: payment descriptors, X-PAYMENT decoding and
X-PAYMENT-RESPONSE encoding."""

import base64
import binascii
import json
from typing import Any

from x402.mechanisms.evm.types import ExactEIP3009Payload

from pong_errors import InputValidationError, PongError
from pong_settlement import (
    SettlementResult,
    SignedAuthorization,
    parse_permit_request,
    parse_transfer_request,
)
from pong_tiers import PriceTier

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

AUTH_PERMIT = "permit"
AUTH_EIP3009 = "eip3009"


class PaymentRejected(PongError):
    """X-PAYMENT envelope names a network, scheme or authorization type we do not settle."""

    status_code = 422


def tier_resource(tier: PriceTier) -> str:
    return f"/pong{tier.usd1_amount}"


def payment_requirements(settings, tier: PriceTier, resource: str) -> dict[str, Any]:
    return {
        "scheme": "exact",
        "network": settings.network,
        "maxAmountRequired": tier.minor_units_value,
        "asset": settings.token_address,
        "payTo": settings.treasury,
        "resource": resource,
        "description": f"{tier.pong_allocation:,} PONG tokens - Tier {tier.usd1_amount}",
        "extra": {
            "name": settings.token_name_fallback,
            "version": settings.token_version_fallback,
            "chainId": settings.chain_id,
        },
    }


def payment_descriptor(
    settings, tier: PriceTier, resource: str | None = None, note: str | None = None
) -> dict[str, Any]:
    resource = resource or tier_resource(tier)
    return {
        "x402Version": X402_VERSION,
        "accepts": [payment_requirements(settings, tier, resource)],
        "product": "PONG",
        "note": note
        or (
            f"Pay {tier.usd1_amount} USD1 for {tier.pong_allocation:,} PONG. "
            f"POST {{owner}} to {resource} for a signing challenge."
        ),
    }


def decode_payment_header(header: str, max_bytes: int) -> dict[str, Any]:
    if len(header) > max_bytes:
        raise InputValidationError("Invalid X-PAYMENT header", "header too large")
    try:
        payment = json.loads(base64.b64decode(header, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise InputValidationError("Invalid X-PAYMENT header", str(exc)) from exc
    if not isinstance(payment, dict):
        raise InputValidationError("Invalid X-PAYMENT header", "expected a JSON object")
    return payment


def authorization_from_payment(payment: dict[str, Any], network: str) -> SignedAuthorization:
    """Check the v1 envelope and turn its payload into a signed authorization."""
    if payment.get("x402Version") != X402_VERSION:
        raise InputValidationError("Unsupported x402 version")
    if payment.get("network") != network:
        raise PaymentRejected(f"Invalid network. Expected: {network}")
    if payment.get("scheme") != "exact":
        raise PaymentRejected("Invalid scheme. Expected: exact")

    payload = payment.get("payload")
    if not isinstance(payload, dict):
        raise InputValidationError("Missing required fields", ["payload"])
    authorization = payload.get("authorization")
    if not isinstance(authorization, dict):
        raise InputValidationError("Missing required fields", ["authorization"])

    kind = payload.get("authorizationType")
    if kind == AUTH_PERMIT:
        return parse_permit_request({**authorization, "signature": payload.get("signature")})
    if kind == AUTH_EIP3009:
        exact = ExactEIP3009Payload.from_dict(payload)
        fields = exact.to_dict()["authorization"]
        return parse_transfer_request({**fields, "signature": exact.signature})
    raise PaymentRejected(
        f"Invalid authorization type. Expected: {AUTH_PERMIT} or {AUTH_EIP3009}"
    )


def encode_payment_response(result: SettlementResult, network: str) -> str:
    response = {
        "success": True,
        "transaction": result.tx_hash,
        "network": network,
        "payer": result.payer,
        "amountMinor": result.amount_minor,
        "allocationPONG": result.allocation_pong,
    }
    return base64.b64encode(json.dumps(response).encode()).decode()
