import base64
import json

import pytest

from pong_client import payment_header
from pong_errors import InputValidationError
from pong_settlement import SettlementResult
from pong_typed_data import PERMIT, TRANSFER_WITH_AUTHORIZATION
from pong_x402 import (
    PaymentRejected,
    authorization_from_payment,
    decode_payment_header,
    encode_payment_response,
    payment_descriptor,
)

OWNER = "0x1111111111111111111111111111111111111111"
SPENDER = "0x2222222222222222222222222222222222222222"


def _encode(payment) -> str:
    return base64.b64encode(json.dumps(payment).encode()).decode()


def _permit_payment(**overrides):
    payment = {
        "x402Version": 1,
        "network": "bsc",
        "scheme": "exact",
        "payload": {
            "authorizationType": "permit",
            "signature": "0x" + "11" * 65,
            "authorization": {
                "owner": OWNER,
                "spender": SPENDER,
                "value": "1000000000000000000",
                "nonce": "0",
                "deadline": "1760000900",
            },
        },
    }
    payment.update(overrides)
    return payment


def test_descriptor_shape(settings, tiers):
    descriptor = payment_descriptor(settings, tiers[5])
    assert descriptor["x402Version"] == 1
    assert descriptor["product"] == "PONG"
    (accepts,) = descriptor["accepts"]
    assert accepts["scheme"] == "exact"
    assert accepts["network"] == "bsc"
    assert accepts["maxAmountRequired"] == "5000000000000000000"
    assert accepts["asset"] == settings.token_address
    assert accepts["payTo"] == settings.treasury
    assert accepts["resource"] == "/pong5"
    assert accepts["description"] == "20,000 PONG tokens - Tier 5"
    assert accepts["extra"] == {
        "name": "World Liberty Financial USD",
        "version": "1",
        "chainId": 56,
    }


def test_decode_round_trip():
    payment = _permit_payment()
    assert decode_payment_header(_encode(payment), 16384) == payment


@pytest.mark.parametrize("header", ["not base64!", base64.b64encode(b"{oops").decode(), _encode([1, 2])])
def test_decode_rejects_garbage(header):
    with pytest.raises(InputValidationError, match="Invalid X-PAYMENT header"):
        decode_payment_header(header, 16384)


def test_decode_rejects_oversized():
    with pytest.raises(InputValidationError):
        decode_payment_header(_encode(_permit_payment()), 16)


def test_permit_payload():
    auth = authorization_from_payment(_permit_payment(), "bsc")
    assert auth.primary_type == PERMIT
    assert auth.claimed_payer == OWNER
    assert auth.value == 10**18


def test_eip3009_payload():
    payment = _permit_payment()
    payment["payload"] = {
        "authorizationType": "eip3009",
        "signature": "0x" + "11" * 65,
        "authorization": {
            "from": OWNER,
            "to": SPENDER,
            "value": "1000000000000000000",
            "validAfter": "0",
            "validBefore": "1760000900",
            "nonce": "0x" + "ab" * 32,
        },
    }
    auth = authorization_from_payment(payment, "bsc")
    assert auth.primary_type == TRANSFER_WITH_AUTHORIZATION
    assert auth.message["validBefore"] == 1760000900
    assert auth.message["nonce"] == bytes.fromhex("ab" * 32)


def test_eip3009_missing_fields():
    payment = _permit_payment()
    payment["payload"] = {"authorizationType": "eip3009", "authorization": {"from": OWNER}}
    with pytest.raises(InputValidationError) as err:
        authorization_from_payment(payment, "bsc")
    assert "signature" in err.value.details


@pytest.mark.parametrize(
    "overrides,error,status",
    [
        ({"x402Version": 2}, "Unsupported x402 version", 400),
        ({"network": "base"}, "Invalid network. Expected: bsc", 422),
        ({"scheme": "upto"}, "Invalid scheme. Expected: exact", 422),
    ],
)
def test_envelope_checks(overrides, error, status):
    with pytest.raises((InputValidationError, PaymentRejected)) as err:
        authorization_from_payment(_permit_payment(**overrides), "bsc")
    assert err.value.error == error
    assert err.value.status_code == status


def test_unknown_authorization_type():
    payment = _permit_payment()
    payment["payload"]["authorizationType"] = "permit2"
    with pytest.raises(PaymentRejected, match="Invalid authorization type"):
        authorization_from_payment(payment, "bsc")


def test_payment_response_encoding():
    result = SettlementResult(
        tx_hash="0xabc", amount_minor="1000000000000000000", allocation_pong=4000, payer=OWNER
    )
    decoded = json.loads(base64.b64decode(encode_payment_response(result, "bsc")))
    assert decoded == {
        "success": True,
        "transaction": "0xabc",
        "network": "bsc",
        "payer": OWNER,
        "amountMinor": "1000000000000000000",
        "allocationPONG": 4000,
    }


def test_client_header_is_decodable():
    challenge = {
        "primaryType": PERMIT,
        "values": _permit_payment()["payload"]["authorization"],
    }
    header = payment_header(challenge, "0x" + "11" * 65, "bsc")
    payment = decode_payment_header(header, 16384)
    assert payment["payload"]["authorizationType"] == "permit"
    assert authorization_from_payment(payment, "bsc").claimed_payer == OWNER
