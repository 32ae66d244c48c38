import pytest
from eth_account import Account
from web3 import Web3

from pong_errors import AuthorizationError, InputValidationError
from pong_typed_data import (
    PERMIT,
    TRANSFER_WITH_AUTHORIZATION,
    TokenDomain,
    coerce_message,
    compute_domain_separator,
    join_signature,
    probe_domain_version,
    recover_signer,
    sign_typed_data,
    split_signature,
    typed_data,
)

TOKEN = "0x8d0D000Ee44948FC98c9B98A4FA4921476f08B0d"
DOMAIN = TokenDomain("World Liberty Financial USD", "1", 56, TOKEN)


@pytest.fixture
def owner():
    return Account.create()


def _permit(owner_address, spender="0x000000000000000000000000000000000000dEaD"):
    return {
        "owner": owner_address,
        "spender": spender,
        "value": "5000000000000000000",
        "nonce": "0",
        "deadline": "1760000900",
    }


class TestDomainSeparator:
    def test_matches_manual_encoding(self):
        typehash = Web3.keccak(
            text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
        )
        expected = Web3.solidity_keccak(
            ["bytes32", "bytes32", "bytes32", "uint256", "uint256"],
            [
                typehash,
                Web3.keccak(text=DOMAIN.name),
                Web3.keccak(text=DOMAIN.version),
                56,
                int(TOKEN, 16),
            ],
        )
        assert DOMAIN.separator() == bytes(expected)

    def test_version_changes_separator(self):
        assert compute_domain_separator(DOMAIN.name, "2", 56, TOKEN) != DOMAIN.separator()

    def test_probe_finds_version(self):
        separator = compute_domain_separator(DOMAIN.name, "v1", 56, TOKEN)
        assert probe_domain_version(DOMAIN.name, 56, TOKEN, separator) == "v1"

    def test_probe_returns_none(self):
        separator = compute_domain_separator(DOMAIN.name, "unlisted", 56, TOKEN)
        assert probe_domain_version(DOMAIN.name, 56, TOKEN, separator) is None

    def test_domain_dict_keys(self):
        assert DOMAIN.to_dict() == {
            "name": "World Liberty Financial USD",
            "version": "1",
            "chainId": 56,
            "verifyingContract": TOKEN,
        }


class TestCoercion:
    def test_permit_strings_become_ints(self, owner):
        message = coerce_message(PERMIT, _permit(owner.address.lower()))
        assert message["owner"] == owner.address
        assert message["value"] == 5 * 10**18
        assert message["nonce"] == 0

    def test_transfer_nonce_becomes_bytes(self, owner):
        message = coerce_message(
            TRANSFER_WITH_AUTHORIZATION,
            {
                "from": owner.address,
                "to": TOKEN,
                "value": 10**18,
                "validAfter": 0,
                "validBefore": 1760000900,
                "nonce": "0x" + "ab" * 32,
            },
        )
        assert message["nonce"] == bytes.fromhex("ab" * 32)

    @pytest.mark.parametrize(
        "field,value",
        [("value", "-1"), ("value", "1e18"), ("nonce", True), ("owner", "0x1234")],
    )
    def test_rejects_bad_fields(self, owner, field, value):
        message = _permit(owner.address)
        message[field] = value
        with pytest.raises(InputValidationError):
            coerce_message(PERMIT, message)

    def test_missing_field(self, owner):
        message = _permit(owner.address)
        del message["deadline"]
        with pytest.raises(InputValidationError, match="Missing deadline"):
            coerce_message(PERMIT, message)

    def test_typed_data_includes_domain_type(self, owner):
        data = typed_data(DOMAIN, PERMIT, _permit(owner.address))
        assert set(data["types"]) == {"EIP712Domain", "Permit"}
        assert data["primaryType"] == PERMIT


class TestSignatures:
    def test_sign_and_recover_permit(self, owner):
        signature = sign_typed_data(owner.key, DOMAIN, PERMIT, _permit(owner.address))
        recovered = recover_signer(DOMAIN, PERMIT, _permit(owner.address), split_signature(signature))
        assert recovered == owner.address

    def test_recover_with_wrong_domain_gives_other_address(self, owner):
        signature = sign_typed_data(owner.key, DOMAIN, PERMIT, _permit(owner.address))
        other = TokenDomain(DOMAIN.name, "2", 56, TOKEN)
        recovered = recover_signer(other, PERMIT, _permit(owner.address), split_signature(signature))
        assert recovered != owner.address

    def test_split_normalizes_v(self, owner):
        signature = sign_typed_data(owner.key, DOMAIN, PERMIT, _permit(owner.address))
        parts = split_signature(signature)
        raw = bytes.fromhex(signature[2:])
        low_v = "0x" + (raw[:64] + bytes([parts.v - 27])).hex()
        assert split_signature(low_v) == parts
        assert parts.to_hex() == signature

    def test_join_matches_split(self, owner):
        signature = sign_typed_data(owner.key, DOMAIN, PERMIT, _permit(owner.address))
        parts = split_signature(signature)
        assert join_signature(str(parts.v), parts.r, parts.s.removeprefix("0x")) == parts

    @pytest.mark.parametrize("signature", ["0x1234", "0x" + "zz" * 65, 42, "0x" + "00" * 64 + "05"])
    def test_split_rejects_malformed(self, signature):
        with pytest.raises(AuthorizationError):
            split_signature(signature)

    def test_join_rejects_short_r(self):
        with pytest.raises(AuthorizationError, match="Invalid signature"):
            join_signature(27, "0x1234", "0x" + "11" * 32)
