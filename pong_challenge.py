"""Challenge construction for Permit and TransferWithAuthorization payments."""

import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from web3 import Web3

from logging_utils import get_logger, short_hex
from pong_errors import InputValidationError
from pong_tiers import PriceTier
from pong_typed_data import (
    PERMIT,
    TRANSFER_WITH_AUTHORIZATION,
    TokenDomain,
    message_types,
    probe_domain_version,
)

logger = get_logger("pong_challenge")

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def parse_owner(raw: Any, field_name: str = "owner") -> str:
    if not isinstance(raw, str) or not _ADDRESS_RE.match(raw):
        raise InputValidationError(f"Invalid {field_name} address")
    return Web3.to_checksum_address(raw)


class DomainResolver:
    """Resolve the token's EIP-712 domain with a fallback chain.

    Order: ``eip712Domain()`` (EIP-5267), then ``name()`` + ``version()``,
    then a version probe against ``DOMAIN_SEPARATOR()``, then configured
    constants. Read failures degrade to the constants instead of failing
    the request.
    """

    def __init__(self, chain, settings, log=None) -> None:
        self.chain = chain
        self.settings = settings
        self.log = log or logger

    async def resolve(self, log=None) -> TokenDomain:
        log = log or self.log
        settings = self.settings
        try:
            fields = await self.chain.read_eip712_domain()
            domain = TokenDomain(
                name=fields[1],
                version=fields[2],
                chain_id=int(fields[3]),
                verifying_contract=Web3.to_checksum_address(fields[4]),
            )
            log.info(
                "eip712Domain(): name=%r version=%r chainId=%d",
                domain.name,
                domain.version,
                domain.chain_id,
            )
            return domain
        except Exception as exc:
            log.info("eip712Domain() unavailable (%s); falling back to name()/version()", exc)

        name = settings.token_name_fallback
        try:
            name = await self.chain.read_name()
            log.info("name(): %r", name)
        except Exception as exc:
            log.warning("name() failed (%s); using fallback %r", exc, name)

        version = None
        try:
            version = await self.chain.read_version()
            log.info("version(): %r", version)
        except Exception as exc:
            log.info("version() unavailable (%s)", exc)

        on_chain_separator = None
        try:
            on_chain_separator = await self.chain.read_domain_separator()
        except Exception as exc:
            log.info("DOMAIN_SEPARATOR() unavailable (%s)", exc)

        if version is None and on_chain_separator is not None:
            version = probe_domain_version(
                name, settings.chain_id, settings.token_address, on_chain_separator
            )
            if version is not None:
                log.info("version probed from DOMAIN_SEPARATOR: %r", version)

        if version is None:
            version = settings.token_version_fallback
            log.warning("Using fallback version %r", version)

        domain = TokenDomain(
            name=name,
            version=version,
            chain_id=settings.chain_id,
            verifying_contract=settings.token_address,
        )
        if on_chain_separator is not None and domain.separator() != on_chain_separator:
            log.warning(
                "Derived domain separator %s does not match on-chain %s",
                Web3.to_hex(domain.separator()),
                Web3.to_hex(on_chain_separator),
            )
        return domain


@dataclass(frozen=True)
class AuthorizationChallenge:
    domain: TokenDomain
    primary_type: str
    message: dict[str, Any]

    def to_body(self) -> dict[str, Any]:
        return {
            "domain": self.domain.to_dict(),
            "types": message_types(self.primary_type),
            "values": self.message,
            "primaryType": self.primary_type,
        }


class ChallengeBuilder:
    def __init__(
        self,
        chain,
        settings,
        domains: DomainResolver,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.settings = settings
        self.domains = domains
        self.clock = clock

    def _expiry(self) -> int:
        return int(self.clock()) + self.settings.challenge_seconds

    async def build_permit(self, owner: Any, tier: PriceTier, log=None) -> AuthorizationChallenge:
        log = log or logger
        owner = parse_owner(owner)
        spender = self.chain.address
        log.info("Permit challenge: owner=%s spender=%s tier=%d", owner, spender, tier.usd1_amount)

        domain = await self.domains.resolve(log)
        nonce = await self.chain.read_nonce(owner)
        deadline = self._expiry()

        message = {
            "owner": owner,
            "spender": spender,
            "value": tier.minor_units_value,
            "nonce": str(nonce),
            "deadline": str(deadline),
        }
        log.info("Permit values: nonce=%d deadline=%d value=%s", nonce, deadline, tier.minor_units_value)
        return AuthorizationChallenge(domain=domain, primary_type=PERMIT, message=message)

    async def build_transfer_authorization(
        self, owner: Any, tier: PriceTier, log=None
    ) -> AuthorizationChallenge:
        log = log or logger
        owner = parse_owner(owner)
        domain = await self.domains.resolve(log)
        nonce = "0x" + secrets.token_bytes(32).hex()
        valid_before = self._expiry()

        message = {
            "from": owner,
            "to": self.settings.treasury,
            "value": tier.minor_units_value,
            "validAfter": 0,
            "validBefore": valid_before,
            "nonce": nonce,
        }
        log.info(
            "TransferWithAuthorization values: from=%s to=%s value=%s validBefore=%d nonce=%s",
            owner,
            self.settings.treasury,
            tier.minor_units_value,
            valid_before,
            short_hex(nonce),
        )
        return AuthorizationChallenge(
            domain=domain, primary_type=TRANSFER_WITH_AUTHORIZATION, message=message
        )
