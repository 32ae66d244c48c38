"""
Settlement: parse a signed authorization, validate it, then execute it.

Validation runs every guard before any transaction is built so a stale or
foreign authorization never costs gas. Execution submits either
``permit`` + ``transferFrom`` (EIP-2612) or a single
``transferWithAuthorization`` (EIP-3009).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from web3 import Web3

from logging_utils import get_logger, log_json, short_hex
from pong_chain import TRANSFER_FROM_GAS_LIMIT, receipt_succeeded
from pong_config import ExecutionStrategy, SignaturePolicy
from pong_errors import (
    AuthorizationError,
    ChainExecutionError,
    InputValidationError,
    PongError,
    StaleChallengeError,
    classify_chain_error,
)
from pong_tiers import PriceTier, allocation_for_value, tier_for_value
from pong_typed_data import (
    PERMIT,
    TRANSFER_WITH_AUTHORIZATION,
    SignatureParts,
    coerce_message,
    join_signature,
    recover_signer,
    split_signature,
)

logger = get_logger("pong_settlement")

PERMIT_FIELDS = ("owner", "spender", "value", "nonce", "deadline")
TRANSFER_FIELDS = ("from", "to", "value", "validAfter", "validBefore", "nonce")


@dataclass(frozen=True)
class SignedAuthorization:
    primary_type: str
    message: dict[str, Any]
    # 65-byte hex string, or a (v, r, s) tuple
    signature: Any

    @property
    def claimed_payer(self) -> str:
        return self.message["owner" if self.primary_type == PERMIT else "from"]

    @property
    def value(self) -> int:
        return self.message["value"]

    @property
    def expires_at(self) -> int:
        return self.message["deadline" if self.primary_type == PERMIT else "validBefore"]


@dataclass(frozen=True)
class ValidatedAuthorization:
    authorization: SignedAuthorization
    payer: str
    tier: PriceTier
    signature: SignatureParts


@dataclass(frozen=True)
class SettlementResult:
    tx_hash: str
    amount_minor: str
    allocation_pong: int
    payer: str
    permit_hash: str | None = None
    status: str = "ok"

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status, "txHash": self.tx_hash}
        if self.permit_hash is not None:
            body["permitHash"] = self.permit_hash
        body["amountMinor"] = self.amount_minor
        body["allocationPONG"] = self.allocation_pong
        body["payer"] = self.payer
        return body


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _signature_input(body: dict[str, Any]) -> Any:
    signature = body.get("signature")
    if not _is_missing(signature):
        return signature
    split = tuple(body.get(key) for key in ("v", "r", "s"))
    if any(_is_missing(part) for part in split):
        return None
    return split


def _parse(primary_type: str, fields: tuple[str, ...], body: Any) -> SignedAuthorization:
    if not isinstance(body, dict):
        raise InputValidationError("Invalid request", "expected a JSON object")
    missing = [name for name in fields if _is_missing(body.get(name))]
    signature = _signature_input(body)
    if signature is None:
        missing.append("signature")
    if missing:
        raise InputValidationError("Missing required fields", missing)
    message = coerce_message(primary_type, {name: body[name] for name in fields})
    return SignedAuthorization(primary_type=primary_type, message=message, signature=signature)


def parse_permit_request(body: Any) -> SignedAuthorization:
    """Parse ``{owner, spender, value, nonce, deadline, signature}``."""
    return _parse(PERMIT, PERMIT_FIELDS, body)


def parse_transfer_request(body: Any) -> SignedAuthorization:
    """Parse ``{from, to, value, validAfter, validBefore, nonce, signature | v,r,s}``."""
    return _parse(TRANSFER_WITH_AUTHORIZATION, TRANSFER_FIELDS, body)


def _signature_parts(raw: Any) -> SignatureParts:
    if isinstance(raw, tuple):
        return join_signature(*raw)
    return split_signature(raw)


class SettlementValidator:
    def __init__(
        self,
        chain,
        settings,
        domains,
        tiers: dict[int, PriceTier],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.settings = settings
        self.domains = domains
        self.tiers = tiers
        self.clock = clock

    def _check_value(self, auth: SignedAuthorization, expected: PriceTier | None) -> PriceTier:
        if expected is not None:
            if auth.value != expected.value:
                raise InputValidationError(
                    f"Invalid value. Expected: {expected.minor_units_value}"
                )
            return expected
        tier = tier_for_value(self.tiers, auth.value)
        if tier is None:
            allowed = ", ".join(str(amount) for amount in self.tiers)
            raise InputValidationError(
                f"Invalid value. Expected {allowed} USD1 "
                f"(with {self.settings.token_decimals} decimals)"
            )
        return tier

    async def _resolve_payer(
        self, auth: SignedAuthorization, parts: SignatureParts, log
    ) -> str:
        claimed = auth.claimed_payer
        policy = self.settings.signature_policy
        if policy is SignaturePolicy.CONTRACT:
            log.info("Signature policy 'contract': skipping local recovery")
            return claimed

        domain = await self.domains.resolve(log)
        recovered = recover_signer(domain, auth.primary_type, auth.message, parts)
        if recovered == claimed:
            log.info("Recovered signer matches %s", claimed)
            return claimed

        if policy is SignaturePolicy.VERIFY:
            raise AuthorizationError(
                "Invalid signature or unauthorized signer",
                {"claimed": claimed, "recovered": recovered},
            )
        log.warning(
            "Recovered signer %s differs from claimed %s; using recovered address",
            recovered,
            claimed,
        )
        return recovered

    async def validate_permit(
        self,
        auth: SignedAuthorization,
        expected_tier: PriceTier | None = None,
        log=None,
    ) -> ValidatedAuthorization:
        log = log or logger
        message = auth.message
        log_json(log, logging.DEBUG, "Permit settlement request", message)

        tier = self._check_value(auth, expected_tier)

        facilitator = self.chain.address
        if message["spender"] != Web3.to_checksum_address(facilitator):
            log.error("Invalid spender: expected %s, got %s", facilitator, message["spender"])
            raise AuthorizationError("Invalid spender address")

        now = int(self.clock())
        if message["deadline"] <= now:
            log.error("Permit expired: deadline=%d now=%d", message["deadline"], now)
            raise StaleChallengeError("Permit expired. Please request a new challenge.")

        parts = _signature_parts(auth.signature)
        log.info("Signature split: v=%d r=%s s=%s", parts.v, short_hex(parts.r), short_hex(parts.s))

        payer = await self._resolve_payer(auth, parts, log)

        current = await self.chain.read_nonce(payer)
        if current != message["nonce"]:
            log.error("Nonce mismatch: expected %d, got %d", current, message["nonce"])
            raise StaleChallengeError(
                "Nonce mismatch - please request a new challenge",
                {"expected": str(current), "received": str(message["nonce"])},
            )

        return ValidatedAuthorization(auth, payer, tier, parts)

    async def validate_transfer(
        self,
        auth: SignedAuthorization,
        expected_tier: PriceTier | None = None,
        log=None,
    ) -> ValidatedAuthorization:
        log = log or logger
        message = auth.message
        log_json(log, logging.DEBUG, "TransferWithAuthorization settlement request", message)

        tier = self._check_value(auth, expected_tier)

        treasury = self.settings.treasury
        if message["to"] != treasury:
            log.error("Invalid 'to': expected %s, got %s", treasury, message["to"])
            raise AuthorizationError(f"Invalid 'to' address. Expected {treasury}")

        now = int(self.clock())
        if message["validBefore"] <= now:
            log.error("Authorization expired: validBefore=%d now=%d", message["validBefore"], now)
            raise StaleChallengeError("Challenge expired. Please request a new challenge.")
        if message["validAfter"] > now:
            raise AuthorizationError(
                "Authorization not yet valid", {"validAfter": str(message["validAfter"])}
            )

        parts = _signature_parts(auth.signature)
        payer = await self._resolve_payer(auth, parts, log)

        if await self.chain.read_authorization_state(payer, message["nonce"]):
            log.error("Authorization nonce %s already used", short_hex(message["nonce"].hex()))
            raise StaleChallengeError(
                "Authorization already used - please request a new challenge"
            )

        return ValidatedAuthorization(auth, payer, tier, parts)


class SettlementExecutor:
    def __init__(self, chain, settings) -> None:
        self.chain = chain
        self.settings = settings

    def _result(self, validated: ValidatedAuthorization, tx_hash: str, permit_hash=None):
        value = validated.authorization.value
        return SettlementResult(
            tx_hash=tx_hash,
            permit_hash=permit_hash,
            amount_minor=str(value),
            allocation_pong=allocation_for_value(
                value, self.settings.pong_per_usd1, self.settings.token_decimals
            ),
            payer=validated.payer,
        )

    async def _confirm(self, tx_hash: str, failure: str, log) -> None:
        receipt = await self.chain.wait_for_receipt(tx_hash)
        log.info("Receipt %s: status=%d block=%d", tx_hash, receipt.status, receipt.block_number)
        if not receipt_succeeded(receipt):
            raise ChainExecutionError(failure, {"txHash": tx_hash})

    async def settle_permit(self, validated: ValidatedAuthorization, log=None) -> SettlementResult:
        log = log or logger
        message = validated.authorization.message
        parts = validated.signature
        owner = validated.payer
        treasury = self.settings.treasury
        spender = self.chain.address
        value = message["value"]
        strategy = self.settings.settlement_strategy

        try:
            if strategy is ExecutionStrategy.PARALLEL:
                permit_nonce, transfer_nonce = await self.chain.reserve_nonces(2)
                log.info("Parallel settlement with sender nonces %d, %d", permit_nonce, transfer_nonce)
                try:
                    permit_hash = await self.chain.send_permit(
                        owner, spender, value, message["deadline"], parts.v, parts.r, parts.s,
                        nonce=permit_nonce,
                    )
                except Exception:
                    await self.chain.release_nonce(transfer_nonce)
                    await self.chain.release_nonce(permit_nonce)
                    raise
                transfer_hash = await self.chain.send_transfer_from(
                    owner, treasury, value, nonce=transfer_nonce, gas=TRANSFER_FROM_GAS_LIMIT
                )
                outcomes = await asyncio.gather(
                    self._confirm(permit_hash, "Permit transaction failed", log),
                    self._confirm(transfer_hash, "Transfer transaction failed", log),
                    return_exceptions=True,
                )
                failures = [o for o in outcomes if isinstance(o, BaseException)]
                for failure in failures:
                    if isinstance(failure, PongError):
                        raise failure
                if failures:
                    raise failures[0]
            else:
                permit_hash = await self.chain.send_permit(
                    owner, spender, value, message["deadline"], parts.v, parts.r, parts.s
                )
                await self._confirm(permit_hash, "Permit transaction failed", log)
                transfer_hash = await self.chain.send_transfer_from(owner, treasury, value)
                await self._confirm(transfer_hash, "Transfer transaction failed", log)
        except PongError:
            raise
        except Exception as exc:
            log.exception("Permit settlement failed")
            raise classify_chain_error(exc) from exc

        result = self._result(validated, transfer_hash, permit_hash)
        log.info(
            "Settled %s USD1 from %s: allocation %d PONG",
            validated.tier.usd1_amount,
            owner,
            result.allocation_pong,
        )
        return result

    async def settle_transfer(
        self, validated: ValidatedAuthorization, log=None
    ) -> SettlementResult:
        log = log or logger
        message = validated.authorization.message
        parts = validated.signature
        try:
            tx_hash = await self.chain.send_transfer_with_authorization(
                validated.payer,
                message["to"],
                message["value"],
                message["validAfter"],
                message["validBefore"],
                message["nonce"],
                parts.v,
                parts.r,
                parts.s,
            )
            await self._confirm(tx_hash, "Transfer transaction failed", log)
        except PongError:
            raise
        except Exception as exc:
            log.exception("transferWithAuthorization settlement failed")
            raise classify_chain_error(exc) from exc

        result = self._result(validated, tx_hash)
        log.info("Settled %s from %s: allocation %d PONG", tx_hash, validated.payer, result.allocation_pong)
        return result
