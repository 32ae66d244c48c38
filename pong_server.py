#!/usr/bin/env python3
"""PONG faucet HTTP server.

Every configured tier shares one descriptor -> challenge -> settlement
pipeline. Run with ``python pong_server.py``; settings come from the
environment (see ``pong_config``).
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from web3 import Web3

from logging_utils import get_logger, log_json, request_logger
from pong_chain import ChainClient
from pong_challenge import ChallengeBuilder, DomainResolver
from pong_config import Settings
from pong_errors import InputValidationError, PongError
from pong_settlement import (
    SettlementExecutor,
    SettlementValidator,
    parse_permit_request,
    parse_transfer_request,
)
from pong_tiers import PriceTier, build_tiers, tier_for_amount
from pong_typed_data import PERMIT
from pong_x402 import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    authorization_from_payment,
    decode_payment_header,
    encode_payment_response,
    payment_descriptor,
)

logger = get_logger("pong_server")

# Probe address used by /api/debug-usd1 to show a nonces() read works.
_PROBE_ADDRESS = "0x0000000000000000000000000000000000000001"


def _json(body: Any, status_code: int = 200, headers: dict[str, str] | None = None) -> Response:
    return Response(
        content=json.dumps(body),
        status_code=status_code,
        headers=headers,
        media_type="application/json",
    )


def _request_id() -> str:
    return uuid.uuid4().hex[:8]


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise InputValidationError("Invalid request", str(exc)) from exc


def create_app(
    settings: Settings | None = None,
    chain=None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or Settings.from_env()
    chain = chain or ChainClient.from_settings(settings)

    tiers = build_tiers(settings.tier_amounts, settings.pong_per_usd1, settings.token_decimals)
    domains = DomainResolver(chain, settings)
    challenges = ChallengeBuilder(chain, settings, domains, clock=clock)
    validator = SettlementValidator(chain, settings, domains, tiers, clock=clock)
    executor = SettlementExecutor(chain, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "PONG faucet up: network=%s token=%s treasury=%s facilitator=%s",
            settings.network,
            settings.token_address,
            settings.treasury,
            chain.address,
        )
        yield
        await chain.close()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.chain = chain
    app.state.tiers = tiers

    @app.exception_handler(PongError)
    async def pong_error_handler(request: Request, exc: PongError):
        return _json(exc.to_body(), exc.status_code)

    async def settle(auth, expected_tier: PriceTier | None, log):
        if auth.primary_type == PERMIT:
            validated = await validator.validate_permit(auth, expected_tier, log)
            return await executor.settle_permit(validated, log)
        validated = await validator.validate_transfer(auth, expected_tier, log)
        return await executor.settle_transfer(validated, log)

    def register_tier(tier: PriceTier) -> None:
        path = f"/pong{tier.usd1_amount}"

        async def describe():
            return _json(payment_descriptor(settings, tier, path), 402)

        async def challenge_or_settle(request: Request):
            log = request_logger(logger, path, _request_id())
            log.info("Tier %d USD1 -> %d PONG", tier.usd1_amount, tier.pong_allocation)

            header = request.headers.get(PAYMENT_HEADER)
            if header:
                log.info("X-PAYMENT header present; settling inline")
                payment = decode_payment_header(header, settings.max_payment_header_bytes)
                log_json(log, logging.DEBUG, "Decoded payment", payment)
                auth = authorization_from_payment(payment, settings.network)
                result = await settle(auth, tier, log)
                return _json(
                    result.to_body(),
                    201,
                    headers={
                        PAYMENT_RESPONSE_HEADER: encode_payment_response(result, settings.network)
                    },
                )

            body = await _read_json(request)
            owner = body.get("owner") if isinstance(body, dict) else None
            challenge = await challenges.build_permit(owner, tier, log)
            return _json(challenge.to_body(), 402)

        app.add_api_route(path, describe, methods=["GET"], name=f"describe_pong{tier.usd1_amount}")
        app.add_api_route(
            path, challenge_or_settle, methods=["POST"], name=f"pong{tier.usd1_amount}"
        )

    for tier in tiers.values():
        register_tier(tier)

    @app.get("/")
    async def root():
        return {
            "status": "PONG x402 faucet",
            "network": settings.network,
            "tiers": [f"/pong{amount}" for amount in tiers],
        }

    @app.get("/config")
    async def config():
        return {
            "network": settings.network,
            "chainId": settings.chain_id,
            "asset": settings.token_address,
            "payTo": settings.treasury,
            "facilitator": chain.address,
            "tiers": [
                {
                    "usd1Amount": tier.usd1_amount,
                    "pongAllocation": tier.pong_allocation,
                    "minorUnitsValue": tier.minor_units_value,
                }
                for tier in tiers.values()
            ],
            "challengeMinutes": settings.challenge_minutes,
            "signaturePolicy": settings.signature_policy.value,
            "settlementStrategy": settings.settlement_strategy.value,
        }

    @app.get("/api/pong")
    async def describe_eip3009():
        tier = tiers[settings.default_eip3009_tier]
        return _json(
            payment_descriptor(
                settings,
                tier,
                "/api/pong",
                note="POST {owner, amount} to /api/pong for a TransferWithAuthorization challenge.",
            ),
            402,
        )

    @app.post("/api/pong")
    async def eip3009_challenge(request: Request):
        log = request_logger(logger, "/api/pong", _request_id())
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise InputValidationError("Invalid request", "expected a JSON object")
        tier = tier_for_amount(tiers, body.get("amount") or settings.default_eip3009_tier)
        challenge = await challenges.build_transfer_authorization(body.get("owner"), tier, log)
        return _json(challenge.to_body(), 402)

    @app.post("/settle")
    async def settle_permit(request: Request):
        log = request_logger(logger, "Settle", _request_id())
        auth = parse_permit_request(await _read_json(request))
        result = await settle(auth, None, log)
        return _json(result.to_body(), 201)

    @app.post("/api/pong/settle")
    async def settle_eip3009(request: Request):
        log = request_logger(logger, "Settle3009", _request_id())
        auth = parse_transfer_request(await _read_json(request))
        result = await settle(auth, None, log)
        return _json(result.to_body(), 201)

    @app.get("/api/health")
    async def health():
        required = ("TREASURY", "FACILITATOR_PK")
        env = {name: "set" if os.getenv(name) else "missing" for name in required}
        for name in ("USD1_TOKEN", "RPC_URL"):
            env[name] = "set" if os.getenv(name) else "default"
        return {
            "status": "ok",
            "env": env,
            "challengeMinutes": settings.challenge_minutes,
            "pongPerUsd1": settings.pong_per_usd1,
            "ready": all(env[name] == "set" for name in required),
        }

    @app.get("/api/diagnostic")
    async def diagnostic():
        checks: dict[str, Any] = {}
        try:
            code = await chain.get_code(settings.token_address)
            checks["contractExists"] = len(code) > 0
            checks["contractBytecodeLength"] = len(code)
        except Exception as exc:
            logger.warning("Diagnostic get_code failed: %s", exc)
            checks["contractExists"] = False
            checks["codeError"] = str(exc)

        try:
            checks["tokenName"] = await chain.read_name()
            checks["canReadContract"] = True
        except Exception as exc:
            checks["canReadContract"] = False
            checks["readError"] = str(exc)

        checks["facilitatorAddress"] = chain.address
        try:
            balance = await chain.get_balance(chain.address)
            checks["facilitatorBalance"] = str(balance)
            checks["facilitatorBalanceBNB"] = f"{Web3.from_wei(balance, 'ether'):.4f} BNB"
            checks["hasGas"] = balance > 0
        except Exception as exc:
            checks["hasGas"] = False
            checks["facilitatorError"] = str(exc)

        checks["treasuryAddress"] = settings.treasury
        try:
            treasury_balance = await chain.get_balance(settings.treasury)
            checks["treasuryBalanceBNB"] = f"{Web3.from_wei(treasury_balance, 'ether'):.4f} BNB"
        except Exception as exc:
            checks["treasuryError"] = str(exc)

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "ready": bool(
                checks["contractExists"] and checks["canReadContract"] and checks["hasGas"]
            ),
        }

    @app.get("/api/debug-usd1")
    async def debug_usd1():
        report: dict[str, Any] = {"contract": settings.token_address, "chainId": settings.chain_id}
        for key, read in (("name", chain.read_name), ("version", chain.read_version)):
            try:
                report[key] = await read()
            except Exception as exc:
                report[key] = f"ERROR: {exc}"

        on_chain = None
        try:
            on_chain = await chain.read_domain_separator()
            report["domainSeparator"] = Web3.to_hex(on_chain)
        except Exception as exc:
            report["domainSeparator"] = f"ERROR: {exc}"

        domain = await domains.resolve()
        computed = domain.separator()
        report["eip2612Domain"] = domain.to_dict()
        report["computedDomainSeparator"] = Web3.to_hex(computed)
        report["separatorMatch"] = on_chain is not None and on_chain == computed

        try:
            report["testNonce"] = str(await chain.read_nonce(_PROBE_ADDRESS))
        except Exception as exc:
            report["testNonce"] = f"ERROR: {exc}"
        return report

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pong_server:create_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
    )
