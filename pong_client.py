#!/usr/bin/env python3
"""Walk a PONG tier end to end against a running server with a local key.

PAYMENT_MODE:
  settle     POST /pongN for a Permit challenge, sign, POST /settle
  x-payment  POST /pongN for a Permit challenge, sign, resend with X-PAYMENT
  eip3009    POST /api/pong for a TransferWithAuthorization challenge, sign,
             POST /api/pong/settle
"""

import asyncio
import base64
import json
import os
from typing import Any

import httpx
from dotenv import load_dotenv
from eth_account import Account

from pong_typed_data import PERMIT, TokenDomain, sign_typed_data


def sign_challenge(challenge: dict[str, Any], private_key: str) -> str:
    domain = challenge["domain"]
    token_domain = TokenDomain(
        name=domain["name"],
        version=domain["version"],
        chain_id=int(domain["chainId"]),
        verifying_contract=domain["verifyingContract"],
    )
    return sign_typed_data(
        private_key, token_domain, challenge["primaryType"], challenge["values"]
    )


def settle_body(challenge: dict[str, Any], signature: str) -> dict[str, Any]:
    return {**challenge["values"], "signature": signature}


def payment_header(challenge: dict[str, Any], signature: str, network: str) -> str:
    authorization_type = "permit" if challenge["primaryType"] == PERMIT else "eip3009"
    payment = {
        "x402Version": 1,
        "network": network,
        "scheme": "exact",
        "payload": {
            "authorizationType": authorization_type,
            "signature": signature,
            "authorization": challenge["values"],
        },
    }
    return base64.b64encode(json.dumps(payment).encode()).decode()


def _step(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _show(resp: httpx.Response) -> None:
    print(f"Status: {resp.status_code}")
    print(json.dumps(resp.json(), indent=2))


async def main():
    load_dotenv()
    server_url = os.getenv("SERVER_URL", "http://localhost:8001").rstrip("/")
    private_key = os.getenv("PRIVATE_KEY")
    tier = int(os.getenv("PONG_TIER", "5"))
    mode = os.getenv("PAYMENT_MODE", "settle").strip().lower()

    if not private_key:
        raise ValueError("PRIVATE_KEY required in .env")
    if mode not in ("settle", "x-payment", "eip3009"):
        raise ValueError(f"Unknown PAYMENT_MODE: {mode}")

    account = Account.from_key(private_key)
    print(f"Client wallet: {account.address}")

    async with httpx.AsyncClient(timeout=240.0) as client:
        if mode == "eip3009":
            descriptor_url = f"{server_url}/api/pong"
            challenge_url = descriptor_url
            challenge_body = {"owner": account.address, "amount": tier}
            settle_url = f"{server_url}/api/pong/settle"
        else:
            descriptor_url = f"{server_url}/pong{tier}"
            challenge_url = descriptor_url
            challenge_body = {"owner": account.address}
            settle_url = f"{server_url}/settle"

        _step("STEP 1: Payment descriptor")
        resp = await client.get(descriptor_url)
        _show(resp)
        network = resp.json()["accepts"][0]["network"]

        _step("STEP 2: Request authorization challenge")
        resp = await client.post(challenge_url, json=challenge_body)
        _show(resp)
        if resp.status_code != 402:
            return
        challenge = resp.json()

        _step(f"STEP 3: Sign {challenge['primaryType']}")
        signature = sign_challenge(challenge, private_key)
        print(f"Signature: {signature}")

        _step("STEP 4: Settle")
        if mode == "x-payment":
            resp = await client.post(
                challenge_url,
                headers={"X-PAYMENT": payment_header(challenge, signature, network)},
            )
            encoded = resp.headers.get("X-PAYMENT-RESPONSE")
            if encoded:
                print("X-PAYMENT-RESPONSE:")
                print(json.dumps(json.loads(base64.b64decode(encoded)), indent=2))
        else:
            resp = await client.post(settle_url, json=settle_body(challenge, signature))
        _show(resp)

    _step("DONE" if resp.status_code == 201 else "SETTLEMENT FAILED")


if __name__ == "__main__":
    asyncio.run(main())
