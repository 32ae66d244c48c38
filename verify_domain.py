#!/usr/bin/env python3
"""Check that the EIP-712 domain we sign with matches the token's DOMAIN_SEPARATOR.

Read-only; needs no key. Run it after changing TOKEN_NAME / TOKEN_VERSION or
pointing USD1_TOKEN at a different deployment. Exit status 0 on match.
"""

import os
import sys

from dotenv import load_dotenv
from web3 import Web3

from pong_chain import USD1_ABI
from pong_config import DEFAULT_RPC_URL, DEFAULT_TOKEN_NAME, DEFAULT_TOKEN_VERSION, DEFAULT_USD1_TOKEN
from pong_typed_data import CANDIDATE_VERSIONS, compute_domain_separator, probe_domain_version


def _print_header(title: str) -> None:
    print("\n" + "=" * 72)
    print(title)
    print("=" * 72)


def _try_call(fn):
    try:
        return fn().call()
    except Exception as exc:
        print(f"  call failed: {exc}")
        return None


def main() -> int:
    load_dotenv()
    rpc_url = os.getenv("RPC_URL", DEFAULT_RPC_URL)
    token_address = Web3.to_checksum_address(os.getenv("USD1_TOKEN", DEFAULT_USD1_TOKEN))
    chain_id = int(os.getenv("CHAIN_ID", "56"))
    name = os.getenv("TOKEN_NAME", DEFAULT_TOKEN_NAME)
    version = os.getenv("TOKEN_VERSION", DEFAULT_TOKEN_VERSION)

    _print_header("CONFIG")
    print(f"RPC_URL: {rpc_url}")
    print(f"USD1_TOKEN: {token_address}")
    print(f"CHAIN_ID: {chain_id}")
    print(f"TOKEN_NAME: {name!r}")
    print(f"TOKEN_VERSION: {version!r}")

    w3 = Web3(Web3.HTTPProvider(rpc_url))
    token = w3.eth.contract(address=token_address, abi=USD1_ABI)

    _print_header("ON-CHAIN")
    on_chain_name = _try_call(token.functions.name)
    on_chain_version = _try_call(token.functions.version)
    separator = _try_call(token.functions.DOMAIN_SEPARATOR)
    eip712_domain = _try_call(token.functions.eip712Domain)
    print(f"name(): {on_chain_name!r}")
    print(f"version(): {on_chain_version!r}")
    print(f"eip712Domain(): {eip712_domain!r}")
    if separator is None:
        print("ERROR: DOMAIN_SEPARATOR() unavailable; nothing to compare against")
        return 1
    separator = bytes(separator)
    print(f"DOMAIN_SEPARATOR(): {Web3.to_hex(separator)}")

    _print_header("COMPARISON")
    configured = compute_domain_separator(name, version, chain_id, token_address)
    print(f"Configured separator: {Web3.to_hex(configured)}")
    if configured == separator:
        print("MATCH: configured domain is correct")
        return 0
    print("MISMATCH: signatures built from the configured domain will be rejected")

    if on_chain_name and on_chain_name != name:
        print(f"TOKEN_NAME differs from name(): {on_chain_name!r}")

    _print_header("VERSION PROBE")
    probe_name = on_chain_name or name
    print(f"Trying versions {list(CANDIDATE_VERSIONS)} with name {probe_name!r}")
    found = probe_domain_version(probe_name, chain_id, token_address, separator)
    if found is None:
        print("No candidate version matched")
    else:
        print(f"Matching version: {found!r} (set TOKEN_VERSION={found})")
    return 1


if __name__ == "__main__":
    sys.exit(main())
