"""Logging setup shared by the server, the operator scripts and the tests."""

import logging
import os
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Client libraries log every RPC round trip at DEBUG/INFO.
_QUIET_LOGGERS = ("web3", "urllib3", "httpx", "httpcore")

_configured = False


def _level_from_env() -> int:
    name = os.getenv("LOG_LEVEL", "").strip().upper()
    if name:
        level = logging.getLevelName(name)
        return level if isinstance(level, int) else logging.INFO
    return logging.DEBUG if os.getenv("DEBUG") == "1" else logging.INFO


def configure_logging(level: int | None = None) -> None:
    global _configured
    if _configured:
        return

    level = _level_from_env() if level is None else level
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if level > logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str | None = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name or "pong")


class _RequestPrefixAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['route']}:{self.extra['request_id']}] {msg}", kwargs


def request_logger(
    logger: logging.Logger, route: str, request_id: str
) -> logging.LoggerAdapter:
    """Wrap ``logger`` so every record carries a ``[route:request_id]`` prefix."""
    return _RequestPrefixAdapter(logger, {"route": route, "request_id": request_id})


def short_hex(value: Any, keep: int = 10) -> str:
    text = str(value)
    if len(text) <= keep:
        return text
    return f"{text[:keep]}..."


# Signed authorizations, raw or decoded from X-PAYMENT, are replayable until settled.
_SECRET_KEYS = frozenset(
    {"authorization", "facilitator_pk", "private_key", "secret", "signature", "x-payment"}
)
_SECRET_SUFFIXES = ("_authorization", "_pk", "_private_key", "_secret", "_signature")


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return (
        lowered in _SECRET_KEYS
        or lowered.endswith(_SECRET_SUFFIXES)
        or "private" in lowered
    )


def redact(value: Any, *, sensitive: bool = False) -> Any:
    """Copy ``value`` with secret-bearing entries masked and bytes shown as hex."""
    if isinstance(value, dict):
        return {
            key: redact(item, sensitive=sensitive or is_secret_key(str(key)))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        items = [redact(item, sensitive=sensitive) for item in value]
        return items if isinstance(value, list) else tuple(items)

    if not sensitive:
        if isinstance(value, (bytes, bytearray)):
            return "0x" + bytes(value).hex()
        return value

    if isinstance(value, str):
        return f"<redacted:{len(value)} chars>"
    if isinstance(value, (bytes, bytearray)):
        return f"<redacted:bytes:{len(value)}>"
    if isinstance(value, int) and not isinstance(value, bool):
        return "<redacted:int>"
    return value


def log_json(
    logger: logging.Logger | logging.LoggerAdapter, level: int, message: str, data: Any
) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, "%s: %s", message, redact(data))
