"""Helpers for safe logging.

Payloads from the broker are untrusted and unbounded, and the configuration
carries broker credentials. Nothing from either goes into a log record
without passing through this module.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "mqtt_password",
        "token",
        "authorization",
        "cookie",
    }
)


def payload_excerpt(payload: bytes, *, max_bytes: int = 200) -> str:
    """Printable excerpt of a raw payload for diagnostics."""
    text = payload[:max_bytes].decode("utf-8", errors="replace")
    text = "".join(ch if ch.isprintable() else "?" for ch in text)
    if len(payload) > max_bytes:
        return f"{text}…<truncated {len(payload) - max_bytes}b>"
    return text


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for logs.

    Dataclass instances (such as the runtime configuration) are converted
    to dicts first.
    """
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>" if v is not None else None
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, (frozenset, set)):
        return sorted(redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value)

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
