"""Helpers for safe debug logging.

agosync passes WiFi passwords to OS commands and settings through the
durable store. This module redacts sensitive values before they reach
DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "ago_password",
        "psk",
        "wifi-sec.psk",
        "secret",
        "authorization",
        "cookie",
    }
)

_REDACTED = "<redacted>"


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

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
                redacted[key] = _REDACTED
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)


def redact_argv(argv: Sequence[str], secrets: Sequence[str | None] = ()) -> list[str]:
    """Return *argv* with every occurrence of a known secret masked.

    Also masks the value following an nmcli ``password`` keyword, so
    commands stay readable in logs without leaking the key.
    """
    hidden = {s for s in secrets if s}
    result: list[str] = []
    mask_next = False
    for arg in argv:
        if mask_next or arg in hidden:
            result.append(_REDACTED)
        else:
            result.append(arg)
        mask_next = arg.lower() in _SENSITIVE_VALUE_KEYS
    return result
