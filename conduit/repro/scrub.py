"""Best-effort secret scrubbing for shareable bundles.

Applies to tape string fields only. This is a convenience for sharing
debug bundles, not a sanitization guarantee: it only knows a handful of
common token shapes and never touches the storage snapshot.
"""
from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

_TOKEN_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bsk-(?:ant-|proj-)?[A-Za-z0-9_\-]{6,}"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}"),
    re.compile(r"\bxox[abprs]-[A-Za-z0-9\-]{10,}"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"AIza[0-9A-Za-z_\-]{35}"),
]

_BEARER = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/\-]{8,}=*")

_ASSIGNMENT = re.compile(
    r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|secret|token|password|passwd))"
    r"(\s*[:=]\s*)(['\"]?)(?!\[REDACTED\])[^\s'\"\\,;]{4,}"
)

_SECRET_KEY_NAMES = re.compile(
    r"(?i)(api[_-]?key|secret|token|password|passwd|authorization)$"
)


def scrub_text(text: str) -> str:
    """Replace known secret shapes in ``text``."""
    for pattern in _TOKEN_PATTERNS:
        text = pattern.sub(REDACTED, text)
    text = _BEARER.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    text = _ASSIGNMENT.sub(
        lambda m: f"{m.group(1)}{m.group(2)}{m.group(3)}{REDACTED}", text,
    )
    return text


def scrub_value(value: Any) -> Any:
    """Scrub every string inside a JSON-like value.

    String values stored under secret-looking keys are redacted whole.
    Keys, numbers and booleans are left alone.
    """
    if isinstance(value, str):
        return scrub_text(value)
    if isinstance(value, list):
        return [scrub_value(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if (
                isinstance(item, str)
                and item
                and isinstance(key, str)
                and _SECRET_KEY_NAMES.search(key)
            ):
                out[key] = REDACTED
            else:
                out[key] = scrub_value(item)
        return out
    return value
