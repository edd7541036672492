"""Helpers to scrub PII and credentials from errors, logs and job records."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"\b(?:\d[ -]?){13,16}\b"),
    "email": re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),
    "phone": re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
    "bearer_token": re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
}

DEFAULT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(PII_PATTERNS.values())

SENSITIVE_FIELD_NAMES: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "credentials",
        "client_secret",
        "access_token",
        "refresh_token",
    }
)

REDACTION_TOKEN = "[REDACTED]"
MAX_VALUE_PREVIEW = 120


def redact_text(
    value: str,
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> str:
    """Redact known PII elements from text payloads."""
    compiled = tuple(patterns or DEFAULT_PATTERNS)
    scrubbed = value
    for pattern in compiled:
        scrubbed = pattern.sub(replacement, scrubbed)
    return scrubbed


def detect_pii(value: str) -> list[str]:
    """Return the names of the PII kinds present in ``value``."""
    return [name for name, pattern in PII_PATTERNS.items() if pattern.search(value)]


def is_sensitive_field(field: str) -> bool:
    leaf = field.rsplit(".", 1)[-1].lower()
    return leaf in SENSITIVE_FIELD_NAMES or any(
        marker in leaf for marker in ("password", "secret", "token")
    )


def redact_value(field: str, value: Any) -> Any:
    """Prepare an offending value for inclusion in an error or log record.

    Sensitive fields are masked outright; strings are scrubbed and truncated;
    raw bytes are summarised by length.
    """
    if value is None:
        return None
    if is_sensitive_field(field):
        return REDACTION_TOKEN
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        scrubbed = redact_text(value)
        if len(scrubbed) > MAX_VALUE_PREVIEW:
            scrubbed = scrubbed[:MAX_VALUE_PREVIEW] + "..."
        return scrubbed
    if isinstance(value, Mapping):
        return redact_mapping(value)
    return value


def redact_mapping(
    payload: Mapping[str, Any],
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> dict[str, Any]:
    """Recursively redact mapping values, masking sensitive keys entirely."""
    result: dict[str, Any] = {}
    compiled = tuple(patterns or DEFAULT_PATTERNS)
    for key, value in payload.items():
        if is_sensitive_field(str(key)):
            result[key] = replacement
            continue
        result[key] = _redact_value(value, compiled, replacement)
    return result


def _redact_value(
    value: Any,
    patterns: tuple[re.Pattern[str], ...],
    replacement: str,
) -> Any:
    if isinstance(value, str):
        return redact_text(value, patterns=patterns, replacement=replacement)
    if isinstance(value, Mapping):
        return redact_mapping(value, patterns=patterns, replacement=replacement)
    if isinstance(value, list):
        return [_redact_value(item, patterns, replacement) for item in value]
    if isinstance(value, tuple):
        return tuple(_redact_value(item, patterns, replacement) for item in value)
    return value


__all__ = [
    "detect_pii",
    "is_sensitive_field",
    "redact_mapping",
    "redact_text",
    "redact_value",
    "PII_PATTERNS",
    "REDACTION_TOKEN",
]
