"""Redaction for log context.

Customer phone numbers, message bodies and access tokens must never reach
the logs. Everything passed as ``extra_fields`` goes through
``safe_log_context`` first.
"""

import re
from typing import Any

_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-().]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[a-z0-9._\-]+")

_UUID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")

_REDACTED = "[REDACTED]"

# Keys whose values are dropped outright regardless of content.
_SECRET_KEYS = frozenset({"access_token", "accesstoken", "password", "token", "text", "body"})


def redact_string(value: str) -> str:
    if _UUID_PATTERN.fullmatch(value):
        return value
    result = _BEARER_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """String form of ``value`` with PII removed. Containers log shape only."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return f"dict(keys={sorted(str(k) for k in value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    context: dict[str, str] = {}
    for key, value in kwargs.items():
        if key.lower() in _SECRET_KEYS and value is not None:
            context[key] = _REDACTED
        else:
            context[key] = redact_value(value)
    return context
