"""Event payload sanitization.

Events are fanned out to broadcast channels, so secrets are redacted and
wallet addresses are shortened before an event is stored or delivered.
"""

from typing import Any, Dict

SENSITIVE_FIELDS = frozenset({
    "private_key",
    "privateKey",
    "secret",
    "password",
    "token",
    "signature",
})

MASKED_FIELDS = frozenset({"wallet"})

REDACTED = "[REDACTED]"


def mask_identifier(value: str, keep: int = 4) -> str:
    """Shorten an address-like identifier to ``abcd...wxyz``."""
    if len(value) <= keep * 2:
        return value
    return f"{value[:keep]}...{value[-keep:]}"


def sanitize_event_data(data: Any) -> Dict[str, Any]:
    """Return a shallow copy of ``data`` safe to publish.

    Non-mapping payloads become an empty dict.
    """
    if not isinstance(data, dict):
        return {}

    sanitized = dict(data)

    for name in SENSITIVE_FIELDS:
        if sanitized.get(name):
            sanitized[name] = REDACTED

    for name in MASKED_FIELDS:
        value = sanitized.get(name)
        if isinstance(value, str):
            sanitized[name] = mask_identifier(value)

    return sanitized
