"""
PII redaction for stored provider payloads.

Key-based redaction for personal fields and value-based masking of email
addresses left in free-text fields. Identifiers needed for reconciliation
(customer, subscription, price, metadata.tier) are never touched.
"""
import re
from typing import Any

REDACTED = "[REDACTED]"

# Exact key names (case-insensitive) whose whole value is personal data
_PII_KEYS = frozenset({
    "email", "name", "phone", "address", "shipping", "billing_details",
    "card", "payment_method_details", "receipt_email", "tax_ids",
    "customer_tax_ids", "last4", "fingerprint", "exp_month", "exp_year",
    "ip_address",
})

# Key suffixes that mark personal data (customer_email, account_name ...)
_PII_SUFFIXES = ("_email", "_name", "_phone", "_address", "_shipping")

_EMAIL_PATTERN = re.compile(
    r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+"
)


def _is_pii_key(key: str) -> bool:
    lower = key.lower()
    return lower in _PII_KEYS or lower.endswith(_PII_SUFFIXES)


def _redact_string(value: str) -> str:
    return _EMAIL_PATTERN.sub("[REDACTED_EMAIL]", value)


def redact_payload(obj: Any) -> Any:
    """Recursively redact a provider payload; returns a new structure."""
    if isinstance(obj, dict):
        result = {}
        for k, v in obj.items():
            if isinstance(k, str) and _is_pii_key(k) and v is not None:
                result[k] = REDACTED
            else:
                result[k] = redact_payload(v)
        return result
    if isinstance(obj, list):
        return [redact_payload(item) for item in obj]
    if isinstance(obj, str):
        return _redact_string(obj)
    return obj
