"""
changemaker.engine.address — Shipping address rules
====================================================

Completeness check used before any SKU issuance, and the keyword match
that decides whether a failed SKU reward is retried after an address fix.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ADDRESS_FIELDS",
    "REQUIRED_ADDRESS_FIELDS",
    "ADDRESS_ERROR_KEYWORDS",
    "missing_address_fields",
    "missing_address_message",
    "is_address_error",
]

# Fields whose change on a profile update triggers the retry path.
ADDRESS_FIELDS: tuple[str, ...] = (
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "country",
)

REQUIRED_ADDRESS_FIELDS: tuple[str, ...] = (
    "address_line1",
    "city",
    "state",
    "zip_code",
    "country",
)

ADDRESS_ERROR_KEYWORDS: tuple[str, ...] = ("address", "shipping", "state", "zip", "postal")


def missing_address_fields(user: Any) -> list[str]:
    """Return required address fields that are empty on *user*, in order."""
    missing = []
    for field in REQUIRED_ADDRESS_FIELDS:
        value = getattr(user, field, None)
        if value is None or not str(value).strip():
            missing.append(field)
    return missing


def missing_address_message(missing: list[str]) -> str:
    return (
        "Participant missing required shipping address fields: "
        f"{', '.join(missing)}. "
        "Please update participant profile before issuing catalog rewards."
    )


def is_address_error(message: str | None) -> bool:
    """True if *message* mentions any address keyword (case-insensitive)."""
    if not message:
        return False
    lowered = message.lower()
    return any(keyword in lowered for keyword in ADDRESS_ERROR_KEYWORDS)
