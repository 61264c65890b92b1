"""
Deterministic content digest of a todo's semantic fields.

The digest is what gets mirrored to the ledger, so the serialization below
is a wire format: field order, separator and timestamp rendering must not
change without migrating every stored hash.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

SEPARATOR = "|"
HASH_PREFIX = "0x"
ZERO_DIGEST = HASH_PREFIX + "0" * 64


def canonical_timestamp(value: Optional[datetime]) -> str:
    """
    Render a datetime as UTC ``YYYY-MM-DDTHH:MM:SS.mmmZ``.
    Naive datetimes are taken to be UTC already; None renders as "".
    """
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _serialize(todo: Mapping[str, Any]) -> str:
    created_at = todo.get("created_at")
    if created_at is None:
        raise ValueError("created_at is required to hash a todo")
    priority = todo.get("priority") or "medium"
    return SEPARATOR.join(
        [
            str(todo.get("owner_id") or ""),
            todo.get("title") or "",
            todo.get("description") or "",
            "true" if todo.get("completed") else "false",
            getattr(priority, "value", priority),
            canonical_timestamp(todo.get("due_date")),
            canonical_timestamp(created_at),
        ]
    )


# PUBLIC_INTERFACE
def compute_hash(todo: Mapping[str, Any]) -> str:
    """Return the 0x-prefixed SHA-256 hex digest of the todo's semantic fields."""
    digest = hashlib.sha256(_serialize(todo).encode("utf-8")).hexdigest()
    return HASH_PREFIX + digest


# PUBLIC_INTERFACE
def verify_hash(todo: Mapping[str, Any], expected: str) -> bool:
    """Recompute the digest and compare it case-insensitively."""
    return compute_hash(todo).lower() == (expected or "").lower()


def is_zero_digest(value: Optional[str]) -> bool:
    if not value:
        return True
    return int(value[2:] if value.lower().startswith(HASH_PREFIX) else value, 16) == 0


def hex_to_bytes32(value: str) -> bytes:
    """Strip the 0x prefix and left-pad to exactly 32 bytes."""
    clean = value[2:] if value.lower().startswith(HASH_PREFIX) else value
    if len(clean) > 64:
        raise ValueError("digest longer than 32 bytes")
    return bytes.fromhex(clean.rjust(64, "0"))


def bytes32_to_hex(value: bytes) -> str:
    return HASH_PREFIX + bytes(value).hex().rjust(64, "0")
