"""
Records held by the relational store.

Timestamps are Unix milliseconds in the store and ISO-8601 UTC strings on
the wire; the helpers below convert between the two.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(ms: int) -> str:
    """Render Unix milliseconds as an ISO-8601 UTC string.

    >>> ms_to_iso(0)
    '1970-01-01T00:00:00.000Z'
    """
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_to_ms(value: str) -> int:
    """Parse an ISO-8601 string into Unix milliseconds (naive means UTC).

    >>> iso_to_ms("1970-01-01T00:00:01.500Z")
    1500
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


@dataclass
class User:
    """Current state of a user.

    Attributes:
        id: Store-assigned identifier
        email: Email address
        status: Account status (e.g. "active")
        role: Optional role
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
        deleted: Soft-delete flag
    """

    id: int
    email: str
    status: str
    role: str | None
    created_at: int
    updated_at: int
    deleted: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Snapshot used in ledger records, events and API responses."""
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status,
            "role": self.role,
            "created_at": ms_to_iso(self.created_at),
            "updated_at": ms_to_iso(self.updated_at),
            "deleted": self.deleted,
        }


@dataclass
class VersionRecord:
    """One immutable ledger entry.

    Attributes:
        id: Ledger row identifier
        object_type: Object type tag ("user")
        object_id: Identifier of the versioned object
        version: Version number, contiguous from 1 per object
        snapshot: Full snapshot of the object at this version
        action: create, update or delete
        actor: Who performed the mutation
        created_at: Append timestamp (Unix ms)
    """

    id: int
    object_type: str
    object_id: int
    version: int
    snapshot: dict[str, Any] = field(default_factory=dict)
    action: str = "create"
    actor: str = "system"
    created_at: int = 0
