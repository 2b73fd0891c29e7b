"""
Replication wire types.

Document format (JSON):
    {
        "id": "42",                        # client id; numeric when it is a store id
        "email": "a@x.com",
        "status": "active",
        "role": "admin",                   # "" when unset
        "created_at": "2024-05-01T10:00:00.000Z",
        "updated_at": "2024-05-01T10:00:00.000Z",
        "_deleted": false
    }

Checkpoint format (JSON):
    {"updated_at": "2024-05-01T10:00:00.000Z", "id": "42"}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ..errors import ProtocolError
from ..store.models import User, iso_to_ms, ms_to_iso


@dataclass(frozen=True)
class ReplicationDocument:
    """A user as seen by replicating clients."""

    id: str
    email: str
    status: str
    role: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted: bool = False

    @classmethod
    def from_user(cls, user: User) -> ReplicationDocument:
        """Canonical document for a stored user; the id is the store id."""
        return cls(
            id=str(user.id),
            email=user.email,
            status=user.status,
            role=user.role,
            created_at=ms_to_iso(user.created_at),
            updated_at=ms_to_iso(user.updated_at),
            deleted=user.deleted,
        )

    @classmethod
    def from_dict(cls, data: Any) -> ReplicationDocument:
        """Parse a wire document.

        Missing or null text fields read as empty; a missing or null
        _deleted reads as false.

        Raises:
            ProtocolError: If the document is not an object, has no id, or
                a field has the wrong JSON type
        """
        if not isinstance(data, dict):
            raise ProtocolError("Replication document must be a JSON object", payload=str(data))
        doc_id = data.get("id")
        if doc_id in (None, ""):
            raise ProtocolError("Replication document has no id", payload=json.dumps(data))
        if isinstance(doc_id, bool) or not isinstance(doc_id, (str, int)):
            raise ProtocolError(
                "Replication document id must be a string or integer", payload=json.dumps(data)
            )

        for name in ("email", "status", "role", "created_at", "updated_at"):
            value = data.get(name)
            if value is not None and not isinstance(value, str):
                raise ProtocolError(
                    f"Replication document field '{name}' must be a string",
                    payload=json.dumps(data),
                )

        deleted = data.get("_deleted")
        if deleted is None:
            deleted = False
        elif not isinstance(deleted, bool):
            raise ProtocolError(
                "Replication document field '_deleted' must be a boolean",
                payload=json.dumps(data),
            )

        role = data.get("role")
        return cls(
            id=str(doc_id),
            email=data.get("email") or "",
            status=data.get("status") or "",
            role=role if role else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            deleted=deleted,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status,
            "role": self.role or "",
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "_deleted": self.deleted,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")


@dataclass(frozen=True)
class Checkpoint:
    """Position of a pulling replica: the last (updated_at, id) it has seen."""

    updated_at: str
    id: str

    @classmethod
    def from_user(cls, user: User) -> Checkpoint:
        return cls(updated_at=ms_to_iso(user.updated_at), id=str(user.id))

    @classmethod
    def from_dict(cls, data: Any) -> Checkpoint | None:
        """Parse a checkpoint; None or an empty object means "from the start".

        Raises:
            ProtocolError: If the checkpoint is malformed
        """
        if not data:
            return None
        if not isinstance(data, dict) or "updated_at" not in data:
            raise ProtocolError("Checkpoint must have updated_at", payload=str(data))
        checkpoint = cls(updated_at=str(data["updated_at"]), id=str(data.get("id") or ""))
        checkpoint.cursor()
        return checkpoint

    def cursor(self) -> tuple[int, int]:
        """(updated_at ms, store id) used to query the store.

        Raises:
            ProtocolError: If updated_at is not an ISO-8601 timestamp
        """
        try:
            updated_at = iso_to_ms(self.updated_at)
        except ValueError as e:
            raise ProtocolError(
                f"Invalid checkpoint updated_at: {self.updated_at}", payload=self.updated_at
            ) from e
        entity_id = int(self.id) if self.id.isascii() and self.id.isdigit() else 0
        return updated_at, entity_id

    def to_dict(self) -> dict[str, str]:
        return {"updated_at": self.updated_at, "id": self.id}
