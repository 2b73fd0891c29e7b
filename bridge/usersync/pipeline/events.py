"""
Mutation events and the pipeline's result types.

Wire format of a mutation event (JSON):
    {
        "id": "9b2f...",                 # fresh UUID4 per mutation
        "user_id": 42,
        "operation": "update",           # create | update | delete
        "version": 3,
        "user_data": {...},              # full snapshot after the mutation
        "previous_data": {...},          # only for updates
        "timestamp": "2024-05-01T10:00:00.000Z",
        "created_by": "user:7"
    }
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ProtocolError
from ..store.models import User, VersionRecord, ms_to_iso, now_ms


class Operation(str, Enum):
    """Mutation operation tags."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OutputChannel(Enum):
    """Where the pipeline publishes the resulting event.

    BROADCAST_ONLY is used for every mutation triggered by an inbound bus
    message, so the mutation never lands back on the update-request subject.
    """

    BROADCAST_ONLY = "broadcast_only"
    REQUEST_AND_BROADCAST = "request_and_broadcast"


@dataclass(frozen=True)
class MutationEvent:
    """An immutable mutation notification.

    Attributes:
        id: Unique event id (UUID4)
        user_id: Store id of the mutated user
        operation: create, update or delete
        version: Ledger version produced by the mutation
        user_data: Snapshot after the mutation
        previous_data: Snapshot before the mutation (updates only)
        timestamp: ISO-8601 UTC time of the mutation
        created_by: Actor
    """

    id: str
    user_id: int
    operation: str
    version: int
    user_data: dict[str, Any]
    timestamp: str
    created_by: str
    previous_data: dict[str, Any] | None = None

    @classmethod
    def build(
        cls,
        user_id: int,
        operation: Operation,
        version: int,
        user_data: dict[str, Any],
        created_by: str,
        previous_data: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> MutationEvent:
        """Construct an event stamped with the current time.

        A new UUID4 id is assigned unless event_id is given.
        """
        return cls(
            id=event_id or str(uuid.uuid4()),
            user_id=user_id,
            operation=operation.value,
            version=version,
            user_data=user_data,
            timestamp=ms_to_iso(now_ms()),
            created_by=created_by,
            previous_data=previous_data if operation == Operation.UPDATE else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "operation": self.operation,
            "version": self.version,
            "user_data": self.user_data,
            "timestamp": self.timestamp,
            "created_by": self.created_by,
        }
        if self.previous_data is not None:
            data["previous_data"] = self.previous_data
        return data

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    def headers(self) -> dict[str, str]:
        """Routing/observability metadata attached when publishing."""
        return {
            "event_id": self.id,
            "timestamp": self.timestamp,
            "user_id": str(self.user_id),
            "version": str(self.version),
            "operation": self.operation,
        }

    @classmethod
    def from_dict(cls, data: Any) -> MutationEvent:
        """Parse a wire event.

        The operation tag is not checked here; dispatch rejects unknown tags.

        Raises:
            ProtocolError: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise ProtocolError("Mutation event must be a JSON object", payload=str(data))

        required = ["id", "operation", "user_data"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ProtocolError(f"Missing required fields: {missing}", payload=json.dumps(data))

        user_data = data["user_data"]
        if not isinstance(user_data, dict):
            raise ProtocolError("user_data must be an object", payload=json.dumps(data))

        try:
            user_id = int(data.get("user_id") or user_data.get("id") or 0)
            version = int(data.get("version") or 0)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid numeric field: {e}", payload=json.dumps(data)) from e

        previous = data.get("previous_data")
        return cls(
            id=str(data["id"]),
            user_id=user_id,
            operation=str(data["operation"]),
            version=version,
            user_data=user_data,
            timestamp=str(data.get("timestamp") or ms_to_iso(now_ms())),
            created_by=str(data.get("created_by") or "system"),
            previous_data=previous if isinstance(previous, dict) else None,
        )

    @classmethod
    def from_bytes(cls, payload: bytes) -> MutationEvent:
        """Parse a wire payload.

        Raises:
            ProtocolError: If the payload is not a valid event
        """
        try:
            data = json.loads(payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                f"Malformed mutation event: {e}",
                payload=payload.decode("utf-8", errors="replace"),
            ) from e
        return cls.from_dict(data)


@dataclass
class VersionedEntity:
    """A user paired with one of its ledger records."""

    user: User
    record: VersionRecord

    @property
    def version(self) -> int:
        return self.record.version

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record.id,
            "user_id": self.user.id,
            "version": self.record.version,
            "user_data": self.record.snapshot,
            "action": self.record.action,
            "created_at": ms_to_iso(self.record.created_at),
            "created_by": self.record.actor,
        }


@dataclass
class VersionHistory:
    """A user with its full ledger, oldest version first."""

    user: User
    records: list[VersionRecord] = field(default_factory=list)

    @property
    def versions(self) -> list[int]:
        return [r.version for r in self.records]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user.id,
            "user": self.user.to_dict(),
            "versions": [VersionedEntity(self.user, r).to_dict() for r in self.records],
            "total": len(self.records),
        }
