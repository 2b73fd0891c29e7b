"""
Store contract consumed by the mutation pipeline.

Invariants:
    - Version records are append-only; no method edits or removes them
    - (object_type, object_id, version) is unique; a second append of the
      same triple raises DuplicateVersionError
    - Every backend failure surfaces as EntityStoreError
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Protocol, Sequence, runtime_checkable

from .models import User, VersionRecord


class EntityStoreError(Exception):
    """Store operation failed."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class DuplicateVersionError(EntityStoreError):
    """Another writer already appended this version number."""

    def __init__(self, object_type: str, object_id: int, version: int) -> None:
        super().__init__(
            f"Version {version} already exists for {object_type}:{object_id}",
            operation="append_version",
        )
        self.object_type = object_type
        self.object_id = object_id
        self.version = version


@runtime_checkable
class EntityStore(Protocol):
    """Relational store for users, their version ledger and applied events."""

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def create_entity(
        self,
        email: str,
        status: str,
        role: str | None = None,
        created_at: int | None = None,
    ) -> User: ...

    @abstractmethod
    async def get_entity_by_id(self, entity_id: int) -> User | None: ...

    @abstractmethod
    async def find_entity_by_email(self, email: str) -> User | None: ...

    @abstractmethod
    async def update_entity(
        self,
        entity_id: int,
        email: str,
        status: str,
        role: str | None = None,
        updated_at: int | None = None,
    ) -> User | None: ...

    @abstractmethod
    async def mark_deleted(self, entity_id: int, updated_at: int | None = None) -> User | None: ...

    @abstractmethod
    async def delete_entity(self, entity_id: int) -> bool: ...

    @abstractmethod
    async def delete_entity_if_unversioned(self, entity_id: int) -> bool: ...

    @abstractmethod
    async def list_entities_since(
        self, updated_at: int, entity_id: int, limit: int
    ) -> list[User]: ...

    @abstractmethod
    async def append_version(
        self,
        object_type: str,
        object_id: int,
        version: int,
        snapshot: dict[str, Any],
        action: str,
        actor: str,
        applied_event_ids: Sequence[str] = (),
    ) -> VersionRecord: ...

    @abstractmethod
    async def list_versions_by_object(
        self, object_type: str, object_id: int
    ) -> list[VersionRecord]: ...

    @abstractmethod
    async def get_version_by_id(self, version_id: int) -> VersionRecord | None: ...

    @abstractmethod
    async def get_version_by_number(
        self, object_type: str, object_id: int, version: int
    ) -> VersionRecord | None: ...

    @abstractmethod
    async def get_latest_version_number(self, object_type: str, object_id: int) -> int: ...

    @abstractmethod
    async def is_event_applied(self, event_id: str) -> bool: ...

    @abstractmethod
    async def record_applied_event(
        self, event_id: str, object_id: int | None, version: int | None
    ) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...
