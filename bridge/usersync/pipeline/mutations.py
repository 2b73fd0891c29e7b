"""
Mutation pipeline shared by the HTTP API, the update-request subscriber
and the replication adapter.

Every mutation follows the same steps:
1. Validate input (nothing is written on failure)
2. Write the user row
3. Append a ledger record with the next version number
4. Publish a mutation event (best effort)

Invariants:
    - Versions of one user are contiguous from 1; allocation happens under
      a per-user lock and the ledger's unique constraint rejects any
      cross-process duplicate, which is retried
    - A mutation is durable once the ledger append succeeded; publish
      failures are logged and never undo it
    - Mutations triggered by a bus message use BROADCAST_ONLY
    - Applied-event markers (the inbound source event, and the outgoing
      event on REQUEST_AND_BROADCAST) are written with the ledger record
    - A created row that could not be versioned is discarded

How to change safely:
    - New operations must go through _append() and _finish()
    - Keep the lock held across read-modify-append for a user
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, TypeVar

from ..config import PipelineConfig
from ..errors import BusError, NotFoundError, StoreError
from ..store.base import DuplicateVersionError, EntityStore, EntityStoreError
from ..store.models import User, VersionRecord
from .events import (
    MutationEvent,
    Operation,
    OutputChannel,
    VersionedEntity,
    VersionHistory,
)
from .publisher import EventPublisher
from .validation import validate_entity_id, validate_user_or_raise

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationPipeline:
    """Validated, versioned, published user mutations.

    Example:
        >>> pipeline = MutationPipeline(store, EventPublisher(bus, subjects))
        >>> created = await pipeline.create("a@x.com", "active", actor="user:1")
        >>> created.version
        1
        >>> updated = await pipeline.update(created.user.id, "a@x.com", "inactive")
        >>> updated.version
        2
    """

    def __init__(
        self,
        store: EntityStore,
        publisher: EventPublisher,
        config: PipelineConfig | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.config = config or PipelineConfig()
        self._locks: dict[int, asyncio.Lock] = {}

    @property
    def object_type(self) -> str:
        return self.config.object_type

    def _lock_for(self, entity_id: int) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock

    async def _call_store(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except EntityStoreError as e:
            raise StoreError(str(e), operation=operation) from e

    async def _get_existing(self, entity_id: int) -> User:
        user = await self._call_store("get_entity_by_id", self.store.get_entity_by_id(entity_id))
        if user is None:
            raise NotFoundError(f"User not found: {entity_id}", object_id=entity_id)
        return user

    def _markers(
        self, channel: OutputChannel, source_event_id: str | None
    ) -> tuple[str, list[str]]:
        """Outgoing event id and the event ids to mark applied with the ledger record."""
        event_id = str(uuid.uuid4())
        markers = [source_event_id] if source_event_id else []
        if channel == OutputChannel.REQUEST_AND_BROADCAST:
            # The local subscriber acks the echo instead of applying it again.
            markers.append(event_id)
        return event_id, markers

    async def _append(
        self,
        user: User,
        operation: Operation,
        actor: str,
        applied_event_ids: list[str],
    ) -> VersionRecord:
        """Append the next version of a user, retrying on a taken version number."""
        last_error: DuplicateVersionError | None = None

        for attempt in range(self.config.max_version_retries + 1):
            latest = await self._call_store(
                "get_latest_version_number",
                self.store.get_latest_version_number(self.object_type, user.id),
            )
            try:
                return await self.store.append_version(
                    self.object_type,
                    user.id,
                    latest + 1,
                    user.to_dict(),
                    operation.value,
                    actor,
                    applied_event_ids=applied_event_ids,
                )
            except DuplicateVersionError as e:
                last_error = e
                logger.warning(
                    "Version already taken, retrying",
                    extra={"user_id": user.id, "version": latest + 1, "attempt": attempt + 1},
                )
            except EntityStoreError as e:
                raise StoreError(str(e), operation="append_version") from e

        raise StoreError(
            f"Could not allocate a version for user {user.id} after "
            f"{self.config.max_version_retries + 1} attempts",
            operation="append_version",
        ) from last_error

    async def _finish(
        self,
        user: User,
        record: VersionRecord,
        operation: Operation,
        actor: str,
        channel: OutputChannel,
        event_id: str,
        previous: User | None = None,
    ) -> VersionedEntity:
        event = MutationEvent.build(
            user_id=user.id,
            operation=operation,
            version=record.version,
            user_data=record.snapshot,
            created_by=actor,
            previous_data=previous.to_dict() if previous else None,
            event_id=event_id,
        )

        try:
            await self.publisher.publish(event, channel)
        except BusError as e:
            logger.error(
                "Failed to publish mutation event",
                extra={
                    "user_id": user.id,
                    "version": record.version,
                    "operation": operation.value,
                    "error": str(e),
                },
            )

        logger.info(
            f"User {operation.value}d",
            extra={
                "user_id": user.id,
                "version": record.version,
                "actor": actor,
                "channel": channel.value,
            },
        )
        return VersionedEntity(user=user, record=record)

    async def _discard_unversioned(self, entity_id: int) -> None:
        try:
            removed = await self.store.delete_entity_if_unversioned(entity_id)
        except EntityStoreError as e:
            logger.error(
                "Failed to discard unversioned user",
                extra={"user_id": entity_id, "error": str(e)},
            )
            return
        if removed:
            logger.warning("Discarded unversioned user", extra={"user_id": entity_id})

    async def create(
        self,
        email: str,
        status: str,
        role: str | None = None,
        actor: str = "system",
        channel: OutputChannel = OutputChannel.REQUEST_AND_BROADCAST,
        source_event_id: str | None = None,
    ) -> VersionedEntity:
        """Create a user at version 1.

        Raises:
            ValidationError: If input is malformed
            StoreError: If persistence fails
        """
        validate_user_or_raise(email, status, role)

        user = await self._call_store(
            "create_entity",
            self.store.create_entity(email.strip(), status.strip(), role),
        )
        event_id, markers = self._markers(channel, source_event_id)
        async with self._lock_for(user.id):
            try:
                record = await self._append(user, Operation.CREATE, actor, markers)
            except StoreError:
                await self._discard_unversioned(user.id)
                raise
            return await self._finish(
                user, record, Operation.CREATE, actor, channel, event_id
            )

    async def update(
        self,
        entity_id: int,
        email: str,
        status: str,
        role: str | None = None,
        actor: str = "system",
        channel: OutputChannel = OutputChannel.REQUEST_AND_BROADCAST,
        source_event_id: str | None = None,
    ) -> VersionedEntity:
        """Overwrite a user's fields and append the next version.

        Raises:
            ValidationError: If input is malformed
            NotFoundError: If the user does not exist
            StoreError: If persistence fails
        """
        entity_id = validate_entity_id(entity_id)
        validate_user_or_raise(email, status, role)

        async with self._lock_for(entity_id):
            existing = await self._get_existing(entity_id)
            updated = await self._call_store(
                "update_entity",
                self.store.update_entity(entity_id, email.strip(), status.strip(), role),
            )
            if updated is None:
                raise NotFoundError(f"User not found: {entity_id}", object_id=entity_id)

            event_id, markers = self._markers(channel, source_event_id)
            record = await self._append(updated, Operation.UPDATE, actor, markers)
            return await self._finish(
                updated,
                record,
                Operation.UPDATE,
                actor,
                channel,
                event_id,
                previous=existing,
            )

    async def delete(
        self,
        entity_id: int,
        actor: str = "system",
        channel: OutputChannel = OutputChannel.REQUEST_AND_BROADCAST,
        source_event_id: str | None = None,
    ) -> VersionedEntity:
        """Soft delete a user; the row stays and a delete version is appended.

        Deleting an already deleted user appends nothing and returns its
        latest version.

        Raises:
            ValidationError: If the id is malformed
            NotFoundError: If the user does not exist
            StoreError: If persistence fails
        """
        entity_id = validate_entity_id(entity_id)

        async with self._lock_for(entity_id):
            existing = await self._get_existing(entity_id)
            if existing.deleted:
                logger.info("User already deleted", extra={"user_id": entity_id})
                latest = await self.get_latest(entity_id)
                if source_event_id:
                    await self._call_store(
                        "record_applied_event",
                        self.store.record_applied_event(
                            source_event_id, entity_id, latest.version
                        ),
                    )
                return latest

            deleted = await self._call_store(
                "mark_deleted", self.store.mark_deleted(entity_id)
            )
            if deleted is None:
                raise NotFoundError(f"User not found: {entity_id}", object_id=entity_id)

            event_id, markers = self._markers(channel, source_event_id)
            record = await self._append(deleted, Operation.DELETE, actor, markers)
            return await self._finish(
                deleted, record, Operation.DELETE, actor, channel, event_id
            )

    async def get_latest(self, entity_id: int) -> VersionedEntity:
        """Current user with its newest ledger record.

        Raises:
            NotFoundError: If the user or its ledger records are absent
        """
        entity_id = validate_entity_id(entity_id)
        user = await self._get_existing(entity_id)

        latest = await self._call_store(
            "get_latest_version_number",
            self.store.get_latest_version_number(self.object_type, entity_id),
        )
        record = None
        if latest > 0:
            record = await self._call_store(
                "get_version_by_number",
                self.store.get_version_by_number(self.object_type, entity_id, latest),
            )
        if record is None:
            raise NotFoundError(f"No versions found for user {entity_id}", object_id=entity_id)
        return VersionedEntity(user=user, record=record)

    async def list_versions(self, entity_id: int) -> VersionHistory:
        """Current user with every ledger record, oldest first.

        Raises:
            NotFoundError: If the user does not exist
        """
        entity_id = validate_entity_id(entity_id)
        user = await self._get_existing(entity_id)
        records = await self._call_store(
            "list_versions_by_object",
            self.store.list_versions_by_object(self.object_type, entity_id),
        )
        return VersionHistory(user=user, records=records)

    async def get_version(self, entity_id: int, version: int) -> VersionedEntity:
        """One specific version of a user.

        Raises:
            NotFoundError: If the user or the version does not exist
        """
        entity_id = validate_entity_id(entity_id)
        version = validate_entity_id(version, field_name="version")
        user = await self._get_existing(entity_id)
        record = await self._call_store(
            "get_version_by_number",
            self.store.get_version_by_number(self.object_type, entity_id, version),
        )
        if record is None:
            raise NotFoundError(
                f"Version {version} not found for user {entity_id}",
                object_type="version",
                object_id=entity_id,
            )
        return VersionedEntity(user=user, record=record)

    async def is_event_applied(self, event_id: str) -> bool:
        """Whether a mutation event was already applied."""
        return await self._call_store("is_event_applied", self.store.is_event_applied(event_id))
