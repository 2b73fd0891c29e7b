"""
Checkpointed pull/push replication for offline-first clients.

Pull returns documents strictly after a checkpoint, ordered by
(updated_at, id), soft-deleted documents included. Push runs each row's
newDocumentState through the sync adapter.

Conflict handling is last write wins, so push never reports conflicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import ProtocolError, StoreError, UserSyncError
from ..store.base import EntityStore, EntityStoreError
from .adapter import ReplicationSyncAdapter
from .documents import Checkpoint, ReplicationDocument

logger = logging.getLogger(__name__)

DEFAULT_PULL_LIMIT = 100
MAX_PULL_LIMIT = 1000


@dataclass
class PullResult:
    documents: list[ReplicationDocument]
    checkpoint: Checkpoint | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents": [d.to_dict() for d in self.documents],
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
        }


@dataclass
class PushResult:
    documents: list[ReplicationDocument] = field(default_factory=list)
    conflicts: list[ReplicationDocument] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents": [d.to_dict() for d in self.documents],
            "conflicts": [d.to_dict() for d in self.conflicts],
            "errors": self.errors,
        }


class ReplicationProtocol:
    """Pull/push endpoints of the replication protocol.

    Example:
        >>> protocol = ReplicationProtocol(store, adapter)
        >>> page = await protocol.pull(None, limit=50)
        >>> page = await protocol.pull(page.checkpoint, limit=50)
    """

    def __init__(
        self,
        store: EntityStore,
        adapter: ReplicationSyncAdapter,
        max_limit: int = MAX_PULL_LIMIT,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.max_limit = max_limit

    async def pull(
        self, checkpoint: Checkpoint | None, limit: int = DEFAULT_PULL_LIMIT
    ) -> PullResult:
        """Documents changed after the checkpoint.

        Raises:
            ProtocolError: If the checkpoint is malformed
            StoreError: If the query fails
        """
        limit = max(1, min(limit, self.max_limit))
        updated_at, entity_id = checkpoint.cursor() if checkpoint else (-1, 0)

        try:
            users = await self.store.list_entities_since(updated_at, entity_id, limit)
        except EntityStoreError as e:
            raise StoreError(str(e), operation="pull") from e

        documents = [ReplicationDocument.from_user(u) for u in users]
        new_checkpoint = Checkpoint.from_user(users[-1]) if users else checkpoint

        logger.debug(
            "Pulled documents",
            extra={"count": len(documents), "limit": limit},
        )
        return PullResult(documents=documents, checkpoint=new_checkpoint)

    async def push(self, rows: list[Any], actor: str | None = None) -> PushResult:
        """Apply pushed rows; per-row failures are reported, not raised.

        Each row is {"newDocumentState": {...}, "assumedMasterState": {...}?}.
        """
        result = PushResult()

        for row in rows:
            state = row.get("newDocumentState") if isinstance(row, dict) else None
            client_id = state.get("id") if isinstance(state, dict) else None
            try:
                if state is None:
                    raise ProtocolError("Push row has no newDocumentState", payload=str(row))
                document = ReplicationDocument.from_dict(state)
                outcome = await self.adapter.apply_document(document, actor=actor)
            except UserSyncError as e:
                logger.warning(
                    "Failed to apply pushed document",
                    extra={"client_id": client_id, "error": e.message},
                )
                result.errors.append({"id": client_id, **e.to_dict()})
                continue

            result.documents.append(outcome.document)

        logger.info(
            "Processed push",
            extra={"rows": len(rows), "applied": len(result.documents), "errors": len(result.errors)},
        )
        return result
