"""
Replication sync adapter.

Translates replication documents into pipeline mutations and republishes
the canonical user so every replica converges on the store's state.

Decision table (soft-delete flag x identity):
    deleted   resolved    -> soft delete through the pipeline
    deleted   unresolved  -> nothing to delete, acked
    live      resolved    -> update
    live      unresolved  -> create

Invariants:
    - Every pipeline call uses BROADCAST_ONLY
    - Republished documents carry an origin header; inbound documents with
      this adapter's origin are acked without being applied
    - Republish failures never fail the inbound message

How to change safely:
    - Keep the stream bootstrap idempotent; start() runs on every boot
    - Changing the origin value lets old republished documents be re-applied once
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from ..bus.base import BusMessage, MessageBus
from ..bus.consumer import BusConsumer
from ..config import ConsumerConfig, PipelineConfig, SubjectsConfig
from ..errors import BusError
from ..pipeline.events import OutputChannel, VersionedEntity
from ..pipeline.mutations import MutationPipeline
from .documents import ReplicationDocument
from .identity import IdentityResolver, Resolved

logger = logging.getLogger(__name__)

ORIGIN_HEADER = "origin"


@dataclass
class AdapterOutcome:
    """What the adapter did with one document.

    Attributes:
        action: create, update, delete or skip
        document: Canonical document after the action (the inbound one on skip)
        entity: Pipeline result, None on skip
    """

    action: str
    document: ReplicationDocument
    entity: VersionedEntity | None = None

    @property
    def applied(self) -> bool:
        return self.entity is not None


class ReplicationSyncAdapter(BusConsumer):
    """Consumes the replication subject family and applies documents.

    Example:
        >>> adapter = ReplicationSyncAdapter(bus, pipeline, resolver, subjects, consumer_config)
        >>> await adapter.start()   # ensures the stream, then consumes users.*
    """

    name = "replication adapter"

    def __init__(
        self,
        bus: MessageBus,
        pipeline: MutationPipeline,
        resolver: IdentityResolver,
        subjects: SubjectsConfig,
        consumer_config: ConsumerConfig,
        pipeline_config: PipelineConfig | None = None,
        origin: str | None = None,
    ) -> None:
        super().__init__(bus, subjects.replication_pattern, consumer_config.replication_durable)
        self.pipeline = pipeline
        self.resolver = resolver
        self.subjects = subjects
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.origin = origin or f"usersync-{uuid.uuid4().hex[:12]}"

    @property
    def actor(self) -> str:
        return self.pipeline_config.replication_actor

    async def start(self) -> None:
        """Ensure the replication stream exists, then start consuming."""
        await self.bus.ensure_stream(
            self.subjects.replication_stream, [self.subjects.replication_pattern]
        )
        await super().start()

    async def handle(self, message: BusMessage) -> bool:
        if message.headers.get(ORIGIN_HEADER) == self.origin:
            logger.debug("Skipped own republished document", extra={"subject": message.subject})
            return False

        document = ReplicationDocument.from_dict(message.json())
        outcome = await self.apply_document(document)
        return outcome.applied

    async def apply_document(
        self, document: ReplicationDocument, actor: str | None = None
    ) -> AdapterOutcome:
        """Run one document through the decision table.

        Raises:
            ValidationError: If a live document has invalid fields
            StoreError: If persistence fails
        """
        actor = actor or self.actor
        resolution = await self.resolver.resolve(document)

        if document.deleted:
            if not isinstance(resolution, Resolved):
                logger.info(
                    "Skipping deletion of unknown user",
                    extra={"client_id": document.id},
                )
                return AdapterOutcome(action="skip", document=document)

            result = await self.pipeline.delete(
                resolution.entity_id,
                actor=actor,
                channel=OutputChannel.BROADCAST_ONLY,
            )
            return AdapterOutcome(
                action="delete",
                document=ReplicationDocument.from_user(result.user),
                entity=result,
            )

        if isinstance(resolution, Resolved):
            action = "update"
            result = await self.pipeline.update(
                resolution.entity_id,
                document.email,
                document.status,
                role=document.role,
                actor=actor,
                channel=OutputChannel.BROADCAST_ONLY,
            )
        else:
            action = "create"
            result = await self.pipeline.create(
                document.email,
                document.status,
                role=document.role,
                actor=actor,
                channel=OutputChannel.BROADCAST_ONLY,
            )

        logger.info(
            f"Applied replication {action}",
            extra={"client_id": document.id, "user_id": result.user.id, "version": result.version},
        )

        canonical = ReplicationDocument.from_user(result.user)
        await self.republish(canonical)
        return AdapterOutcome(action=action, document=canonical, entity=result)

    async def republish(self, document: ReplicationDocument) -> None:
        """Publish the canonical document on its per-user subject (best effort)."""
        subject = self.subjects.replication_subject(document.id)
        try:
            await self.bus.publish(subject, document.to_bytes(), {ORIGIN_HEADER: self.origin})
        except BusError as e:
            logger.error(
                "Failed to republish document",
                extra={"subject": subject, "error": str(e)},
            )
            return

        logger.debug("Republished document", extra={"subject": subject})
