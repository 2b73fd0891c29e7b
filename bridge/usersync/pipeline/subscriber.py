"""
Update-request subscriber.

Consumes mutation requests from the update-request subject and applies
them through the pipeline with BROADCAST_ONLY, so an applied request is
announced on the broadcast subject and never re-enters this subscriber.

Invariants:
    - A request whose event id was already applied is acked, not re-applied
    - Unknown operation tags raise ProtocolError and are nacked
    - The event id is recorded as applied together with the ledger append
"""

from __future__ import annotations

import logging

from ..bus.base import BusMessage, MessageBus
from ..bus.consumer import BusConsumer
from ..config import ConsumerConfig, SubjectsConfig
from ..errors import ProtocolError
from .events import MutationEvent, Operation, OutputChannel
from .mutations import MutationPipeline

logger = logging.getLogger(__name__)


class UpdateRequestSubscriber(BusConsumer):
    """Applies mutation requests published on the update-request subject.

    Example:
        >>> subscriber = UpdateRequestSubscriber(bus, pipeline, subjects, consumer_config)
        >>> await subscriber.start()
    """

    name = "update-request subscriber"

    def __init__(
        self,
        bus: MessageBus,
        pipeline: MutationPipeline,
        subjects: SubjectsConfig,
        consumer_config: ConsumerConfig,
    ) -> None:
        super().__init__(bus, subjects.update_request, consumer_config.update_durable)
        self.pipeline = pipeline
        self.subjects = subjects

    async def handle(self, message: BusMessage) -> bool:
        event = MutationEvent.from_bytes(message.data)
        return await self.apply_event(event)

    async def apply_event(self, event: MutationEvent) -> bool:
        """Apply one mutation request.

        This is the core application logic, separate from the consumption
        loop for testability.

        Returns:
            True if applied, False if the event was already applied

        Raises:
            ProtocolError: If the operation tag is unknown
            ValidationError: If the user data is malformed
            NotFoundError: If an update/delete targets an unknown user
            StoreError: If persistence fails
        """
        if await self.pipeline.is_event_applied(event.id):
            logger.debug(
                "Skipped already applied event",
                extra={"event_id": event.id, "user_id": event.user_id},
            )
            return False

        data = event.user_data
        if event.operation == Operation.CREATE.value:
            result = await self.pipeline.create(
                data.get("email"),
                data.get("status"),
                role=data.get("role"),
                actor=event.created_by,
                channel=OutputChannel.BROADCAST_ONLY,
                source_event_id=event.id,
            )
        elif event.operation == Operation.UPDATE.value:
            result = await self.pipeline.update(
                event.user_id,
                data.get("email"),
                data.get("status"),
                role=data.get("role"),
                actor=event.created_by,
                channel=OutputChannel.BROADCAST_ONLY,
                source_event_id=event.id,
            )
        elif event.operation == Operation.DELETE.value:
            result = await self.pipeline.delete(
                event.user_id,
                actor=event.created_by,
                channel=OutputChannel.BROADCAST_ONLY,
                source_event_id=event.id,
            )
        else:
            raise ProtocolError(f"Unknown operation '{event.operation}'")

        logger.debug(
            "Applied mutation request",
            extra={
                "event_id": event.id,
                "operation": event.operation,
                "user_id": result.user.id,
                "version": result.version,
            },
        )
        return True
