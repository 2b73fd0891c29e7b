"""
Event publisher for mutation events.

Invariants:
    - publish() returns once the bus accepted the message
    - Every message carries event_id, timestamp, user_id, version and
      operation headers
    - The publisher never swallows bus errors; the pipeline decides
"""

from __future__ import annotations

import logging

from ..bus.base import MessageBus
from ..config import SubjectsConfig
from .events import MutationEvent, OutputChannel

logger = logging.getLogger(__name__)


class EventPublisher:
    """Serializes mutation events and publishes them on the bus.

    Example:
        >>> publisher = EventPublisher(bus, SubjectsConfig())
        >>> await publisher.publish(event, OutputChannel.BROADCAST_ONLY)
    """

    def __init__(self, bus: MessageBus, subjects: SubjectsConfig) -> None:
        self.bus = bus
        self.subjects = subjects

    def subjects_for(self, channel: OutputChannel) -> list[str]:
        """Subjects an applied event is published to for a channel."""
        if channel == OutputChannel.REQUEST_AND_BROADCAST:
            return [self.subjects.broadcast, self.subjects.update_request]
        return [self.subjects.broadcast]

    async def publish(self, event: MutationEvent, channel: OutputChannel) -> None:
        """Publish an applied mutation.

        Raises:
            BusError: If the bus rejects a publish
        """
        payload = event.to_bytes()
        headers = event.headers()

        for subject in self.subjects_for(channel):
            await self.bus.publish(subject, payload, headers)
            logger.debug(
                "Published mutation event",
                extra={
                    "subject": subject,
                    "event_id": event.id,
                    "user_id": event.user_id,
                    "version": event.version,
                    "operation": event.operation,
                },
            )

    async def request(self, event: MutationEvent) -> None:
        """Publish a not-yet-applied mutation request for a subscriber to apply.

        Raises:
            BusError: If the bus rejects the publish
        """
        await self.bus.publish(self.subjects.update_request, event.to_bytes(), event.headers())
        logger.debug(
            "Published mutation request",
            extra={
                "subject": self.subjects.update_request,
                "event_id": event.id,
                "operation": event.operation,
            },
        )
