"""
In-memory bus implementation for testing.

This module provides a simple in-memory bus backend for:
- Unit tests
- Integration tests
- Local development without a broker

Invariants:
    - All data is lost on process exit
    - Durable consumers keep their position across re-subscription
    - nack() redelivers until max_deliver deliveries were made

How to change safely:
    - Keep interface compatible with the MessageBus protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence, Set
import logging

from ..errors import BusConnectionError, BusError
from .base import BusMessage, subject_matches

logger = logging.getLogger(__name__)


@dataclass
class PublishedMessage:
    """A message stored in the in-memory log."""
    seq: int
    subject: str
    data: bytes
    headers: Dict[str, str]
    timestamp_ms: int


@dataclass
class InMemoryConsumer:
    """Per-durable consumer state."""
    pattern: str
    cursor: int = 0
    redeliveries: Deque[BusMessage] = field(default_factory=deque)
    acked: Set[int] = field(default_factory=set)


class InMemoryBus:
    """In-memory implementation of MessageBus for testing.

    Stores every published message in a single ordered log. Each durable
    consumer walks the log with its own cursor and keeps a redelivery
    queue for nacked messages.

    Attributes:
        max_deliver: Deliveries per message before it is dropped

    Example:
        >>> bus = InMemoryBus()
        >>> await bus.connect()
        >>> await bus.publish("users.1", b"{}")
        >>> async for message in bus.subscribe("users.*", "replication"):
        ...     await bus.ack(message)
    """

    def __init__(self, max_deliver: int = 5) -> None:
        self.max_deliver = max_deliver
        self._log: List[PublishedMessage] = []
        self._streams: Dict[str, List[str]] = {}
        self._consumers: Dict[str, InMemoryConsumer] = {}
        self._active: Set[str] = set()
        self._connected = False
        self._new_message = asyncio.Event()
        self._fail_publish: Optional[Exception] = None

        # Observability for tests
        self.acked: List[BusMessage] = []
        self.nacked: List[BusMessage] = []
        self.dropped: List[BusMessage] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBus connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._log.clear()
        self._streams.clear()
        self._consumers.clear()
        self._active.clear()
        self._new_message.set()
        logger.debug("InMemoryBus closed")

    async def ensure_stream(self, name: str, subjects: Sequence[str]) -> None:
        """Register a stream unless it already exists."""
        if not self._connected:
            raise BusConnectionError("Not connected")

        if name in self._streams:
            logger.debug("Stream already exists", extra={"stream": name})
            return
        self._streams[name] = list(subjects)
        logger.info("Created stream", extra={"stream": name, "subjects": list(subjects)})

    async def publish(
        self,
        subject: str,
        payload: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Append a message to the in-memory log."""
        if not self._connected:
            raise BusConnectionError("Not connected", subject=subject)

        if self._fail_publish is not None:
            raise self._fail_publish

        message = PublishedMessage(
            seq=len(self._log),
            subject=subject,
            data=payload,
            headers=dict(headers or {}),
            timestamp_ms=int(time.time() * 1000),
        )
        self._log.append(message)
        self._new_message.set()

        logger.debug(
            "Message published to in-memory bus",
            extra={"subject": subject, "seq": message.seq},
        )

    async def subscribe(self, pattern: str, durable: str) -> AsyncIterator[BusMessage]:
        """Consume matching messages, resuming from the durable position."""
        if not self._connected:
            raise BusConnectionError("Not connected", subject=pattern)

        consumer = self._consumers.get(durable)
        if consumer is None or consumer.pattern != pattern:
            consumer = InMemoryConsumer(pattern=pattern)
            self._consumers[durable] = consumer
        self._active.add(durable)

        try:
            while self._connected and durable in self._active:
                message = self._next_message(durable, consumer)
                if message is not None:
                    yield message
                    continue

                self._new_message.clear()
                try:
                    await asyncio.wait_for(self._new_message.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._active.discard(durable)

    def _next_message(self, durable: str, consumer: InMemoryConsumer) -> Optional[BusMessage]:
        if consumer.redeliveries:
            return consumer.redeliveries.popleft()

        while consumer.cursor < len(self._log):
            stored = self._log[consumer.cursor]
            consumer.cursor += 1
            if subject_matches(consumer.pattern, stored.subject):
                return BusMessage(
                    subject=stored.subject,
                    data=stored.data,
                    headers=dict(stored.headers),
                    delivery_attempt=1,
                    consumer=durable,
                    raw=stored.seq,
                )
        return None

    async def ack(self, message: BusMessage) -> None:
        """Acknowledge a delivered message."""
        consumer = self._consumer_for(message)
        consumer.acked.add(message.raw)
        self.acked.append(message)

    async def nack(self, message: BusMessage) -> None:
        """Queue a message for redelivery, or drop it past max_deliver."""
        consumer = self._consumer_for(message)
        self.nacked.append(message)

        if message.delivery_attempt >= self.max_deliver:
            self.dropped.append(message)
            logger.warning(
                "Message exceeded max deliveries, dropping",
                extra={"subject": message.subject, "attempts": message.delivery_attempt},
            )
            return

        consumer.redeliveries.append(
            BusMessage(
                subject=message.subject,
                data=message.data,
                headers=dict(message.headers),
                delivery_attempt=message.delivery_attempt + 1,
                consumer=message.consumer,
                raw=message.raw,
            )
        )
        self._new_message.set()

    def _consumer_for(self, message: BusMessage) -> InMemoryConsumer:
        consumer = self._consumers.get(message.consumer)
        if consumer is None:
            raise BusError(f"Unknown consumer '{message.consumer}'", subject=message.subject)
        return consumer

    # Testing helpers

    def get_published(self, pattern: str = ">") -> List[PublishedMessage]:
        """Get all published messages matching a pattern (testing helper)."""
        return [m for m in self._log if subject_matches(pattern, m.subject)]

    def get_message_count(self, pattern: str = ">") -> int:
        """Get the count of published messages matching a pattern."""
        return len(self.get_published(pattern))

    def has_stream(self, name: str) -> bool:
        """Whether ensure_stream() registered a stream (testing helper)."""
        return name in self._streams

    def fail_publishes(self, exception: Optional[Exception]) -> None:
        """Make every publish raise the exception; None restores normal behaviour."""
        self._fail_publish = exception

    async def wait_for_messages(
        self,
        pattern: str,
        count: int,
        timeout: float = 5.0,
    ) -> bool:
        """Wait for a number of published messages (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if self.get_message_count(pattern) >= count:
                return True
            await asyncio.sleep(0.01)
        return False

    async def wait_for_acks(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count messages were acknowledged (testing helper)."""
        start = time.time()
        while time.time() - start < timeout:
            if len(self.acked) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
