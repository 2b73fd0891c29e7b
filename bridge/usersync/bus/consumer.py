"""
Durable consumer loop shared by the update-request subscriber and the
replication adapter.

Invariants:
    - A message is acked only after handle() returned
    - Any exception from handle() nacks the message
    - A handler in flight is never cancelled; stop() waits for it

How to change safely:
    - Subclasses only implement handle(); keep ack/nack decisions here
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..errors import BusError
from .base import BusMessage, MessageBus

logger = logging.getLogger(__name__)


class BusConsumer:
    """Consumes a subject pattern through a durable consumer.

    Subclasses implement handle(), returning True when the message was
    applied and False when it was skipped (duplicate, own echo, nothing to
    do). Both outcomes are acknowledged.

    Example:
        >>> consumer = MyConsumer(bus, "sync.users.update", "usersync-update")
        >>> await consumer.start()
        >>> ...
        >>> await consumer.stop()
    """

    name = "consumer"

    def __init__(self, bus: MessageBus, pattern: str, durable: str) -> None:
        self.bus = bus
        self.pattern = pattern
        self.durable = durable

        self._running = False
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Future | None = None
        self._processed_count = 0
        self._skipped_count = 0
        self._failed_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Consumption counters."""
        return {
            "running": self._running,
            "processed": self._processed_count,
            "skipped": self._skipped_count,
            "failed": self._failed_count,
        }

    async def handle(self, message: BusMessage) -> bool:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the consumption loop as a background task."""
        if self._task is not None and not self._task.done():
            logger.warning(f"{self.name} already running")
            return
        self._running = True
        self._task = asyncio.create_task(self.run(), name=f"{self.name}-loop")

    async def run(self) -> None:
        """Consume until stopped or cancelled."""
        self._running = True
        logger.info(
            f"Starting {self.name}",
            extra={"pattern": self.pattern, "durable": self.durable},
        )

        try:
            async for message in self.bus.subscribe(self.pattern, self.durable):
                if not self._running:
                    await self.bus.nack(message)
                    break

                self._inflight = asyncio.ensure_future(self._dispatch(message))
                await asyncio.shield(self._inflight)
                self._inflight = None

        except asyncio.CancelledError:
            logger.info(f"{self.name} cancelled")
        except BusError as e:
            logger.error(f"{self.name} bus error: {e}", exc_info=True)
            raise

        finally:
            self._running = False

    async def _dispatch(self, message: BusMessage) -> None:
        try:
            applied = await self.handle(message)
        except Exception as e:
            self._failed_count += 1
            logger.error(
                f"{self.name} failed to handle message",
                extra={
                    "subject": message.subject,
                    "attempt": message.delivery_attempt,
                    "error": str(e),
                },
                exc_info=True,
            )
            try:
                await self.bus.nack(message)
            except BusError as nack_error:
                logger.error(f"Failed to nack message: {nack_error}")
            return

        if applied:
            self._processed_count += 1
        else:
            self._skipped_count += 1

        try:
            await self.bus.ack(message)
        except BusError as e:
            # The bus redelivers; handlers are idempotent for redeliveries.
            logger.error(f"Failed to ack message: {e}", extra={"subject": message.subject})

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop the loop, letting an in-flight message finish first."""
        self._running = False
        logger.info(f"Stopping {self.name}")

        inflight = self._inflight
        if inflight is not None and not inflight.done():
            try:
                await asyncio.wait_for(asyncio.shield(inflight), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{self.name} in-flight message still running after drain timeout",
                    extra={"timeout": timeout},
                )

        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
