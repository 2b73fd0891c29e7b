"""
NATS JetStream bus implementation.

Invariants:
    - Every subscription is a durable consumer with explicit ack
    - The server redelivers unacknowledged messages after ack_wait
    - A message is delivered at most max_deliver times

How to change safely:
    - Changing max_deliver or ack_wait of an existing durable needs the
      consumer to be recreated on the server
    - Test with a real nats-server (-js) before deploying
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

import nats
from nats.aio.client import Client as NatsClient
from nats.errors import ConnectionClosedError, NoServersError
from nats.errors import Error as NatsError
from nats.errors import TimeoutError as NatsTimeoutError
from nats.js import JetStreamContext
from nats.js import api as js_api
from nats.js.errors import NotFoundError as StreamNotFoundError

from ..config import ConsumerConfig, NatsConfig
from ..errors import BusConnectionError, BusError, BusTimeoutError
from .base import BusMessage

logger = logging.getLogger(__name__)


class NatsBus:
    """NATS JetStream implementation of the MessageBus protocol.

    Example:
        >>> bus = NatsBus(NatsConfig(servers="nats://localhost:4222"), ConsumerConfig())
        >>> await bus.connect()
        >>> await bus.ensure_stream("USERS_REPLICATION", ["users.*"])
    """

    def __init__(self, config: NatsConfig, consumer_config: ConsumerConfig) -> None:
        self.config = config
        self.consumer_config = consumer_config
        self._nc: NatsClient | None = None
        self._js: JetStreamContext | None = None

    @property
    def is_connected(self) -> bool:
        """Whether the client connection is up."""
        return self._nc is not None and self._nc.is_connected

    async def _disconnected_cb(self) -> None:
        logger.warning("Disconnected from NATS")

    async def _reconnected_cb(self) -> None:
        url = self._nc.connected_url.netloc if self._nc and self._nc.connected_url else None
        logger.info("Reconnected to NATS", extra={"server": url})

    async def _error_cb(self, e: Exception) -> None:
        logger.error(f"NATS client error: {e}")

    async def connect(self) -> None:
        """Connect and open a JetStream context.

        Raises:
            BusConnectionError: If connection fails
        """
        if self.is_connected:
            return

        options = {
            "servers": self.config.server_list,
            "name": self.config.client_name,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "reconnect_time_wait": self.config.reconnect_time_wait,
            "disconnected_cb": self._disconnected_cb,
            "reconnected_cb": self._reconnected_cb,
            "error_cb": self._error_cb,
        }
        if self.config.token:
            options["token"] = self.config.token

        try:
            self._nc = await nats.connect(**options)
            self._js = self._nc.jetstream()
        except (NoServersError, NatsError, OSError) as e:
            self._nc = None
            self._js = None
            raise BusConnectionError(f"Failed to connect to NATS: {e}") from e

        logger.info(
            "Connected to NATS",
            extra={"servers": self.config.servers, "client_name": self.config.client_name},
        )

    async def close(self) -> None:
        """Drain subscriptions and close the connection."""
        if self._nc is not None:
            try:
                await self._nc.drain()
            except (ConnectionClosedError, NatsError) as e:
                logger.warning(f"Error draining NATS connection: {e}")
            self._nc = None
            self._js = None
        logger.info("NATS connection closed")

    def _jetstream(self, subject: str | None = None) -> JetStreamContext:
        if self._js is None or not self.is_connected:
            raise BusConnectionError("Not connected to NATS", subject=subject)
        return self._js

    async def ensure_stream(self, name: str, subjects: Sequence[str]) -> None:
        """Create the stream unless the server already has it."""
        js = self._jetstream()
        try:
            await js.stream_info(name)
            logger.debug("Stream already exists", extra={"stream": name})
            return
        except StreamNotFoundError:
            pass
        except NatsError as e:
            raise BusError(f"Failed to look up stream {name}: {e}") from e

        try:
            await js.add_stream(name=name, subjects=list(subjects))
        except NatsError as e:
            raise BusError(f"Failed to create stream {name}: {e}") from e
        logger.info("Created stream", extra={"stream": name, "subjects": list(subjects)})

    async def publish(
        self,
        subject: str,
        payload: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Publish and wait for the JetStream publish ack.

        Raises:
            BusConnectionError: If not connected
            BusTimeoutError: If the server did not ack in time
            BusError: For other NATS errors
        """
        js = self._jetstream(subject)
        try:
            ack = await js.publish(subject, payload, headers=headers or None)
        except NatsTimeoutError as e:
            raise BusTimeoutError(f"NATS publish timed out: {e}", subject=subject) from e
        except ConnectionClosedError as e:
            raise BusConnectionError(f"NATS connection closed: {e}", subject=subject) from e
        except NatsError as e:
            raise BusError(f"NATS publish failed: {e}", subject=subject) from e

        logger.debug(
            "Message published to NATS",
            extra={"subject": subject, "stream": ack.stream, "seq": ack.seq},
        )

    async def subscribe(self, pattern: str, durable: str) -> AsyncIterator[BusMessage]:
        """Consume through a durable push consumer with explicit ack."""
        js = self._jetstream(pattern)
        try:
            sub = await js.subscribe(
                pattern,
                durable=durable,
                manual_ack=True,
                config=js_api.ConsumerConfig(
                    ack_policy=js_api.AckPolicy.EXPLICIT,
                    max_deliver=self.consumer_config.max_deliver,
                    ack_wait=self.consumer_config.ack_wait_seconds,
                ),
            )
        except NatsError as e:
            raise BusError(f"Failed to subscribe: {e}", subject=pattern) from e

        logger.info("Subscribed to NATS", extra={"pattern": pattern, "durable": durable})

        try:
            while self.is_connected:
                try:
                    msg = await sub.next_msg(timeout=1.0)
                except NatsTimeoutError:
                    continue

                yield BusMessage(
                    subject=msg.subject,
                    data=msg.data,
                    headers=dict(msg.headers or {}),
                    delivery_attempt=msg.metadata.num_delivered,
                    consumer=durable,
                    raw=msg,
                )
        except ConnectionClosedError as e:
            raise BusConnectionError(f"NATS connection closed: {e}", subject=pattern) from e
        finally:
            if self.is_connected:
                await sub.unsubscribe()

    async def ack(self, message: BusMessage) -> None:
        """Acknowledge the message."""
        try:
            await message.raw.ack()
        except NatsError as e:
            raise BusError(f"Failed to ack: {e}", subject=message.subject) from e

    async def nack(self, message: BusMessage) -> None:
        """Ask the server to redeliver the message."""
        try:
            await message.raw.nak()
        except NatsError as e:
            raise BusError(f"Failed to nak: {e}", subject=message.subject) from e
