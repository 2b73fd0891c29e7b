"""
Kafka/Redpanda bus implementation.

Subjects map one-to-one onto topics. Wildcard subscriptions are turned
into regex topic subscriptions, so "users.*" consumes every "users.<id>"
topic that exists or is created later.

Invariants:
    - Producer uses acks=all and an idempotent producer by default
    - Consumers never auto-commit; ack() commits offset + 1
    - nack() seeks back to the message so it is fetched again
    - A message nacked max_deliver times is committed and dropped

How to change safely:
    - Test with actual Kafka/Redpanda cluster before deploying
    - Durable names are consumer group ids; renaming one restarts consumption
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaError,
    KafkaTimeoutError,
    TopicAlreadyExistsError,
)
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import ConsumerConfig, KafkaConfig
from ..errors import BusConnectionError, BusError, BusTimeoutError
from .base import BusMessage, is_wildcard, pattern_to_regex

logger = logging.getLogger(__name__)


class KafkaBus:
    """Kafka implementation of the MessageBus protocol.

    Uses aiokafka for async producer/consumer operations. One consumer is
    created per durable name; the durable name is the consumer group.

    Example:
        >>> bus = KafkaBus(KafkaConfig(brokers="localhost:9092"), ConsumerConfig())
        >>> await bus.connect()
        >>> await bus.publish("sync.users.broadcast", b'{"operation": "create"}')
    """

    def __init__(self, config: KafkaConfig, consumer_config: ConsumerConfig) -> None:
        self.config = config
        self.consumer_config = consumer_config
        self._producer: AIOKafkaProducer | None = None
        self._consumers: dict[str, AIOKafkaConsumer] = {}
        self._attempts: dict[tuple[str, int, int], int] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    def _security_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            settings["ssl_cafile"] = self.config.ssl_cafile
        return settings

    async def connect(self) -> None:
        """Connect to the Kafka cluster and start the producer.

        Raises:
            BusConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                client_id=self.config.client_id,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_settings(),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "acks": self.config.acks,
                    "idempotent": self.config.enable_idempotence,
                },
            )
        except KafkaError as e:
            self._connected = False
            self._producer = None
            raise BusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop all consumers and flush the producer."""
        for durable, consumer in list(self._consumers.items()):
            try:
                await consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer {durable}: {e}")
        self._consumers.clear()
        self._attempts.clear()

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def ensure_stream(self, name: str, subjects: Sequence[str]) -> None:
        """Create a topic per concrete subject unless it exists.

        Kafka has no stream grouping, so the name is only logged. Wildcard
        subjects are skipped; their topics are created on first publish.
        """
        topics = [s for s in subjects if not is_wildcard(s)]
        if not topics:
            logger.debug("No concrete topics to create", extra={"stream": name})
            return

        admin = AIOKafkaAdminClient(
            bootstrap_servers=self.config.brokers,
            client_id=self.config.client_id,
            **self._security_settings(),
        )
        try:
            await admin.start()
            for topic in topics:
                try:
                    await admin.create_topics(
                        [
                            NewTopic(
                                name=topic,
                                num_partitions=self.config.num_partitions,
                                replication_factor=self.config.replication_factor,
                            )
                        ]
                    )
                    logger.info("Created topic", extra={"stream": name, "topic": topic})
                except TopicAlreadyExistsError:
                    logger.debug("Topic already exists", extra={"topic": topic})
        except KafkaConnectionError as e:
            raise BusConnectionError(f"Failed to create topics for {name}: {e}") from e
        except KafkaError as e:
            raise BusError(f"Failed to create topics for {name}: {e}") from e
        finally:
            await admin.close()

    async def publish(
        self,
        subject: str,
        payload: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Publish and wait for the broker acknowledgment.

        Raises:
            BusConnectionError: If not connected
            BusTimeoutError: If send times out
            BusError: For other Kafka errors
        """
        if not self._producer:
            raise BusConnectionError("Not connected to Kafka", subject=subject)

        kafka_headers = [(k, v.encode("utf-8")) for k, v in (headers or {}).items()]

        try:
            record_metadata = await self._producer.send_and_wait(
                subject,
                value=payload,
                headers=kafka_headers or None,
            )
            logger.debug(
                "Message published to Kafka",
                extra={
                    "topic": subject,
                    "partition": record_metadata.partition,
                    "offset": record_metadata.offset,
                },
            )
        except KafkaTimeoutError as e:
            raise BusTimeoutError(f"Kafka send timed out: {e}", subject=subject) from e
        except KafkaConnectionError as e:
            self._connected = False
            raise BusConnectionError(f"Kafka connection lost: {e}", subject=subject) from e
        except KafkaError as e:
            raise BusError(f"Kafka send failed: {e}", subject=subject) from e

    async def subscribe(self, pattern: str, durable: str) -> AsyncIterator[BusMessage]:
        """Consume topics matching the pattern as consumer group `durable`.

        Raises:
            BusConnectionError: If subscription fails
        """
        existing = self._consumers.pop(durable, None)
        if existing is not None:
            await existing.stop()

        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.config.brokers,
            client_id=self.config.client_id,
            group_id=durable,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=False,
            max_poll_records=100,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000,
            metadata_max_age_ms=5000,
            **self._security_settings(),
        )
        if is_wildcard(pattern):
            consumer.subscribe(pattern=pattern_to_regex(pattern))
        else:
            consumer.subscribe([pattern])

        try:
            await consumer.start()
            self._consumers[durable] = consumer
            logger.info("Subscribed to Kafka", extra={"pattern": pattern, "group_id": durable})

            async for msg in consumer:
                key = (msg.topic, msg.partition, msg.offset)
                attempt = self._attempts.get(key, 0) + 1
                self._attempts[key] = attempt

                yield BusMessage(
                    subject=msg.topic,
                    data=msg.value,
                    headers={k: v.decode("utf-8") for k, v in (msg.headers or ())},
                    delivery_attempt=attempt,
                    consumer=durable,
                    raw=msg,
                )
        except KafkaConnectionError as e:
            raise BusConnectionError(f"Failed to subscribe: {e}", subject=pattern) from e
        except KafkaError as e:
            raise BusError(f"Consumer error: {e}", subject=pattern) from e
        finally:
            if self._consumers.get(durable) is consumer:
                del self._consumers[durable]
                await consumer.stop()

    def _consumer_for(self, message: BusMessage) -> AIOKafkaConsumer:
        consumer = self._consumers.get(message.consumer)
        if consumer is None:
            raise BusError(
                f"No active consumer '{message.consumer}'", subject=message.subject
            )
        return consumer

    async def _commit(self, message: BusMessage) -> None:
        msg = message.raw
        consumer = self._consumer_for(message)
        try:
            await consumer.commit(
                {TopicPartition(msg.topic, msg.partition): OffsetAndMetadata(msg.offset + 1, "")}
            )
        except KafkaError as e:
            raise BusError(f"Failed to commit: {e}", subject=message.subject) from e
        self._attempts.pop((msg.topic, msg.partition, msg.offset), None)

        logger.debug(
            "Committed offset",
            extra={"topic": msg.topic, "partition": msg.partition, "offset": msg.offset},
        )

    async def ack(self, message: BusMessage) -> None:
        """Commit the message offset."""
        await self._commit(message)

    async def nack(self, message: BusMessage) -> None:
        """Seek back so the message is fetched again, or drop it past max_deliver."""
        msg = message.raw
        if message.delivery_attempt >= self.consumer_config.max_deliver:
            logger.warning(
                "Message exceeded max deliveries, dropping",
                extra={
                    "topic": msg.topic,
                    "offset": msg.offset,
                    "attempts": message.delivery_attempt,
                    "dropped_at": int(time.time() * 1000),
                },
            )
            await self._commit(message)
            return

        consumer = self._consumer_for(message)
        consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
