"""
Base protocol and types for the event bus abstraction.

This module defines the MessageBus protocol that all backends must implement,
along with the message type handed to consumers and subject matching helpers.

Invariants:
    - Delivery is at-least-once; a nacked message is delivered again
    - ensure_stream() is create-if-absent and safe to call on every start
    - Subject patterns follow NATS conventions ('*' one token, '>' the rest)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the in-memory backend behaviour aligned with the production ones
"""

from __future__ import annotations

import json
import re
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)
import logging

from ..errors import ProtocolError

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


@dataclass
class BusMessage:
    """A message delivered to a consumer.

    Attributes:
        subject: Concrete subject the message was published on
        data: Payload bytes
        headers: Routing/observability metadata
        delivery_attempt: 1 on first delivery, incremented on each redelivery
        consumer: Durable consumer name that received the message
        raw: Backend-specific handle used by ack()/nack()

    Example:
        >>> async for message in bus.subscribe("users.*", "replication"):
        ...     doc = message.json()
        ...     await bus.ack(message)
    """
    subject: str
    data: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    delivery_attempt: int = 1
    consumer: str = ""
    raw: Any = field(default=None, repr=False, compare=False)

    def json(self) -> Any:
        """Parse data as JSON.

        Raises:
            ProtocolError: If data is not valid JSON
        """
        try:
            return json.loads(self.data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                f"Failed to parse message on '{self.subject}' as JSON: {e}",
                payload=self.data.decode("utf-8", errors="replace"),
            ) from e

    def __str__(self) -> str:
        return f"BusMessage(subject={self.subject}, attempt={self.delivery_attempt})"


@runtime_checkable
class MessageBus(Protocol):
    """Protocol for event bus backends.

    Delivery contract:
        - publish() returns once the bus accepted the message; it never
          waits for subscribers
        - Messages are redelivered after nack() (or ack timeout) until
          acknowledged or the backend's delivery cap is reached

    Ordering contract:
        - None across subjects
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            BusConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release consumers."""
        ...

    @abstractmethod
    async def ensure_stream(self, name: str, subjects: Sequence[str]) -> None:
        """Create a durable stream for the subjects unless it already exists."""
        ...

    @abstractmethod
    async def publish(
        self,
        subject: str,
        payload: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Publish a payload on a subject.

        Raises:
            BusConnectionError: If not connected
            BusTimeoutError: If the bus did not accept the message in time
            BusError: For other publish failures
        """
        ...

    @abstractmethod
    def subscribe(self, pattern: str, durable: str) -> AsyncIterator[BusMessage]:
        """Consume messages whose subject matches the pattern.

        Args:
            pattern: Subject or wildcard pattern
            durable: Durable consumer name; progress survives reconnects

        Yields:
            BusMessage objects; the caller must ack() or nack() each one
        """
        ...

    @abstractmethod
    async def ack(self, message: BusMessage) -> None:
        """Acknowledge a message; it will not be delivered again."""
        ...

    @abstractmethod
    async def nack(self, message: BusMessage) -> None:
        """Negatively acknowledge a message so the bus redelivers it."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def subject_matches(pattern: str, subject: str) -> bool:
    """Match a subject against a NATS-style pattern.

    >>> subject_matches("users.*", "users.42")
    True
    >>> subject_matches("users.*", "users.42.extra")
    False
    >>> subject_matches("users.>", "users.42.extra")
    True
    """
    pattern_tokens = pattern.split(".")
    subject_tokens = subject.split(".")

    for i, token in enumerate(pattern_tokens):
        if token == ">":
            return len(subject_tokens) > i
        if i >= len(subject_tokens):
            return False
        if token != "*" and token != subject_tokens[i]:
            return False

    return len(pattern_tokens) == len(subject_tokens)


def is_wildcard(subject: str) -> bool:
    """Whether a subject contains wildcard tokens."""
    return any(token in ("*", ">") for token in subject.split("."))


def pattern_to_regex(pattern: str) -> str:
    """Translate a NATS-style pattern into an anchored regular expression."""
    parts = []
    for token in pattern.split("."):
        if token == "*":
            parts.append(r"[^.]+")
        elif token == ">":
            parts.append(r".+")
        else:
            parts.append(re.escape(token))
    return "^" + r"\.".join(parts) + "$"


def create_bus(config: "ServerConfig") -> MessageBus:
    """Factory function to create a bus from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate MessageBus implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BusBackend

    if config.bus_backend == BusBackend.NATS:
        from .jetstream import NatsBus

        return NatsBus(config.nats, config.consumer)
    elif config.bus_backend == BusBackend.KAFKA:
        from .kafka import KafkaBus

        return KafkaBus(config.kafka, config.consumer)
    elif config.bus_backend == BusBackend.MEMORY:
        from .memory import InMemoryBus

        return InMemoryBus(max_deliver=config.consumer.max_deliver)
    else:
        raise ValueError(f"Unsupported bus backend: {config.bus_backend}")
