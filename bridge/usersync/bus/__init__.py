"""
Event bus abstraction for usersync.

This module provides a pluggable bus backend interface supporting:
- NATS JetStream (default)
- Kafka/Redpanda
- In-memory (for testing and local development)

The bus is used for notification only. The relational store is the source
of truth; losing a bus message never loses a mutation.

Invariants:
    - Delivery is at-least-once with explicit ack/nack
    - Subject patterns use NATS conventions on every backend

How to change safely:
    - New backends must implement the MessageBus protocol
    - Keep InMemoryBus semantics aligned so tests stay meaningful
"""

from .base import (
    BusMessage,
    MessageBus,
    create_bus,
    is_wildcard,
    pattern_to_regex,
    subject_matches,
)
from .consumer import BusConsumer
from .jetstream import NatsBus
from .kafka import KafkaBus
from .memory import InMemoryBus

__all__ = [
    # Protocol and types
    "MessageBus",
    "BusMessage",
    "BusConsumer",
    # Subject helpers
    "subject_matches",
    "is_wildcard",
    "pattern_to_regex",
    # Factory
    "create_bus",
    # Implementations
    "NatsBus",
    "KafkaBus",
    "InMemoryBus",
]
