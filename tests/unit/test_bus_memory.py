"""
Unit tests for the in-memory bus implementation.

Tests cover:
- Connection lifecycle
- Publish/subscribe with subject patterns
- ack/nack and redelivery limits
- Durable consumer positions
- Testing helpers
"""

import asyncio

import pytest

from bridge.usersync.bus.memory import InMemoryBus
from bridge.usersync.errors import BusConnectionError, BusError


async def take(bus, pattern, durable, count, timeout=2.0):
    """Receive `count` messages from a subscription, then close it."""
    received = []
    subscription = bus.subscribe(pattern, durable)
    try:
        while len(received) < count:
            received.append(await asyncio.wait_for(subscription.__anext__(), timeout))
    finally:
        await subscription.aclose()
    return received


class TestInMemoryBus:
    """Tests for InMemoryBus."""

    @pytest.fixture
    def bus(self):
        """Create a fresh bus."""
        return InMemoryBus(max_deliver=3)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, bus):
        """Test connection lifecycle."""
        assert not bus.is_connected

        await bus.connect()
        assert bus.is_connected

        await bus.close()
        assert not bus.is_connected

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, bus):
        """Publish fails if not connected."""
        with pytest.raises(BusConnectionError):
            await bus.publish("users.1", b"{}")

    @pytest.mark.asyncio
    async def test_ensure_stream_is_idempotent(self, bus):
        """Creating the same stream twice is a no-op."""
        await bus.connect()

        await bus.ensure_stream("USERS_REPLICATION", ["users.*"])
        await bus.ensure_stream("USERS_REPLICATION", ["users.*"])

        assert bus.has_stream("USERS_REPLICATION")
        assert not bus.has_stream("OTHER")

    @pytest.mark.asyncio
    async def test_subscribe_filters_by_pattern(self, bus):
        """Only subjects matching the pattern are delivered."""
        await bus.connect()
        await bus.publish("sync.users.broadcast", b"b")
        await bus.publish("users.1", b"one", {"origin": "x"})
        await bus.publish("users.2", b"two")

        messages = await take(bus, "users.*", "replication", 2)

        assert [m.subject for m in messages] == ["users.1", "users.2"]
        assert messages[0].headers == {"origin": "x"}
        assert messages[0].delivery_attempt == 1
        assert messages[0].consumer == "replication"

    @pytest.mark.asyncio
    async def test_subscriber_receives_later_publish(self, bus):
        """A waiting subscriber wakes up on publish."""
        await bus.connect()

        receiver = asyncio.create_task(take(bus, "sync.users.update", "update", 1))
        await asyncio.sleep(0.05)
        await bus.publish("sync.users.update", b"late")

        messages = await receiver
        assert messages[0].data == b"late"

    @pytest.mark.asyncio
    async def test_nack_redelivers(self, bus):
        """A nacked message comes back with a higher attempt count."""
        await bus.connect()
        await bus.publish("sync.users.update", b"retry-me")

        subscription = bus.subscribe("sync.users.update", "update")
        first = await asyncio.wait_for(subscription.__anext__(), 1.0)
        await bus.nack(first)
        second = await asyncio.wait_for(subscription.__anext__(), 1.0)
        await bus.ack(second)
        await subscription.aclose()

        assert first.data == second.data == b"retry-me"
        assert first.delivery_attempt == 1
        assert second.delivery_attempt == 2
        assert len(bus.nacked) == 1
        assert len(bus.acked) == 1

    @pytest.mark.asyncio
    async def test_nack_stops_at_max_deliver(self, bus):
        """After max_deliver deliveries the message is dropped."""
        await bus.connect()
        await bus.publish("sync.users.update", b"poison")

        subscription = bus.subscribe("sync.users.update", "update")
        attempts = []
        for _ in range(3):
            message = await asyncio.wait_for(subscription.__anext__(), 1.0)
            attempts.append(message.delivery_attempt)
            await bus.nack(message)
        await subscription.aclose()

        assert attempts == [1, 2, 3]
        assert len(bus.dropped) == 1

        # Nothing left to deliver
        await bus.publish("sync.users.update", b"next")
        messages = await take(bus, "sync.users.update", "update", 1)
        assert messages[0].data == b"next"

    @pytest.mark.asyncio
    async def test_durable_resumes_position(self, bus):
        """A durable consumer continues where it stopped."""
        await bus.connect()
        await bus.publish("users.1", b"first")

        first = await take(bus, "users.*", "replication", 1)
        await bus.ack(first[0])

        await bus.publish("users.2", b"second")
        second = await take(bus, "users.*", "replication", 1)

        assert second[0].data == b"second"

    @pytest.mark.asyncio
    async def test_independent_durables(self, bus):
        """Two durable names each see every message."""
        await bus.connect()
        await bus.publish("users.1", b"shared")

        a = await take(bus, "users.*", "a", 1)
        b = await take(bus, "users.>", "b", 1)

        assert a[0].data == b[0].data == b"shared"

    @pytest.mark.asyncio
    async def test_ack_unknown_consumer_fails(self, bus):
        """Acking a message from an unknown consumer is an error."""
        await bus.connect()
        await bus.publish("users.1", b"x")
        messages = await take(bus, "users.*", "replication", 1)
        messages[0].consumer = "nope"

        with pytest.raises(BusError):
            await bus.ack(messages[0])

    @pytest.mark.asyncio
    async def test_get_published_and_wait(self, bus):
        """Testing helpers see published messages."""
        await bus.connect()

        async def publish_later():
            await asyncio.sleep(0.05)
            await bus.publish("users.7", b"x")

        task = asyncio.create_task(publish_later())
        assert await bus.wait_for_messages("users.*", 1, timeout=1.0)
        await task

        assert bus.get_message_count("users.*") == 1
        assert bus.get_published("users.*")[0].subject == "users.7"
        assert bus.get_message_count("sync.>") == 0

    @pytest.mark.asyncio
    async def test_fail_publishes(self, bus):
        """Injected publish failures surface to the caller."""
        await bus.connect()
        bus.fail_publishes(BusError("boom"))

        with pytest.raises(BusError):
            await bus.publish("users.1", b"x")

        bus.fail_publishes(None)
        await bus.publish("users.1", b"x")
        assert bus.get_message_count() == 1
