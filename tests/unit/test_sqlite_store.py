"""
Unit tests for the SQLite entity store.

Tests cover:
- User CRUD and soft delete
- Version ledger append/list and the duplicate-version constraint
- Checkpoint listing
- Applied-event tracking and its atomicity with the ledger
- Strictly increasing change stamps
"""

import os
import sqlite3
import tempfile

import pytest

from bridge.usersync.store.base import DuplicateVersionError, EntityStoreError
from bridge.usersync.store.sqlite_store import SqliteStore


class TestSqliteStore:
    """Tests for SqliteStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create an initialized store."""
        store = SqliteStore(os.path.join(data_dir, "usersync.db"), wal_mode=False)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store):
        await store.initialize()
        assert await store.get_stats() == {
            "users": 0,
            "deleted_users": 0,
            "versions": 0,
            "applied_events": 0,
        }

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Created users get increasing ids and read back unchanged."""
        first = await store.create_entity("a@x.com", "active", "admin")
        second = await store.create_entity("b@x.com", "pending")

        assert second.id > first.id

        loaded = await store.get_entity_by_id(first.id)
        assert loaded == first
        assert loaded.role == "admin"
        assert loaded.deleted is False

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_entity_by_id(999) is None

    @pytest.mark.asyncio
    async def test_update_entity(self, store):
        user = await store.create_entity("a@x.com", "active", created_at=1000)

        updated = await store.update_entity(user.id, "a2@x.com", "inactive", None, updated_at=2000)

        assert updated.email == "a2@x.com"
        assert updated.status == "inactive"
        assert updated.created_at == 1000
        assert updated.updated_at == 2000

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, store):
        assert await store.update_entity(999, "a@x.com", "active") is None

    @pytest.mark.asyncio
    async def test_mark_deleted_keeps_row(self, store):
        """Soft delete flips the flag; update clears it again."""
        user = await store.create_entity("a@x.com", "active")

        deleted = await store.mark_deleted(user.id)
        assert deleted.deleted is True
        assert (await store.get_entity_by_id(user.id)).deleted is True

        revived = await store.update_entity(user.id, "a@x.com", "active")
        assert revived.deleted is False

    @pytest.mark.asyncio
    async def test_delete_entity_removes_row_only(self, store):
        """Physical delete removes the user but not its ledger."""
        user = await store.create_entity("a@x.com", "active")
        await store.append_version("user", user.id, 1, user.to_dict(), "create", "test")

        assert await store.delete_entity(user.id) is True
        assert await store.delete_entity(user.id) is False
        assert await store.get_entity_by_id(user.id) is None
        assert len(await store.list_versions_by_object("user", user.id)) == 1

    @pytest.mark.asyncio
    async def test_find_by_email_ignores_deleted(self, store):
        gone = await store.create_entity("a@x.com", "active")
        await store.mark_deleted(gone.id)
        assert await store.find_entity_by_email("a@x.com") is None

        live = await store.create_entity("a@x.com", "active")
        found = await store.find_entity_by_email("a@x.com")
        assert found.id == live.id

    @pytest.mark.asyncio
    async def test_append_and_list_versions(self, store):
        user = await store.create_entity("a@x.com", "active")

        await store.append_version("user", user.id, 1, {"status": "active"}, "create", "alice")
        await store.append_version("user", user.id, 2, {"status": "inactive"}, "update", "bob")

        records = await store.list_versions_by_object("user", user.id)
        assert [r.version for r in records] == [1, 2]
        assert records[1].snapshot == {"status": "inactive"}
        assert records[1].actor == "bob"
        assert await store.get_latest_version_number("user", user.id) == 2

        by_id = await store.get_version_by_id(records[0].id)
        assert by_id.action == "create"

        by_number = await store.get_version_by_number("user", user.id, 2)
        assert by_number.id == records[1].id

    @pytest.mark.asyncio
    async def test_latest_version_without_records(self, store):
        assert await store.get_latest_version_number("user", 42) == 0

    @pytest.mark.asyncio
    async def test_duplicate_version_rejected(self, store):
        """The unique constraint rejects a second record with the same version."""
        user = await store.create_entity("a@x.com", "active")
        await store.append_version("user", user.id, 1, {}, "create", "a")

        with pytest.raises(DuplicateVersionError) as exc_info:
            await store.append_version("user", user.id, 1, {}, "update", "b")

        assert exc_info.value.version == 1
        assert isinstance(exc_info.value, EntityStoreError)
        assert len(await store.list_versions_by_object("user", user.id)) == 1

    @pytest.mark.asyncio
    async def test_list_entities_since(self, store):
        """Listing is ordered by (updated_at, id) and strictly after the cursor."""
        a = await store.create_entity("a@x.com", "active", created_at=1000)
        b = await store.create_entity("b@x.com", "active", created_at=1000)
        c = await store.create_entity("c@x.com", "active", created_at=2000)
        await store.mark_deleted(a.id, updated_at=3000)

        page = await store.list_entities_since(-1, 0, 10)
        assert [u.id for u in page] == [b.id, c.id, a.id]

        after_b = await store.list_entities_since(b.updated_at, b.id, 10)
        assert [u.id for u in after_b] == [c.id, a.id]
        assert after_b[-1].deleted is True

        limited = await store.list_entities_since(-1, 0, 1)
        assert [u.id for u in limited] == [b.id]

    @pytest.mark.asyncio
    async def test_same_millisecond_writes_get_increasing_stamps(self, store):
        """A write landing in an already pulled millisecond is still pulled later."""
        a = await store.create_entity("a@x.com", "active", created_at=1000)
        b = await store.create_entity("b@x.com", "active", created_at=1000)
        assert a.updated_at == 1000
        assert b.updated_at > a.updated_at
        assert b.created_at == 1000

        checkpoint = (b.updated_at, b.id)
        updated = await store.update_entity(a.id, "a2@x.com", "active", None, updated_at=1000)

        assert updated.updated_at > b.updated_at
        after = await store.list_entities_since(*checkpoint, 10)
        assert [u.id for u in after] == [a.id]
        assert after[0].email == "a2@x.com"

    @pytest.mark.asyncio
    async def test_markers_commit_with_their_record(self, store):
        """A failed marker insert rolls back the ledger record too."""
        user = await store.create_entity("a@x.com", "active")
        conn = sqlite3.connect(str(store.db_path))
        conn.execute(
            "CREATE TRIGGER reject_markers BEFORE INSERT ON applied_events "
            "BEGIN SELECT RAISE(ABORT, 'marker rejected'); END"
        )
        conn.commit()

        with pytest.raises(EntityStoreError):
            await store.append_version(
                "user", user.id, 1, {}, "create", "a", applied_event_ids=["evt-1"]
            )

        assert await store.get_latest_version_number("user", user.id) == 0
        assert not await store.is_event_applied("evt-1")

        conn.execute("DROP TRIGGER reject_markers")
        conn.commit()
        conn.close()

        await store.append_version(
            "user", user.id, 1, {}, "create", "a", applied_event_ids=["evt-1", "evt-2"]
        )
        assert await store.is_event_applied("evt-1")
        assert await store.is_event_applied("evt-2")

    @pytest.mark.asyncio
    async def test_delete_entity_if_unversioned(self, store):
        bare = await store.create_entity("a@x.com", "active")
        versioned = await store.create_entity("b@x.com", "active")
        await store.append_version("user", versioned.id, 1, {}, "create", "a")

        assert await store.delete_entity_if_unversioned(versioned.id) is False
        assert await store.delete_entity_if_unversioned(bare.id) is True
        assert await store.get_entity_by_id(bare.id) is None
        assert await store.get_entity_by_id(versioned.id) is not None

    @pytest.mark.asyncio
    async def test_applied_events(self, store):
        assert not await store.is_event_applied("evt-1")

        await store.record_applied_event("evt-1", 1, 1)
        await store.record_applied_event("evt-1", 1, 2)

        assert await store.is_event_applied("evt-1")
        assert (await store.get_stats())["applied_events"] == 1

    @pytest.mark.asyncio
    async def test_store_errors_are_wrapped(self, data_dir):
        """sqlite errors surface as EntityStoreError."""
        store = SqliteStore(os.path.join(data_dir, "uninitialized.db"), wal_mode=False)

        with pytest.raises(EntityStoreError) as exc_info:
            await store.get_entity_by_id(1)

        assert exc_info.value.operation == "get_entity_by_id"
