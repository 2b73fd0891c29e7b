"""
Unit tests for replication documents and checkpoints.
"""

import pytest

from bridge.usersync.errors import ProtocolError
from bridge.usersync.replication.documents import Checkpoint, ReplicationDocument
from bridge.usersync.store.models import User


class TestReplicationDocument:
    """Tests for ReplicationDocument."""

    def test_from_dict(self):
        doc = ReplicationDocument.from_dict(
            {
                "id": "c1f0",
                "email": "a@x.com",
                "status": "active",
                "role": "",
                "created_at": "2024-05-01T10:00:00.000Z",
                "updated_at": "2024-05-01T10:00:00.000Z",
                "_deleted": False,
            }
        )

        assert doc.id == "c1f0"
        assert doc.role is None
        assert doc.deleted is False

    def test_numeric_id_becomes_string(self):
        doc = ReplicationDocument.from_dict({"id": 42, "email": "a@x.com", "_deleted": True})

        assert doc.id == "42"
        assert doc.deleted is True
        assert doc.status == ""

    @pytest.mark.parametrize("data", [None, "x", {}, {"id": ""}, {"email": "a@x.com"}])
    def test_rejects_invalid(self, data):
        with pytest.raises(ProtocolError):
            ReplicationDocument.from_dict(data)

    @pytest.mark.parametrize(
        "data",
        [
            {"id": "c1", "email": 123, "status": "active"},
            {"id": "c1", "email": "a@x.com", "status": ["active"]},
            {"id": "c1", "email": "a@x.com", "status": "active", "role": 5},
            {"id": "c1", "email": "a@x.com", "updated_at": 1000},
            {"id": {"n": 1}, "email": "a@x.com"},
            {"id": True, "email": "a@x.com"},
        ],
    )
    def test_rejects_mistyped_fields(self, data):
        with pytest.raises(ProtocolError):
            ReplicationDocument.from_dict(data)

    @pytest.mark.parametrize("flag", ["false", "true", 0, 1])
    def test_deleted_must_be_boolean(self, flag):
        with pytest.raises(ProtocolError):
            ReplicationDocument.from_dict({"id": "c1", "email": "a@x.com", "_deleted": flag})

    def test_null_fields_read_as_empty(self):
        doc = ReplicationDocument.from_dict(
            {"id": "c1", "email": None, "status": None, "role": None, "_deleted": None}
        )

        assert doc.email == ""
        assert doc.status == ""
        assert doc.role is None
        assert doc.deleted is False

    def test_from_user_wire_shape(self):
        user = User(
            id=5,
            email="a@x.com",
            status="active",
            role=None,
            created_at=0,
            updated_at=1000,
            deleted=True,
        )

        data = ReplicationDocument.from_user(user).to_dict()

        assert data == {
            "id": "5",
            "email": "a@x.com",
            "status": "active",
            "role": "",
            "created_at": "1970-01-01T00:00:00.000Z",
            "updated_at": "1970-01-01T00:00:01.000Z",
            "_deleted": True,
        }


class TestCheckpoint:
    """Tests for Checkpoint."""

    def test_empty_means_start(self):
        assert Checkpoint.from_dict(None) is None
        assert Checkpoint.from_dict({}) is None

    def test_cursor(self):
        checkpoint = Checkpoint.from_dict({"updated_at": "1970-01-01T00:00:01.000Z", "id": "9"})

        assert checkpoint.cursor() == (1000, 9)
        assert checkpoint.to_dict() == {"updated_at": "1970-01-01T00:00:01.000Z", "id": "9"}

    def test_non_numeric_id_cursor(self):
        checkpoint = Checkpoint(updated_at="1970-01-01T00:00:01.000Z", id="abc")
        assert checkpoint.cursor() == (1000, 0)

    def test_non_ascii_digit_id_cursor(self):
        checkpoint = Checkpoint.from_dict({"updated_at": "1970-01-01T00:00:01.000Z", "id": "²"})
        assert checkpoint.cursor() == (1000, 0)

    @pytest.mark.parametrize("data", [{"id": "1"}, {"updated_at": "not-a-date", "id": "1"}, "x"])
    def test_rejects_invalid(self, data):
        with pytest.raises(ProtocolError):
            Checkpoint.from_dict(data)
