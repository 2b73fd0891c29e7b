"""
Unit tests for mutation events, pipeline result types and validation.
"""

import json

import pytest

from bridge.usersync.errors import ProtocolError, ValidationError
from bridge.usersync.pipeline.events import (
    MutationEvent,
    Operation,
    VersionedEntity,
    VersionHistory,
)
from bridge.usersync.pipeline.validation import (
    validate_entity_id,
    validate_user_fields,
    validate_user_or_raise,
)
from bridge.usersync.store.models import User, VersionRecord, iso_to_ms, ms_to_iso


def make_user(**overrides):
    fields = dict(
        id=7,
        email="a@x.com",
        status="active",
        role=None,
        created_at=1_700_000_000_000,
        updated_at=1_700_000_000_000,
    )
    fields.update(overrides)
    return User(**fields)


class TestMutationEvent:
    """Tests for MutationEvent."""

    def test_build_assigns_fresh_ids(self):
        user = make_user()
        a = MutationEvent.build(user.id, Operation.CREATE, 1, user.to_dict(), "alice")
        b = MutationEvent.build(user.id, Operation.CREATE, 1, user.to_dict(), "alice")

        assert a.id != b.id
        assert a.operation == "create"
        assert a.timestamp.endswith("Z")

    def test_previous_data_only_for_updates(self):
        user = make_user()
        previous = make_user(status="pending").to_dict()

        create = MutationEvent.build(7, Operation.CREATE, 1, user.to_dict(), "a", previous)
        update = MutationEvent.build(7, Operation.UPDATE, 2, user.to_dict(), "a", previous)

        assert "previous_data" not in create.to_dict()
        assert update.to_dict()["previous_data"]["status"] == "pending"

    def test_wire_format(self):
        user = make_user()
        event = MutationEvent.build(7, Operation.UPDATE, 3, user.to_dict(), "bob")

        data = json.loads(event.to_bytes())

        assert set(data) == {
            "id",
            "user_id",
            "operation",
            "version",
            "user_data",
            "timestamp",
            "created_by",
        }
        assert data["user_data"]["email"] == "a@x.com"

    def test_headers(self):
        event = MutationEvent.build(7, Operation.DELETE, 4, make_user().to_dict(), "bob")

        headers = event.headers()

        assert headers["event_id"] == event.id
        assert headers["user_id"] == "7"
        assert headers["version"] == "4"
        assert headers["operation"] == "delete"
        assert "timestamp" in headers

    def test_from_bytes(self):
        event = MutationEvent.build(7, Operation.UPDATE, 2, make_user().to_dict(), "bob")

        parsed = MutationEvent.from_bytes(event.to_bytes())

        assert parsed == event

    def test_from_dict_defaults(self):
        parsed = MutationEvent.from_dict(
            {"id": "e1", "operation": "create", "user_data": {"email": "a@x.com"}}
        )

        assert parsed.user_id == 0
        assert parsed.version == 0
        assert parsed.created_by == "system"

    def test_from_bytes_malformed_json(self):
        with pytest.raises(ProtocolError):
            MutationEvent.from_bytes(b"{not json")

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"operation": "create", "user_data": {}},
            {"id": "e1", "operation": "create", "user_data": "nope"},
            {"id": "e1", "operation": "update", "user_data": {}, "user_id": "abc"},
        ],
    )
    def test_from_dict_rejects_invalid(self, payload):
        with pytest.raises(ProtocolError):
            MutationEvent.from_dict(payload)


class TestVersionedResults:
    """Tests for VersionedEntity and VersionHistory rendering."""

    def test_versioned_entity_to_dict(self):
        user = make_user()
        record = VersionRecord(
            id=11,
            object_type="user",
            object_id=7,
            version=2,
            snapshot={"status": "inactive"},
            action="update",
            actor="bob",
            created_at=0,
        )

        data = VersionedEntity(user, record).to_dict()

        assert data == {
            "id": 11,
            "user_id": 7,
            "version": 2,
            "user_data": {"status": "inactive"},
            "action": "update",
            "created_at": "1970-01-01T00:00:00.000Z",
            "created_by": "bob",
        }

    def test_history_to_dict(self):
        user = make_user()
        records = [
            VersionRecord(id=i, object_type="user", object_id=7, version=i) for i in (1, 2, 3)
        ]

        history = VersionHistory(user, records)
        data = history.to_dict()

        assert history.versions == [1, 2, 3]
        assert data["total"] == 3
        assert data["user"]["id"] == 7
        assert [v["version"] for v in data["versions"]] == [1, 2, 3]


class TestValidation:
    """Tests for pipeline input validation."""

    def test_valid_fields(self):
        assert validate_user_fields("a@x.com", "active", "admin") == (True, [])

    @pytest.mark.parametrize(
        "email,status,role,field_name",
        [
            (None, "active", None, "email"),
            ("", "active", None, "email"),
            ("not-an-email", "active", None, "email"),
            ("a@x.com", "", None, "status"),
            ("a@x.com", None, None, "status"),
            ("a@x.com", "active", 5, "role"),
        ],
    )
    def test_invalid_fields(self, email, status, role, field_name):
        with pytest.raises(ValidationError) as exc_info:
            validate_user_or_raise(email, status, role)

        assert exc_info.value.field_name == field_name
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_multiple_errors_reported(self):
        is_valid, errors = validate_user_fields("", "")

        assert not is_valid
        assert len(errors) == 2

    @pytest.mark.parametrize("value,expected", [(5, 5), ("12", 12)])
    def test_entity_id_coerced(self, value, expected):
        assert validate_entity_id(value) == expected

    @pytest.mark.parametrize("value", ["abc", 0, -3, None, True, "1.5"])
    def test_entity_id_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_entity_id(value)


class TestTimestamps:
    """Tests for ms/ISO conversion."""

    def test_round_trip_known_value(self):
        assert ms_to_iso(1_700_000_000_123) == "2023-11-14T22:13:20.123Z"
        assert iso_to_ms("2023-11-14T22:13:20.123Z") == 1_700_000_000_123

    def test_offsets_and_naive(self):
        assert iso_to_ms("2023-11-14T23:13:20.123+01:00") == 1_700_000_000_123
        assert iso_to_ms("2023-11-14T22:13:20.123") == 1_700_000_000_123

    def test_invalid(self):
        with pytest.raises(ValueError):
            iso_to_ms("yesterday")
