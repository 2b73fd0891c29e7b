"""
Unit tests for environment-driven configuration.
"""

import pytest

from bridge.usersync.config import (
    BusBackend,
    ServerConfig,
    SubjectsConfig,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "BUS_BACKEND",
        "NATS_SERVERS",
        "KAFKA_BROKERS",
        "SUBJECT_UPDATE_REQUEST",
        "SUBJECT_BROADCAST",
        "SUBJECT_REPLICATION_PREFIX",
        "CONSUMER_MAX_DELIVER",
        "AUTH_REQUIRED",
        "CORS_ORIGINS",
        "HTTP_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestServerConfig:
    """Tests for ServerConfig.from_env and validate."""

    def test_defaults(self, clean_env):
        config = ServerConfig.from_env()

        assert config.bus_backend == BusBackend.NATS
        assert config.subjects.update_request == "sync.users.update"
        assert config.subjects.broadcast == "sync.users.broadcast"
        assert config.consumer.max_deliver == 5
        assert config.auth.required is True
        assert config.http.cors_origins == ("*",)

    def test_overrides(self, clean_env):
        clean_env.setenv("BUS_BACKEND", "KAFKA")
        clean_env.setenv("KAFKA_BROKERS", "k1:9092,k2:9092")
        clean_env.setenv("AUTH_REQUIRED", "false")
        clean_env.setenv("HTTP_PORT", "9000")
        clean_env.setenv("CORS_ORIGINS", "http://a.test, http://b.test")

        config = ServerConfig.from_env()

        assert config.bus_backend == BusBackend.KAFKA
        assert config.kafka.brokers == "k1:9092,k2:9092"
        assert config.auth.required is False
        assert config.http.port == 9000
        assert config.http.cors_origins == ("http://a.test", "http://b.test")

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("BUS_BACKEND", "carrier-pigeon")

        with pytest.raises(ValueError, match="Invalid BUS_BACKEND"):
            ServerConfig.from_env()

    def test_same_update_and_broadcast_subject(self, clean_env):
        clean_env.setenv("SUBJECT_UPDATE_REQUEST", "sync.users")
        clean_env.setenv("SUBJECT_BROADCAST", "sync.users")

        with pytest.raises(ValueError, match="must differ"):
            ServerConfig.from_env()

    def test_subject_overlapping_replication_family(self):
        config = ServerConfig(subjects=SubjectsConfig(update_request="users.update"))

        with pytest.raises(ValueError, match="overlaps"):
            config.validate()

    def test_max_deliver_must_be_positive(self, clean_env):
        clean_env.setenv("CONSUMER_MAX_DELIVER", "0")

        with pytest.raises(ValueError, match="CONSUMER_MAX_DELIVER"):
            ServerConfig.from_env()

    def test_nats_requires_servers(self, clean_env):
        clean_env.setenv("NATS_SERVERS", " , ")

        with pytest.raises(ValueError, match="NATS_SERVERS"):
            ServerConfig.from_env()


class TestSubjectsConfig:
    def test_replication_subjects(self):
        subjects = SubjectsConfig(replication_prefix="people")

        assert subjects.replication_pattern == "people.*"
        assert subjects.replication_subject(42) == "people.42"
