"""
Configuration management for the usersync bridge.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Subject names must be identical across every process sharing a bus
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Renaming a subject or durable consumer orphans its existing stream state
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class BusBackend(Enum):
    """Supported event bus backends."""

    NATS = "nats"
    KAFKA = "kafka"
    MEMORY = "memory"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Address to bind
        port: Port to bind
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class NatsConfig:
    """NATS JetStream backend configuration.

    Attributes:
        servers: Comma-separated list of server URLs
        client_name: Connection name shown in server monitoring
        max_reconnect_attempts: Reconnect attempts before giving up
        reconnect_time_wait: Seconds between reconnect attempts
        token: Optional auth token
    """

    servers: str = "nats://localhost:4222"
    client_name: str = "usersync"
    max_reconnect_attempts: int = 10
    reconnect_time_wait: float = 2.0
    token: str | None = None

    @classmethod
    def from_env(cls) -> NatsConfig:
        """Load configuration from environment variables."""
        return cls(
            servers=os.getenv("NATS_SERVERS", "nats://localhost:4222"),
            client_name=os.getenv("NATS_CLIENT_NAME", "usersync"),
            max_reconnect_attempts=int(os.getenv("NATS_MAX_RECONNECTS", "10")),
            reconnect_time_wait=float(os.getenv("NATS_RECONNECT_WAIT", "2.0")),
            token=os.getenv("NATS_TOKEN"),
        )

    @property
    def server_list(self) -> list[str]:
        return [s.strip() for s in self.servers.split(",") if s.strip()]


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda backend configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        client_id: Client identifier
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        auto_offset_reset: Where new consumer groups start
        num_partitions: Partitions for topics created by ensure_stream
        replication_factor: Replication factor for created topics
    """

    brokers: str = "localhost:9092"
    client_id: str = "usersync"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"
    num_partitions: int = 1
    replication_factor: int = 1

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "usersync"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            num_partitions=int(os.getenv("KAFKA_NUM_PARTITIONS", "1")),
            replication_factor=int(os.getenv("KAFKA_REPLICATION_FACTOR", "1")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Relational store configuration.

    Attributes:
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "/var/lib/usersync/usersync.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "/var/lib/usersync/usersync.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SubjectsConfig:
    """Bus subjects and stream names.

    Attributes:
        update_request: Subject carrying requested, not-yet-applied mutations
        broadcast: Subject carrying applied mutation notifications
        replication_prefix: Prefix of the per-user replication subjects
        update_stream: Durable stream holding update requests
        broadcast_stream: Durable stream holding broadcasts
        replication_stream: Durable stream holding replication documents
    """

    update_request: str = "sync.users.update"
    broadcast: str = "sync.users.broadcast"
    replication_prefix: str = "users"
    update_stream: str = "USERS_UPDATE"
    broadcast_stream: str = "USERS_BROADCAST"
    replication_stream: str = "USERS_REPLICATION"

    @classmethod
    def from_env(cls) -> SubjectsConfig:
        """Load configuration from environment variables."""
        return cls(
            update_request=os.getenv("SUBJECT_UPDATE_REQUEST", "sync.users.update"),
            broadcast=os.getenv("SUBJECT_BROADCAST", "sync.users.broadcast"),
            replication_prefix=os.getenv("SUBJECT_REPLICATION_PREFIX", "users"),
            update_stream=os.getenv("STREAM_UPDATE", "USERS_UPDATE"),
            broadcast_stream=os.getenv("STREAM_BROADCAST", "USERS_BROADCAST"),
            replication_stream=os.getenv("STREAM_REPLICATION", "USERS_REPLICATION"),
        )

    @property
    def replication_pattern(self) -> str:
        """Wildcard matching every per-user replication subject."""
        return f"{self.replication_prefix}.*"

    def replication_subject(self, user_id: int | str) -> str:
        """Per-user replication subject, keyed on the store ID."""
        return f"{self.replication_prefix}.{user_id}"


@dataclass(frozen=True)
class ConsumerConfig:
    """Bus consumer configuration.

    Attributes:
        update_durable: Durable consumer name for the update-request subscriber
        replication_durable: Durable consumer name for the replication adapter
        max_deliver: Deliveries per message before the bus gives up on it
        ack_wait_seconds: Seconds before an unacknowledged message is redelivered
        drain_timeout_seconds: Time allowed for in-flight messages on shutdown
    """

    update_durable: str = "usersync-update"
    replication_durable: str = "usersync-replication"
    max_deliver: int = 5
    ack_wait_seconds: float = 30.0
    drain_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> ConsumerConfig:
        """Load configuration from environment variables."""
        return cls(
            update_durable=os.getenv("UPDATE_CONSUMER_DURABLE", "usersync-update"),
            replication_durable=os.getenv(
                "REPLICATION_CONSUMER_DURABLE", "usersync-replication"
            ),
            max_deliver=int(os.getenv("CONSUMER_MAX_DELIVER", "5")),
            ack_wait_seconds=float(os.getenv("CONSUMER_ACK_WAIT_SECONDS", "30")),
            drain_timeout_seconds=float(os.getenv("DRAIN_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Mutation pipeline configuration.

    Attributes:
        object_type: Ledger object type tag for users
        max_version_retries: Retries when another writer took the same version
        replication_actor: Actor recorded for replication-driven mutations
    """

    object_type: str = "user"
    max_version_retries: int = 3
    replication_actor: str = "rxdb-sync"

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Load configuration from environment variables."""
        return cls(
            max_version_retries=int(os.getenv("MAX_VERSION_RETRIES", "3")),
            replication_actor=os.getenv("REPLICATION_ACTOR", "rxdb-sync"),
        )


@dataclass(frozen=True)
class AuthConfig:
    """API authentication configuration.

    Attributes:
        required: Whether API routes require a bearer token
    """

    required: bool = True

    @classmethod
    def from_env(cls) -> AuthConfig:
        """Load configuration from environment variables."""
        return cls(required=_env_bool("AUTH_REQUIRED", "true"))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        bus_backend: Which bus backend to use
        http: HTTP API configuration
        nats: NATS configuration (if bus_backend is NATS)
        kafka: Kafka configuration (if bus_backend is KAFKA)
        storage: Relational store configuration
        subjects: Subject and stream names
        consumer: Consumer configuration
        pipeline: Mutation pipeline configuration
        auth: API authentication configuration
        observability: Logging configuration
    """

    bus_backend: BusBackend = BusBackend.NATS
    http: HttpConfig = field(default_factory=HttpConfig)
    nats: NatsConfig = field(default_factory=NatsConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    subjects: SubjectsConfig = field(default_factory=SubjectsConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("BUS_BACKEND", "nats").lower()
        try:
            bus_backend = BusBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid BUS_BACKEND '{backend_str}'. Must be one of: nats, kafka, memory"
            )

        config = cls(
            bus_backend=bus_backend,
            http=HttpConfig.from_env(),
            nats=NatsConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            subjects=SubjectsConfig.from_env(),
            consumer=ConsumerConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
            auth=AuthConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.bus_backend == BusBackend.NATS and not self.nats.server_list:
            raise ValueError("NATS_SERVERS is required when BUS_BACKEND=nats")
        if self.bus_backend == BusBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when BUS_BACKEND=kafka")

        subjects = self.subjects
        if subjects.update_request == subjects.broadcast:
            raise ValueError("SUBJECT_UPDATE_REQUEST and SUBJECT_BROADCAST must differ")
        for name in (subjects.update_request, subjects.broadcast):
            if name.split(".")[0] == subjects.replication_prefix:
                raise ValueError(
                    f"Subject '{name}' overlaps the replication family "
                    f"'{subjects.replication_pattern}'"
                )

        if self.consumer.max_deliver < 1:
            raise ValueError("CONSUMER_MAX_DELIVER must be at least 1")
        if self.pipeline.max_version_retries < 0:
            raise ValueError("MAX_VERSION_RETRIES must not be negative")

        if self.bus_backend == BusBackend.MEMORY:
            logger.warning("In-memory bus selected; events are not shared between processes")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "bus_backend": self.bus_backend.value,
                "nats_servers": self.nats.servers
                if self.bus_backend == BusBackend.NATS
                else None,
                "kafka_brokers": self.kafka.brokers
                if self.bus_backend == BusBackend.KAFKA
                else None,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "db_path": self.storage.db_path,
                "subject_update_request": self.subjects.update_request,
                "subject_broadcast": self.subjects.broadcast,
                "replication_pattern": self.subjects.replication_pattern,
                "auth_required": self.auth.required,
                "log_level": self.observability.log_level,
            },
        )
