"""
SQLite implementation of the entity store.

This module manages the single SQLite database that stores:
- Users (current state, mutated in place)
- The version ledger (append-only)
- Applied events for redelivery detection

Invariants:
    - Ledger rows are never updated or deleted
    - UNIQUE (object_type, object_id, version) rejects duplicate versions
    - Soft delete flips users.deleted; the row stays
    - Updates clear the deleted flag
    - Every user write gets an updated_at strictly greater than any stored
      one, so a (updated_at, id) pull cursor never skips a later write
    - Applied-event markers commit in the same transaction as their
      ledger record

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for multi-statement writes

Table schema:
    users:
        - id INTEGER PRIMARY KEY
        - email TEXT
        - status TEXT
        - role TEXT (nullable)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - deleted INTEGER (0/1)
        - INDEX on (updated_at, id) for checkpoint pulls

    versions:
        - id INTEGER PRIMARY KEY
        - object_type TEXT
        - object_id INTEGER
        - version INTEGER
        - snapshot_json TEXT
        - action TEXT
        - actor TEXT
        - created_at INTEGER
        - UNIQUE (object_type, object_id, version)

    applied_events:
        - event_id TEXT PRIMARY KEY
        - object_id INTEGER
        - version INTEGER
        - applied_at INTEGER
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import DuplicateVersionError, EntityStoreError
from .models import User, VersionRecord, now_ms

logger = logging.getLogger(__name__)


class SqliteStore:
    """SQLite store for users and their version ledger.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteStore("/var/lib/usersync/usersync.db")
        >>> await store.initialize()
        >>> user = await store.create_entity("a@x.com", "active")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection; sqlite errors become EntityStoreError."""
        conn: sqlite3.Connection | None = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.Error as e:
            raise EntityStoreError(f"{operation} failed: {e}", operation=operation) from e
        finally:
            if conn is not None:
                conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL,
                status TEXT NOT NULL,
                role TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_users_updated ON users(updated_at, id);
            CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);

            CREATE TABLE IF NOT EXISTS versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                object_type TEXT NOT NULL,
                object_id INTEGER NOT NULL,
                version INTEGER NOT NULL,
                snapshot_json TEXT NOT NULL DEFAULT '{}',
                action TEXT NOT NULL,
                actor TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE (object_type, object_id, version)
            );

            CREATE TABLE IF NOT EXISTS applied_events (
                event_id TEXT PRIMARY KEY,
                object_id INTEGER,
                version INTEGER,
                applied_at INTEGER NOT NULL
            );
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, now_ms()),
        )

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection("initialize") as conn:
            self._create_schema(conn)
        logger.info("Initialized database", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        """Nothing to release; connections are per-operation."""
        logger.debug("SqliteStore closed")

    # Users

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            status=row["status"],
            role=row["role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted=bool(row["deleted"]),
        )

    def _next_updated_at(self, conn: sqlite3.Connection, requested: int) -> int:
        """Change stamp for a user write; callers hold a write transaction.

        Stamps run ahead of the wall clock when several writes land in the
        same millisecond.
        """
        row = conn.execute("SELECT MAX(updated_at) FROM users").fetchone()
        if row[0] is None:
            return requested
        return max(requested, row[0] + 1)

    async def create_entity(
        self,
        email: str,
        status: str,
        role: str | None = None,
        created_at: int | None = None,
    ) -> User:
        """Insert a new user and return it with its assigned id."""
        now = created_at or now_ms()
        with self._get_connection("create_entity") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                updated_at = self._next_updated_at(conn, now)
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, status, role, created_at, updated_at, deleted)
                    VALUES (?, ?, ?, ?, ?, 0)
                    """,
                    (email, status, role, now, updated_at),
                )
                user_id = cursor.lastrowid
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Created user", extra={"user_id": user_id})
        return User(
            id=user_id,
            email=email,
            status=status,
            role=role,
            created_at=now,
            updated_at=updated_at,
        )

    async def get_entity_by_id(self, entity_id: int) -> User | None:
        with self._get_connection("get_entity_by_id") as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_user(row) if row else None

    async def find_entity_by_email(self, email: str) -> User | None:
        """Oldest live user with this email, if any."""
        with self._get_connection("find_entity_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? AND deleted = 0 ORDER BY id LIMIT 1",
                (email,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    async def update_entity(
        self,
        entity_id: int,
        email: str,
        status: str,
        role: str | None = None,
        updated_at: int | None = None,
    ) -> User | None:
        """Overwrite a user's fields and clear its deleted flag.

        Returns:
            Updated User or None if not found
        """
        now = updated_at or now_ms()
        with self._get_connection("update_entity") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                stamp = self._next_updated_at(conn, now)
                cursor = conn.execute(
                    """
                    UPDATE users
                    SET email = ?, status = ?, role = ?, updated_at = ?, deleted = 0
                    WHERE id = ?
                    """,
                    (email, status, role, stamp, entity_id),
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    return None
                row = conn.execute("SELECT * FROM users WHERE id = ?", (entity_id,)).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return self._row_to_user(row)

    async def mark_deleted(self, entity_id: int, updated_at: int | None = None) -> User | None:
        """Soft delete: set the deleted flag and bump updated_at."""
        now = updated_at or now_ms()
        with self._get_connection("mark_deleted") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                stamp = self._next_updated_at(conn, now)
                cursor = conn.execute(
                    "UPDATE users SET deleted = 1, updated_at = ? WHERE id = ?",
                    (stamp, entity_id),
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    return None
                row = conn.execute("SELECT * FROM users WHERE id = ?", (entity_id,)).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return self._row_to_user(row)

    async def delete_entity(self, entity_id: int) -> bool:
        """Physically remove a user row. Ledger records are kept.

        Returns:
            True if a row was removed
        """
        with self._get_connection("delete_entity") as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (entity_id,))
            return cursor.rowcount > 0

    async def delete_entity_if_unversioned(self, entity_id: int) -> bool:
        """Remove a user row that has no ledger records yet.

        Used to discard a row whose creation could not be versioned.

        Returns:
            True if a row was removed
        """
        with self._get_connection("delete_entity_if_unversioned") as conn:
            cursor = conn.execute(
                """
                DELETE FROM users WHERE id = ?
                AND NOT EXISTS (SELECT 1 FROM versions WHERE object_id = users.id)
                """,
                (entity_id,),
            )
            return cursor.rowcount > 0

    async def list_entities_since(
        self, updated_at: int, entity_id: int, limit: int
    ) -> list[User]:
        """Users strictly after (updated_at, id), soft-deleted ones included."""
        with self._get_connection("list_entities_since") as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE updated_at > ? OR (updated_at = ? AND id > ?)
                ORDER BY updated_at, id
                LIMIT ?
                """,
                (updated_at, updated_at, entity_id, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # Version ledger

    def _row_to_version(self, row: sqlite3.Row) -> VersionRecord:
        return VersionRecord(
            id=row["id"],
            object_type=row["object_type"],
            object_id=row["object_id"],
            version=row["version"],
            snapshot=json.loads(row["snapshot_json"]),
            action=row["action"],
            actor=row["actor"],
            created_at=row["created_at"],
        )

    async def append_version(
        self,
        object_type: str,
        object_id: int,
        version: int,
        snapshot: dict[str, Any],
        action: str,
        actor: str,
        applied_event_ids: Sequence[str] = (),
    ) -> VersionRecord:
        """Append one ledger record.

        Each id in applied_event_ids is marked applied in the same
        transaction, so a marker exists exactly when its record does.

        Raises:
            DuplicateVersionError: If the version number is taken
            EntityStoreError: For other failures
        """
        now = now_ms()
        with self._get_connection("append_version") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO versions (object_type, object_id, version, snapshot_json,
                                          action, actor, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (object_type, object_id, version, json.dumps(snapshot), action, actor, now),
                )
                record_id = cursor.lastrowid
                for event_id in applied_event_ids:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO applied_events
                            (event_id, object_id, version, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (event_id, object_id, version, now),
                    )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                if "UNIQUE" in str(e):
                    raise DuplicateVersionError(object_type, object_id, version) from e
                raise
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Appended version",
            extra={
                "object_type": object_type,
                "object_id": object_id,
                "version": version,
                "action": action,
            },
        )
        return VersionRecord(
            id=record_id,
            object_type=object_type,
            object_id=object_id,
            version=version,
            snapshot=snapshot,
            action=action,
            actor=actor,
            created_at=now,
        )

    async def list_versions_by_object(
        self, object_type: str, object_id: int
    ) -> list[VersionRecord]:
        """All ledger records of an object, oldest first."""
        with self._get_connection("list_versions_by_object") as conn:
            rows = conn.execute(
                """
                SELECT * FROM versions
                WHERE object_type = ? AND object_id = ?
                ORDER BY version
                """,
                (object_type, object_id),
            ).fetchall()
        return [self._row_to_version(row) for row in rows]

    async def get_version_by_id(self, version_id: int) -> VersionRecord | None:
        with self._get_connection("get_version_by_id") as conn:
            row = conn.execute("SELECT * FROM versions WHERE id = ?", (version_id,)).fetchone()
        return self._row_to_version(row) if row else None

    async def get_version_by_number(
        self, object_type: str, object_id: int, version: int
    ) -> VersionRecord | None:
        with self._get_connection("get_version_by_number") as conn:
            row = conn.execute(
                """
                SELECT * FROM versions
                WHERE object_type = ? AND object_id = ? AND version = ?
                """,
                (object_type, object_id, version),
            ).fetchone()
        return self._row_to_version(row) if row else None

    async def get_latest_version_number(self, object_type: str, object_id: int) -> int:
        """Highest version of an object, 0 when it has none."""
        with self._get_connection("get_latest_version_number") as conn:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(version), 0) AS latest FROM versions
                WHERE object_type = ? AND object_id = ?
                """,
                (object_type, object_id),
            ).fetchone()
        return row["latest"]

    # Applied events

    async def is_event_applied(self, event_id: str) -> bool:
        """Check if a mutation event has already been applied."""
        with self._get_connection("is_event_applied") as conn:
            cursor = conn.execute(
                "SELECT 1 FROM applied_events WHERE event_id = ?",
                (event_id,),
            )
            return cursor.fetchone() is not None

    async def record_applied_event(
        self, event_id: str, object_id: int | None, version: int | None
    ) -> None:
        """Record that a mutation event has been applied (first write wins)."""
        with self._get_connection("record_applied_event") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO applied_events (event_id, object_id, version, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (event_id, object_id, version, now_ms()),
            )

    async def get_stats(self) -> dict[str, int]:
        """Row counts, used by the health endpoint."""
        with self._get_connection("get_stats") as conn:
            users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            deleted = conn.execute("SELECT COUNT(*) FROM users WHERE deleted = 1").fetchone()[0]
            versions = conn.execute("SELECT COUNT(*) FROM versions").fetchone()[0]
            applied = conn.execute("SELECT COUNT(*) FROM applied_events").fetchone()[0]
        return {
            "users": users,
            "deleted_users": deleted,
            "versions": versions,
            "applied_events": applied,
        }
