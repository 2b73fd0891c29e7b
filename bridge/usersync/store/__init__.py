"""
Relational store for users and their version ledger.
"""

from .base import DuplicateVersionError, EntityStore, EntityStoreError
from .models import User, VersionRecord, iso_to_ms, ms_to_iso, now_ms
from .sqlite_store import SqliteStore

__all__ = [
    "EntityStore",
    "EntityStoreError",
    "DuplicateVersionError",
    "SqliteStore",
    "User",
    "VersionRecord",
    "now_ms",
    "ms_to_iso",
    "iso_to_ms",
]
