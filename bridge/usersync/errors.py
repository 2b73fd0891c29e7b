"""
Error types for the usersync bridge.

This module defines the exception taxonomy shared by every component:
- UserSyncError: Base exception
- ValidationError: Malformed caller input, rejected before any write
- NotFoundError: Referenced user or version is absent
- ProtocolError: Unrecognized operation tag or malformed wire payload
- StoreError: Relational store failure
- BusError: Event bus failure

Invariants:
    - All errors inherit from UserSyncError
    - Errors carry a stable code for programmatic handling
    - Store and ledger failures propagate; publish failures are only logged
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class UserSyncError(Exception):
    """Base exception for all usersync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "USERSYNC_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly error body."""
        body: Dict[str, Any] = {"error": self.message, "error_code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(UserSyncError):
    """Caller input failed validation.

    Raised when:
    - Email is missing or malformed
    - Status is missing
    - Entity ID is not a positive integer
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class NotFoundError(UserSyncError):
    """Referenced entity or version does not exist."""

    def __init__(
        self,
        message: str,
        object_type: str = "user",
        object_id: Optional[Any] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"object_type": object_type, "object_id": object_id},
        )
        self.object_type = object_type
        self.object_id = object_id


class ProtocolError(UserSyncError):
    """Wire payload is malformed or carries an unknown operation."""

    def __init__(self, message: str, payload: Optional[str] = None) -> None:
        details = {"payload": payload[:200]} if payload else None
        super().__init__(message, code="PROTOCOL_ERROR", details=details)


class StoreError(UserSyncError):
    """The relational store failed."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="STORE_ERROR",
            details={"operation": operation} if operation else None,
        )
        self.operation = operation


class BusError(UserSyncError):
    """Base exception for event bus operations."""

    def __init__(self, message: str, subject: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="BUS_ERROR",
            details={"subject": subject} if subject else None,
        )
        self.subject = subject


class BusConnectionError(BusError):
    """Connection to the bus backend failed or was lost."""

    pass


class BusTimeoutError(BusError):
    """Bus operation timed out."""

    pass
