"""
Input validation for the mutation pipeline.

Invariants:
    - Validation runs before any write
    - Error messages are deterministic and name the offending field
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

from ..errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_user_fields(
    email: Any,
    status: Any,
    role: Any = None,
) -> Tuple[bool, List[str]]:
    """Validate the writable user fields.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors: List[str] = []

    if not isinstance(email, str) or not email.strip():
        errors.append("Field 'email' is required")
    elif not EMAIL_PATTERN.match(email.strip()):
        errors.append(f"Field 'email' is not a valid address: '{email}'")

    if not isinstance(status, str) or not status.strip():
        errors.append("Field 'status' is required")

    if role is not None and not isinstance(role, str):
        errors.append(f"Field 'role' must be a string, got {type(role).__name__}")

    return len(errors) == 0, errors


def validate_user_or_raise(email: Any, status: Any, role: Any = None) -> None:
    """Validate user fields and raise if invalid.

    Raises:
        ValidationError: If any field is invalid
    """
    is_valid, errors = validate_user_fields(email, status, role)
    if not is_valid:
        field_name = errors[0].split("'")[1] if "'" in errors[0] else None
        raise ValidationError(
            f"Invalid user: {'; '.join(errors)}",
            field_name=field_name,
            errors=errors,
        )


def validate_entity_id(entity_id: Any, field_name: Optional[str] = "user_id") -> int:
    """Coerce an entity id to a positive integer.

    Raises:
        ValidationError: If the id is not a positive integer
    """
    if isinstance(entity_id, bool):
        raise ValidationError(f"Field '{field_name}' must be an integer", field_name=field_name)
    try:
        value = int(entity_id)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Field '{field_name}' must be an integer, got '{entity_id}'",
            field_name=field_name,
        )
    if value <= 0:
        raise ValidationError(
            f"Field '{field_name}' must be positive, got {value}",
            field_name=field_name,
        )
    return value
