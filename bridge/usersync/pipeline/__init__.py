"""
Mutation pipeline, event publisher and update-request subscriber.
"""

from .events import (
    MutationEvent,
    Operation,
    OutputChannel,
    VersionedEntity,
    VersionHistory,
)
from .mutations import MutationPipeline
from .publisher import EventPublisher
from .subscriber import UpdateRequestSubscriber
from .validation import validate_entity_id, validate_user_fields, validate_user_or_raise

__all__ = [
    "MutationEvent",
    "Operation",
    "OutputChannel",
    "VersionedEntity",
    "VersionHistory",
    "MutationPipeline",
    "EventPublisher",
    "UpdateRequestSubscriber",
    "validate_user_fields",
    "validate_user_or_raise",
    "validate_entity_id",
]
