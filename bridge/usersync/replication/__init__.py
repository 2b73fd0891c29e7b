"""
Replication protocol bridge: identity resolution, the sync adapter and
checkpointed pull/push.
"""

from .adapter import ORIGIN_HEADER, AdapterOutcome, ReplicationSyncAdapter
from .documents import Checkpoint, ReplicationDocument
from .identity import IdentityResolver, Resolution, Resolved, Unresolved, parse_store_id
from .protocol import PullResult, PushResult, ReplicationProtocol

__all__ = [
    "ReplicationDocument",
    "Checkpoint",
    "IdentityResolver",
    "Resolution",
    "Resolved",
    "Unresolved",
    "parse_store_id",
    "ReplicationSyncAdapter",
    "AdapterOutcome",
    "ORIGIN_HEADER",
    "ReplicationProtocol",
    "PullResult",
    "PushResult",
]
