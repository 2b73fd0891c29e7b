"""
usersync - versioned-entity synchronization bridge.

This package keeps an append-only version history of users consistent across:
- A relational store (SQLite current-state table + version ledger)
- An event bus for fan-out notification (NATS JetStream or Kafka)
- A client-driven document replication protocol (push/pull, soft-deletes)

Architecture:
    ┌─────────────┐     ┌──────────────────┐
    │  HTTP API   │────▶│                  │────▶ users table (current state)
    └─────────────┘     │                  │
    ┌─────────────┐     │ Mutation Pipeline│────▶ versions table (ledger)
    │ Subscriber  │────▶│                  │
    │ (update req)│     │                  │────▶ broadcast subject
    └─────────────┘     └──────────────────┘
           ▲                     ▲
           │            ┌──────────────────┐
     update-request     │ Replication Sync │◀──── users.* (replicas)
        subject         │     Adapter      │────▶ users.<id> (republish)
                        └──────────────────┘

Invariants:
    - Version numbers per user form the contiguous sequence 1..N
    - The ledger is never edited; deletes are ledger records, not row removals
    - Mutations triggered by bus messages only publish to the broadcast subject
    - A mutation is durable once its ledger record is written; events are best-effort

How to change safely:
    - Keep wire formats (MutationEvent, ReplicationDocument) backward compatible
    - Subject names must match between publishers and subscribers
    - Run the concurrency tests after touching version allocation
"""

from ._version import __version__

__all__ = ["__version__"]
