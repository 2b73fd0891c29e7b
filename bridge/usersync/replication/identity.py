"""
Identity resolution between client document ids and store ids.

Resolution order:
1. The client id is a positive integer and that user row exists
2. A live user with the document's email exists
3. Otherwise the document is unresolved and routes to creation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from ..errors import StoreError
from ..store.base import EntityStore, EntityStoreError
from .documents import ReplicationDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    """The document maps onto an existing user."""

    entity_id: int
    matched_by: str = "id"


@dataclass(frozen=True)
class Unresolved:
    """No existing user corresponds to the document."""

    reason: str = "no match"


Resolution = Union[Resolved, Unresolved]


def parse_store_id(client_id: str) -> int | None:
    """Store id encoded in a client id, if it is a positive integer.

    >>> parse_store_id("42")
    42
    >>> parse_store_id("c1f0-uuid") is None
    True
    """
    text = client_id.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    value = int(text)
    return value if value > 0 else None


class IdentityResolver:
    """Maps replication documents onto store ids."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def resolve(self, document: ReplicationDocument) -> Resolution:
        """Resolve a document to a store id.

        Raises:
            StoreError: If the lookup fails
        """
        try:
            store_id = parse_store_id(document.id)
            if store_id is not None:
                user = await self.store.get_entity_by_id(store_id)
                if user is not None:
                    return Resolved(entity_id=user.id, matched_by="id")

            if document.email:
                user = await self.store.find_entity_by_email(document.email.strip())
                if user is not None:
                    logger.debug(
                        "Resolved document by email",
                        extra={"client_id": document.id, "user_id": user.id},
                    )
                    return Resolved(entity_id=user.id, matched_by="email")
        except EntityStoreError as e:
            raise StoreError(str(e), operation="resolve_identity") from e

        return Unresolved(reason=f"no user for client id '{document.id}'")
