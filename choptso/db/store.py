"""
Document store contract.

The store is the external database every component talks to. Filters and
updates use the MongoDB dialect so the same calls run against a real
MongoDB (``MongoDocumentStore``) and the in-process backend
(``InMemoryDocumentStore``).

Filters:
    {"field": value}                 equality; array fields match if they contain value
    {"field": {"$ne": value}}        array fields match if they do NOT contain value
    {"field": {"$in": [...]}}
    {"field": {"$lt"|"$lte"|"$gt"|"$gte": value}}
    {"$or": [filters, ...]}          any clause matches
    dotted paths ("reactions.👍") address nested keys

Updates:
    {"$set": {...}, "$unset": {...}, "$addToSet": {...}, "$pull": {...}}
    "$addToSet" accepts {"field": {"$each": [...]}}

Change feeds:
    ``watch`` returns a ChangeFeed, used as

        async with store.watch("messages", {"conversation_id": cid}) as feed:
            async for batch in feed:
                ...

    A feed raises PermissionDeniedError (terminal) or TransientError
    (reopen and resume). Delivery is at-least-once: consumers must upsert.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

Document = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]  # [("created_at", -1)]

ASCENDING = 1
DESCENDING = -1


@dataclass
class ChangeBatch:
    """Documents added, modified or removed by one server-side change."""

    added: List[Document] = field(default_factory=list)
    modified: List[Document] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)  # document ids

    def __bool__(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    @property
    def size(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


class ChangeFeed(ABC):
    """Async iterator of ChangeBatch objects; also an async context manager."""

    async def __aenter__(self) -> "ChangeFeed":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeBatch:
        return await self.next_batch()

    @abstractmethod
    async def open(self) -> None:
        """Start listening. Changes after this call are never missed."""

    @abstractmethod
    async def next_batch(self) -> ChangeBatch:
        """Wait for the next batch."""

    @abstractmethod
    async def close(self) -> None:
        """Stop listening and release resources."""


class DocumentStore(ABC):
    """Abstract document database."""

    @abstractmethod
    def now(self) -> datetime:
        """Server-assigned timestamp (timezone-aware UTC)."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise TransientError if the store is unreachable."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def insert(self, collection: str, doc: Document) -> Document:
        """Insert ``doc``; an ``id`` is assigned when missing. Returns the stored doc."""

    @abstractmethod
    async def upsert(
        self,
        collection: str,
        doc_id: str,
        update: Document,
        defaults: Optional[Document] = None,
    ) -> Document:
        """Apply ``update`` to ``doc_id``, creating it from ``defaults`` first if absent."""

    @abstractmethod
    async def update_one(
        self, collection: str, filters: Document, update: Document
    ) -> Optional[Document]:
        """Atomically update the first match; returns the post-image or None."""

    @abstractmethod
    async def update_many(
        self, collection: str, filters: Document, update: Document
    ) -> int:
        """Update every match (each document atomically); returns modified count."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Document,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        ...

    @abstractmethod
    async def count(self, collection: str, filters: Document) -> int:
        ...

    @abstractmethod
    def watch(self, collection: str, filters: Optional[Document] = None) -> ChangeFeed:
        """Change feed over documents matching ``filters``."""

    async def close(self) -> None:
        """Release connections."""
