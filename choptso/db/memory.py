"""
In-process document store.

Implements the DocumentStore contract with the same filter/update dialect
and change-feed semantics as the MongoDB backend. Used for local
development (STORE_BACKEND=memory) and by the test suite.

Availability can be toggled to exercise outage handling:

    store.set_available(False)   # every call raises TransientError,
                                 # open feeds fail with TransientError
    store.deny("messages")       # reads/feeds on a collection raise
                                 # PermissionDeniedError
"""

import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from choptso.core.exceptions import PermissionDeniedError, TransientError
from choptso.core.logging_config import get_logger
from choptso.db.store import (
    ChangeBatch,
    ChangeFeed,
    Document,
    DocumentStore,
    SortSpec,
)

logger = get_logger(__name__)

_MISSING = object()


# ============================================================================
# Filter matching
# ============================================================================

def _resolve(doc: Document, path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _compare(actual: Any, op: str, arg: Any) -> bool:
    if actual is _MISSING or actual is None:
        return False
    candidates = actual if isinstance(actual, list) else [actual]
    for value in candidates:
        try:
            if op == "$lt" and value < arg:
                return True
            if op == "$lte" and value <= arg:
                return True
            if op == "$gt" and value > arg:
                return True
            if op == "$gte" and value >= arg:
                return True
        except TypeError:
            continue
    return False


def _match_condition(actual: Any, condition: Any) -> bool:
    is_operator = (
        isinstance(condition, dict)
        and condition
        and all(str(key).startswith("$") for key in condition)
    )
    if not is_operator:
        return _equals(actual, condition)

    for op, arg in condition.items():
        if op == "$ne":
            if _equals(actual, arg):
                return False
        elif op == "$in":
            if not any(_equals(actual, value) for value in arg):
                return False
        elif op == "$nin":
            if any(_equals(actual, value) for value in arg):
                return False
        elif op == "$exists":
            if (actual is not _MISSING) != bool(arg):
                return False
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if not _compare(actual, op, arg):
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def matches(doc: Document, filters: Optional[Document]) -> bool:
    """True if ``doc`` satisfies every condition in ``filters``."""
    if not filters:
        return True
    for path, condition in filters.items():
        if path == "$or":
            if not any(matches(doc, clause) for clause in condition):
                return False
        elif not _match_condition(_resolve(doc, path), condition):
            return False
    return True


# ============================================================================
# Update application
# ============================================================================

def _parent(doc: Document, path: str, create: bool):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if part not in current or not isinstance(current[part], dict):
            if not create:
                return None, parts[-1]
            current[part] = {}
        current = current[part]
    return current, parts[-1]


def apply_update(doc: Document, update: Document) -> bool:
    """Apply a MongoDB-style update in place. Returns True if ``doc`` changed."""
    before = copy.deepcopy(doc)

    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                parent, key = _parent(doc, path, create=True)
                parent[key] = copy.deepcopy(value)
        elif op == "$unset":
            for path in fields:
                parent, key = _parent(doc, path, create=False)
                if parent is not None:
                    parent.pop(key, None)
        elif op == "$addToSet":
            for path, value in fields.items():
                values = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                parent, key = _parent(doc, path, create=True)
                target = parent.setdefault(key, [])
                if not isinstance(target, list):
                    raise ValueError(f"Cannot $addToSet on non-array field: {path}")
                for item in values:
                    if item not in target:
                        target.append(copy.deepcopy(item))
        elif op == "$pull":
            for path, value in fields.items():
                parent, key = _parent(doc, path, create=False)
                if parent is not None and isinstance(parent.get(key), list):
                    parent[key] = [item for item in parent[key] if item != value]
        else:
            raise ValueError(f"Unsupported update operator: {op}")

    return doc != before


def _sort_key(doc: Document, path: str):
    value = _resolve(doc, path)
    # Missing/None sort first, as in MongoDB
    if value is _MISSING or value is None:
        return (0, "")
    return (1, value)


# ============================================================================
# Change feed
# ============================================================================

class InMemoryChangeFeed(ChangeFeed):
    """Queue-backed change feed registered with its store."""

    def __init__(self, store: "InMemoryDocumentStore", collection: str, filters: Optional[Document]):
        self.store = store
        self.collection = collection
        self.filters = filters or {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._open = False

    async def open(self) -> None:
        self.store._check_access(self.collection)
        self.store._feeds.setdefault(self.collection, set()).add(self)
        self._open = True

    async def next_batch(self) -> ChangeBatch:
        if not self._open:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, Exception):
            self._detach()
            raise item
        return item

    async def close(self) -> None:
        self._detach()

    def _detach(self) -> None:
        self._open = False
        self.store._feeds.get(self.collection, set()).discard(self)

    def _push(self, item) -> None:
        self._queue.put_nowait(item)


# ============================================================================
# Store
# ============================================================================

class InMemoryDocumentStore(DocumentStore):
    """Dict-backed DocumentStore with MongoDB-compatible semantics."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._feeds: Dict[str, Set[InMemoryChangeFeed]] = {}
        self._available = True
        self._denied: Set[str] = set()
        self._last_ts: Optional[datetime] = None

    # ---------------------------------------------------------------- control

    def set_available(self, available: bool) -> None:
        """Simulate an outage (False) or recovery (True)."""
        self._available = available
        logger.info("memory_store_availability_changed", available=available)
        if not available:
            for feeds in self._feeds.values():
                for feed in list(feeds):
                    feed._push(TransientError("Store unavailable"))

    def deny(self, collection: str) -> None:
        """Revoke read access to a collection; open feeds fail terminally."""
        self._denied.add(collection)
        for feed in list(self._feeds.get(collection, set())):
            feed._push(PermissionDeniedError(f"Missing permission for '{collection}'"))

    def allow(self, collection: str) -> None:
        self._denied.discard(collection)

    def feed_count(self, collection: str) -> int:
        return len(self._feeds.get(collection, set()))

    # --------------------------------------------------------------- internal

    def _check_available(self) -> None:
        if not self._available:
            raise TransientError("Store unavailable")

    def _check_access(self, collection: str) -> None:
        self._check_available()
        if collection in self._denied:
            raise PermissionDeniedError(f"Missing permission for '{collection}'")

    async def _latency(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    def _docs(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def _publish(self, collection: str, changes: List[tuple]) -> None:
        """Fan out (before, after) pairs to every open feed on ``collection``."""
        for feed in list(self._feeds.get(collection, set())):
            batch = ChangeBatch()
            for before, after in changes:
                was_in = before is not None and matches(before, feed.filters)
                now_in = after is not None and matches(after, feed.filters)
                if now_in and not was_in:
                    batch.added.append(copy.deepcopy(after))
                elif now_in and was_in:
                    batch.modified.append(copy.deepcopy(after))
                elif was_in and not now_in:
                    batch.removed.append(before["id"])
            if batch:
                feed._push(batch)

    # ---------------------------------------------------------------- contract

    def now(self) -> datetime:
        ts = datetime.now(timezone.utc)
        if self._last_ts is not None and ts <= self._last_ts:
            ts = self._last_ts + timedelta(microseconds=1)
        self._last_ts = ts
        return ts

    async def ping(self) -> None:
        await self._latency()
        self._check_available()

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await self._latency()
        self._check_access(collection)
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def insert(self, collection: str, doc: Document) -> Document:
        await self._latency()
        self._check_access(collection)
        stored = copy.deepcopy(doc)
        stored.setdefault("id", uuid.uuid4().hex)
        docs = self._docs(collection)
        if stored["id"] in docs:
            raise ValueError(f"Duplicate id in {collection}: {stored['id']}")
        docs[stored["id"]] = stored
        self._publish(collection, [(None, stored)])
        return copy.deepcopy(stored)

    async def upsert(
        self,
        collection: str,
        doc_id: str,
        update: Document,
        defaults: Optional[Document] = None,
    ) -> Document:
        await self._latency()
        self._check_access(collection)
        docs = self._docs(collection)
        current = docs.get(doc_id)
        if current is None:
            created = copy.deepcopy(defaults or {})
            created["id"] = doc_id
            apply_update(created, update)
            docs[doc_id] = created
            self._publish(collection, [(None, created)])
            return copy.deepcopy(created)

        before = copy.deepcopy(current)
        if apply_update(current, update):
            self._publish(collection, [(before, current)])
        return copy.deepcopy(current)

    async def update_one(
        self, collection: str, filters: Document, update: Document
    ) -> Optional[Document]:
        await self._latency()
        self._check_access(collection)
        for doc in self._docs(collection).values():
            if matches(doc, filters):
                before = copy.deepcopy(doc)
                if apply_update(doc, update):
                    self._publish(collection, [(before, doc)])
                return copy.deepcopy(doc)
        return None

    async def update_many(
        self, collection: str, filters: Document, update: Document
    ) -> int:
        await self._latency()
        self._check_access(collection)
        changes = []
        for doc in self._docs(collection).values():
            if matches(doc, filters):
                before = copy.deepcopy(doc)
                if apply_update(doc, update):
                    changes.append((before, doc))
        if changes:
            self._publish(collection, changes)
        return len(changes)

    async def find(
        self,
        collection: str,
        filters: Document,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        await self._latency()
        self._check_access(collection)
        results = [doc for doc in self._docs(collection).values() if matches(doc, filters)]
        # Stable multi-key sort: apply keys from last to first
        for path, direction in reversed(list(sort or [])):
            results.sort(key=lambda d, p=path: _sort_key(d, p), reverse=direction < 0)
        if limit is not None:
            results = results[:limit]
        return [copy.deepcopy(doc) for doc in results]

    async def count(self, collection: str, filters: Document) -> int:
        await self._latency()
        self._check_access(collection)
        return sum(1 for doc in self._docs(collection).values() if matches(doc, filters))

    def watch(self, collection: str, filters: Optional[Document] = None) -> ChangeFeed:
        return InMemoryChangeFeed(self, collection, filters)

    async def close(self) -> None:
        for feeds in self._feeds.values():
            for feed in list(feeds):
                feed._detach()
        self._feeds.clear()
