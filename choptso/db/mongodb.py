"""
MongoDB document store on Motor.

Change feeds are MongoDB change streams opened with
``full_document="updateLookup"``; they require a replica set (a single-node
``rs0`` is enough for development). Filters on the feed apply to the full
document, so delete events are always forwarded and consumers ignore ids
they do not hold.

pymongo errors are mapped onto the error taxonomy:
- authorization failures (codes 13, 18) → PermissionDeniedError
- connection failures / retryable labels → TransientError
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING as MONGO_ASC, DESCENDING as MONGO_DESC, ReturnDocument
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from choptso.core.exceptions import PermissionDeniedError, TransientError
from choptso.core.logging_config import get_logger
from choptso.core import metrics
from choptso.db.store import ChangeBatch, ChangeFeed, Document, DocumentStore, SortSpec

logger = get_logger(__name__)

UNAUTHORIZED_CODES = {13, 18}  # Unauthorized, AuthenticationFailed


def _translate(error: PyMongoError) -> Exception:
    if isinstance(error, OperationFailure) and error.code in UNAUTHORIZED_CODES:
        return PermissionDeniedError(str(error))
    if isinstance(error, ConnectionFailure):
        return TransientError(str(error))
    if error.has_error_label("RetryableWriteError") or error.has_error_label("ResumableChangeStreamError"):
        return TransientError(str(error))
    return error


def _to_mongo(doc: Document) -> Document:
    converted = dict(doc)
    if "id" in converted:
        converted["_id"] = converted.pop("id")
    return converted


def _from_mongo(doc: Optional[Document]) -> Optional[Document]:
    if doc is None:
        return None
    converted = dict(doc)
    converted["id"] = str(converted.pop("_id"))
    return converted


def _filters(filters: Optional[Document], prefix: str = "") -> Document:
    translated = {}
    for key, value in (filters or {}).items():
        if key == "$or":
            translated[key] = [_filters(clause, prefix) for clause in value]
            continue
        field = "_id" if key == "id" else key
        translated[f"{prefix}{field}"] = value
    return translated


@asynccontextmanager
async def _operation(operation: str, collection: str):
    """Count the store call and translate pymongo errors."""
    try:
        yield
        metrics.store_operations_total.labels(
            operation=operation, collection=collection, status="success"
        ).inc()
    except PyMongoError as e:
        metrics.store_operations_total.labels(
            operation=operation, collection=collection, status="error"
        ).inc()
        translated = _translate(e)
        logger.warning(
            "store_operation_failed",
            operation=operation,
            collection=collection,
            error_type=type(e).__name__,
            error=str(e),
        )
        if translated is e:
            raise
        raise translated from e


class MongoChangeFeed(ChangeFeed):
    """Change stream over one collection, one event per batch."""

    def __init__(self, collection, name: str, filters: Optional[Document]):
        self._collection = collection
        self._name = name
        self._pipeline = [{
            "$match": {
                "$or": [
                    {"operationType": "delete"},
                    _filters(filters, prefix="fullDocument."),
                ]
            }
        }]
        self._stream = None
        self._pending = None

    async def open(self) -> None:
        async with _operation("watch", self._name):
            self._stream = self._collection.watch(
                self._pipeline, full_document="updateLookup"
            )
            await self._stream.__aenter__()
            # Motor starts the server cursor lazily; start it now
            self._pending = await self._stream.try_next()

    async def next_batch(self) -> ChangeBatch:
        async with _operation("watch_next", self._name):
            if self._pending is not None:
                change, self._pending = self._pending, None
            else:
                change = await self._stream.next()

        batch = ChangeBatch()
        op = change.get("operationType")
        if op == "insert":
            batch.added.append(_from_mongo(change["fullDocument"]))
        elif op in ("update", "replace"):
            # fullDocument is None if the document was deleted since the event
            if change.get("fullDocument") is not None:
                batch.modified.append(_from_mongo(change["fullDocument"]))
        elif op == "delete":
            batch.removed.append(str(change["documentKey"]["_id"]))
        elif op == "invalidate":
            raise TransientError(f"Change stream on {self._name} invalidated")
        return batch

    async def close(self) -> None:
        if self._stream is not None:
            try:
                await self._stream.close()
            except PyMongoError as e:
                logger.debug("change_stream_close_failed", collection=self._name, error=str(e))
            self._stream = None


class MongoDocumentStore(DocumentStore):
    """DocumentStore backed by MongoDB through Motor."""

    def __init__(self, url: str, database: str):
        # Connection pool configuration:
        # - maxPoolSize=50 prevents exhaustion, minPoolSize=10 keeps warm connections
        # - serverSelectionTimeoutMS=5000: fail fast if MongoDB is down
        # - tz_aware: all datetimes come back as UTC-aware
        self.client = AsyncIOMotorClient(
            url,
            maxPoolSize=50,
            minPoolSize=10,
            maxIdleTimeMS=45000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            retryReads=True,
            tz_aware=True,
        )
        self.db = self.client[database]
        self.url = url
        self.database = database
        self._last_ts: Optional[datetime] = None

    async def connect(self) -> None:
        """Verify connectivity and ensure indexes."""
        await self.ping()
        logger.info("mongodb_connected", url=self.url, database=self.database)
        await self.ensure_indexes()

    async def ensure_indexes(self) -> None:
        start = time.perf_counter()
        messages = self.db["messages"]
        # Primary pattern: WHERE conversation_id = ? ORDER BY created_at DESC
        await messages.create_index([("conversation_id", MONGO_ASC), ("created_at", MONGO_DESC)])
        # Receipt queries: WHERE conversation_id = ? AND recipients = ?
        await messages.create_index([("conversation_id", MONGO_ASC), ("recipients", MONGO_ASC)])
        await messages.create_index("sender_id")
        await self.db["conversations"].create_index("participants")
        logger.info(
            "mongodb_indexes_ensured",
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    def now(self) -> datetime:
        # MongoDB stores millisecond precision; truncate so local copies compare equal
        ts = datetime.now(timezone.utc)
        ts = ts.replace(microsecond=(ts.microsecond // 1000) * 1000)
        if self._last_ts is not None and ts <= self._last_ts:
            ts = self._last_ts + timedelta(milliseconds=1)
        self._last_ts = ts
        return ts

    async def ping(self) -> None:
        async with _operation("ping", "admin"):
            await self.client.admin.command("ping")

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with _operation("get", collection):
            doc = await self.db[collection].find_one({"_id": doc_id})
        return _from_mongo(doc)

    async def insert(self, collection: str, doc: Document) -> Document:
        stored = dict(doc)
        if "id" not in stored:
            stored["id"] = str(ObjectId())
        async with _operation("insert", collection):
            await self.db[collection].insert_one(_to_mongo(stored))
        return stored

    async def upsert(
        self,
        collection: str,
        doc_id: str,
        update: Document,
        defaults: Optional[Document] = None,
    ) -> Document:
        touched = {path.split(".")[0] for fields in update.values() for path in fields}
        on_insert = {k: v for k, v in (defaults or {}).items() if k not in touched and k != "id"}
        full_update = dict(update)
        if on_insert:
            full_update["$setOnInsert"] = on_insert
        async with _operation("upsert", collection):
            doc = await self.db[collection].find_one_and_update(
                {"_id": doc_id},
                full_update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return _from_mongo(doc)

    async def update_one(
        self, collection: str, filters: Document, update: Document
    ) -> Optional[Document]:
        async with _operation("update_one", collection):
            doc = await self.db[collection].find_one_and_update(
                _filters(filters), update, return_document=ReturnDocument.AFTER
            )
        return _from_mongo(doc)

    async def update_many(
        self, collection: str, filters: Document, update: Document
    ) -> int:
        async with _operation("update_many", collection):
            result = await self.db[collection].update_many(_filters(filters), update)
        return result.modified_count

    async def find(
        self,
        collection: str,
        filters: Document,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        cursor = self.db[collection].find(_filters(filters))
        if sort:
            cursor = cursor.sort([("_id" if k == "id" else k, d) for k, d in sort])
        if limit:
            cursor = cursor.limit(limit)
        async with _operation("find", collection):
            docs = await cursor.to_list(length=None)
        return [_from_mongo(doc) for doc in docs]

    async def count(self, collection: str, filters: Document) -> int:
        async with _operation("count", collection):
            return await self.db[collection].count_documents(_filters(filters))

    def watch(self, collection: str, filters: Optional[Document] = None) -> ChangeFeed:
        return MongoChangeFeed(self.db[collection], collection, filters)

    async def close(self) -> None:
        self.client.close()
        logger.info("mongodb_connection_closed")
