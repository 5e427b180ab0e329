"""
MongoDB Document Store Manager

Typed pass-throughs to collection operations plus the best-effort log
writers: the audit trail, system and error logs, and activity, performance,
API usage and search telemetry. Log writes retry a few times and then give
up with a warning; they never raise into the caller's request path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel
from pymongo import ASCENDING, TEXT, AsyncMongoClient

from ..config import DocumentStoreConfig
from ..errors import BackendConnectionError, ConfigurationError
from ..models import (
    ApiUsageEntry,
    AuditEntry,
    ErrorLogEntry,
    HealthReport,
    PerformanceEntry,
    SearchEntry,
    SystemLogEntry,
    UserActivityEntry,
)
from ..observability import record_counter

logger = logging.getLogger(__name__)

BACKEND_NAME = "mongodb"
DAY = 24 * 3600

AUDIT_COLLECTION = "audit_logs"
SYSTEM_LOG_COLLECTION = "system_logs"
USER_ACTIVITY_COLLECTION = "user_activity"
PERFORMANCE_COLLECTION = "performance_metrics"
ERROR_LOG_COLLECTION = "error_logs"
API_USAGE_COLLECTION = "api_usage"
SEARCH_COLLECTION = "search_analytics"
PREFERENCES_COLLECTION = "user_preferences"

AUDIT_TTL_SECONDS = 90 * DAY

# collection -> (TTL on timestamp in seconds, lookup index fields)
LOG_COLLECTIONS: Dict[str, Tuple[int, Tuple[str, ...]]] = {
    AUDIT_COLLECTION: (AUDIT_TTL_SECONDS, ("actor_id", "action")),
    SYSTEM_LOG_COLLECTION: (30 * DAY, ("level", "source")),
    USER_ACTIVITY_COLLECTION: (180 * DAY, ("user_id", "action")),
    PERFORMANCE_COLLECTION: (7 * DAY, ("service", "endpoint")),
    ERROR_LOG_COLLECTION: (90 * DAY, ("level", "source")),
    API_USAGE_COLLECTION: (30 * DAY, ("endpoint", "user_id")),
    SEARCH_COLLECTION: (90 * DAY, ("user_id",)),
}

# Delays between log write attempts (in seconds); attempts = len + 1
AUDIT_RETRY_DELAYS = (0.1, 0.5)


def _check_collection_name(collection: str) -> None:
    if not collection or not isinstance(collection, str) or "$" in collection:
        raise ValueError(f"Invalid collection name: {collection!r}")


class DocumentStoreManager:
    """
    Owns one AsyncMongoClient shared by all callers.

    The client handle is safe for concurrent use, so no locking is done
    here.
    """

    def __init__(
        self,
        config: Optional[DocumentStoreConfig] = None,
        audit_retry_delays: Sequence[float] = AUDIT_RETRY_DELAYS,
    ):
        self.config = config or DocumentStoreConfig.from_env()
        self.audit_retry_delays = tuple(audit_retry_delays)
        self._client: Optional[AsyncMongoClient] = None
        self._db = None
        self._pending_writes: Set[asyncio.Task] = set()

    @property
    def is_initialized(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """
        Connect and ping the server, then make sure log indexes exist.

        Raises:
            BackendConnectionError: the server could not be reached.
        """
        if self._db is not None:
            return

        logger.info(f"Connecting to MongoDB: {self.config!r}")
        client = AsyncMongoClient(self.config.uri, **self.config.client_options())
        try:
            await client.admin.command("ping")
        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            await client.close()
            raise BackendConnectionError(BACKEND_NAME, str(e)) from e

        self._client = client
        self._db = client[self.config.database]
        await self._setup_collections()
        logger.info(f"Connected to MongoDB database {self.config.database}")

    async def _setup_collections(self) -> None:
        """Create TTL and lookup indexes. Failures are logged per collection, not raised."""
        for name, (ttl, lookups) in LOG_COLLECTIONS.items():
            collection = self._db[name]
            try:
                await collection.create_index([("timestamp", ASCENDING)], expireAfterSeconds=ttl)
                for field in lookups:
                    await collection.create_index([(field, ASCENDING)])
                if name == SEARCH_COLLECTION:
                    await collection.create_index([("query", TEXT)])
            except Exception as e:
                logger.error(f"Error setting up MongoDB indexes for {name}: {e}")

        try:
            await self._db[PREFERENCES_COLLECTION].create_index([("user_id", ASCENDING)], unique=True)
        except Exception as e:
            logger.error(f"Error setting up MongoDB indexes for {PREFERENCES_COLLECTION}: {e}")

    def _collection(self, collection: str):
        if self._db is None:
            raise ConfigurationError("MongoDB client is not initialized; call initialize() first")
        _check_collection_name(collection)
        return self._db[collection]

    async def store_document(self, collection: str, document: Dict[str, Any]) -> str:
        """Insert one document and return its id as a string."""
        result = await self._collection(collection).insert_one(dict(document))
        return str(result.inserted_id)

    async def find_documents(
        self,
        collection: str,
        query: Optional[Dict[str, Any]] = None,
        *,
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return documents matching query (all documents when query is None)."""
        cursor = self._collection(collection).find(query or {}, projection)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(None)

    async def update_documents(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
    ) -> int:
        """Apply update to every matching document. Returns the modified count."""
        result = await self._collection(collection).update_many(query, update, upsert=upsert)
        return result.modified_count

    async def delete_documents(self, collection: str, query: Dict[str, Any]) -> int:
        """Delete every matching document. Returns the deleted count."""
        result = await self._collection(collection).delete_many(query)
        return result.deleted_count

    async def upsert_document(self, collection: str, key: Any, document: Dict[str, Any]) -> bool:
        """
        Insert document under _id=key unless that id already exists.

        Returns:
            True if a new document was inserted, False if it was skipped.
        """
        body = {k: v for k, v in document.items() if k != "_id"}
        result = await self._collection(collection).update_one(
            {"_id": key}, {"$setOnInsert": body}, upsert=True
        )
        return result.upserted_id is not None

    # User preferences

    async def get_user_preferences(self, user_id: Any) -> Optional[Dict[str, Any]]:
        """Return the stored preferences document for a user, or None."""
        return await self._collection(PREFERENCES_COLLECTION).find_one({"user_id": str(user_id)})

    async def set_user_preferences(self, user_id: Any, preferences: Dict[str, Any]) -> None:
        """Replace a user's preferences, creating the document if needed."""
        key = str(user_id)
        document = {k: v for k, v in preferences.items() if k != "_id"}
        document.update(user_id=key, updated_at=datetime.now(timezone.utc))
        await self._collection(PREFERENCES_COLLECTION).replace_one(
            {"user_id": key}, document, upsert=True
        )

    # Best-effort log writers

    async def _write_entry(self, collection: str, build: Callable[[], BaseModel]) -> bool:
        """
        Build and insert one log entry, retrying briefly on write failure.

        The entry is built inside the guard, so a bad argument drops the entry
        instead of raising. Never raises. Returns True when the entry was stored.
        """
        if self._db is None:
            logger.warning(f"Log entry for {collection} dropped, MongoDB not available")
            record_counter("log_write_failures_total", 1, {"collection": collection, "reason": "unavailable"})
            return False

        try:
            document = build().model_dump()
        except Exception as e:
            logger.warning(f"Log entry for {collection} dropped, invalid entry: {e}")
            record_counter("log_write_failures_total", 1, {"collection": collection, "reason": "invalid"})
            return False

        attempts = len(self.audit_retry_delays) + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._db[collection].insert_one(document)
                return True
            except Exception as e:
                if attempt == attempts:
                    logger.warning(
                        "Log entry for %s dropped after %d attempts: %s",
                        collection, attempts, e,
                    )
                    record_counter(
                        "log_write_failures_total", 1, {"collection": collection, "reason": "write_failed"}
                    )
                    return False
                await asyncio.sleep(self.audit_retry_delays[attempt - 1])
        return False

    async def log_audit(
        self,
        action: str,
        actor_id: Any,
        details: Any = None,
        ip: Optional[str] = None,
    ) -> bool:
        """Write an audit entry. Never raises."""
        return await self._write_entry(
            AUDIT_COLLECTION,
            lambda: AuditEntry(action=action, actor_id=actor_id, details=details, ip=ip or "unknown"),
        )

    async def log_system(self, level: str, message: str, source: str, details: Any = None) -> bool:
        return await self._write_entry(
            SYSTEM_LOG_COLLECTION,
            lambda: SystemLogEntry(level=level, message=message, source=source, details=details),
        )

    async def log_user_activity(self, user_id: Any, action: str, details: Any = None) -> bool:
        return await self._write_entry(
            USER_ACTIVITY_COLLECTION,
            lambda: UserActivityEntry(user_id=user_id, action=action, details=details),
        )

    async def log_performance(self, service: str, endpoint: str, duration_ms: float, details: Any = None) -> bool:
        return await self._write_entry(
            PERFORMANCE_COLLECTION,
            lambda: PerformanceEntry(service=service, endpoint=endpoint, duration_ms=duration_ms, details=details),
        )

    async def log_error(
        self,
        level: str,
        message: str,
        source: str,
        error: Optional[BaseException] = None,
        details: Any = None,
    ) -> bool:
        """Record an application error with its traceback. Never raises."""
        return await self._write_entry(
            ERROR_LOG_COLLECTION,
            lambda: ErrorLogEntry(
                level=level,
                message=message,
                source=source,
                error=ErrorLogEntry.describe(error),
                details=details,
            ),
        )

    async def log_api_usage(
        self,
        endpoint: str,
        method: str,
        user_id: Any = None,
        duration_ms: Optional[float] = None,
        details: Any = None,
    ) -> bool:
        return await self._write_entry(
            API_USAGE_COLLECTION,
            lambda: ApiUsageEntry(
                endpoint=endpoint, method=method, user_id=user_id, duration_ms=duration_ms, details=details
            ),
        )

    async def log_search(
        self,
        query: str,
        user_id: Any = None,
        results: Optional[int] = None,
        duration_ms: Optional[float] = None,
        details: Any = None,
    ) -> bool:
        return await self._write_entry(
            SEARCH_COLLECTION,
            lambda: SearchEntry(
                query=query, user_id=user_id, results=results, duration_ms=duration_ms, details=details
            ),
        )

    def _spawn(self, write: Coroutine[Any, Any, bool]) -> asyncio.Task:
        try:
            task = asyncio.create_task(write)
        except RuntimeError:
            write.close()
            raise
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    def log_audit_nowait(
        self,
        action: str,
        actor_id: Any,
        details: Any = None,
        ip: Optional[str] = None,
    ) -> asyncio.Task:
        """Schedule log_audit in the background and return immediately."""
        return self._spawn(self.log_audit(action, actor_id, details, ip))

    async def health_check(self) -> HealthReport:
        """Ping the server. Never raises."""
        start = time.perf_counter()
        error = None
        try:
            if self._client is None:
                raise ConfigurationError("MongoDB client is not initialized")
            await self._client.admin.command("ping")
        except Exception as e:
            error = str(e)
            logger.warning(f"MongoDB health check failed: {e}")

        return HealthReport(
            healthy=error is None,
            response_time_ms=round((time.perf_counter() - start) * 1000, 2),
            detail={"database": self.config.database},
            error=error,
        )

    async def close(self) -> None:
        """Flush pending background writes and close the client. Idempotent."""
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

        client, self._client, self._db = self._client, None, None
        if client is None:
            return
        await client.close()
        logger.info("Disconnected from MongoDB")
