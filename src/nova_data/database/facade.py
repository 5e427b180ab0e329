"""
Data Access Facade

Composes the relational and document managers selected in DATABASES and
forwards calls to the right one.

Usage:
    from nova_data import get_data_access

    db = await get_data_access()

    rows = await db.query("SELECT * FROM kiosks WHERE active = $1", True)
    await db.store_document("user_activity", {"user_id": uid, "page": "/home"})
    await db.log_audit("kiosk.activated", actor_id=uid, details={"kiosk": kiosk_id})

Calling a method whose backend was not selected raises
BackendNotConfiguredError at the call site.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..config import DatabaseConfig
from ..errors import (
    BackendNotConfiguredError,
    BackendUnavailableError,
    ConfigurationError,
)
from ..models import HealthReport
from .documents import DocumentStoreManager
from .pool import ConnectionPoolManager, PooledConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackendKind(str, Enum):
    """Supported backend kinds."""
    POSTGRESQL = "postgresql"
    MONGODB = "mongodb"
    SQLITE = "sqlite"  # Legacy file database, import source only

    @classmethod
    def parse(cls, names: List[str]) -> List["BackendKind"]:
        """Map configured names to kinds; unknown names are a configuration error."""
        kinds = []
        for name in names:
            try:
                kinds.append(cls(name))
            except ValueError:
                supported = ", ".join(k.value for k in cls)
                raise ConfigurationError(
                    f"Unknown backend '{name}' in DATABASES (supported: {supported})"
                ) from None
        return kinds


class _Slot:
    """Registry entry for one backend kind."""

    __slots__ = ("manager", "failed")

    def __init__(self, manager: Any = None):
        self.manager = manager
        self.failed = False


class DataAccessFacade:
    """
    Unified entry point over the configured backends.

    The registry holds exactly one slot per BackendKind. A slot is empty
    when its kind was not selected, holds a manager when it is live, and is
    marked failed when its manager could not initialize.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig.from_env()
        self._slots: Dict[BackendKind, _Slot] = {kind: _Slot() for kind in BackendKind}
        self._selected: frozenset = frozenset()
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def active_backends(self) -> List[BackendKind]:
        """Backends with a live manager."""
        return [
            kind for kind, slot in self._slots.items()
            if slot.manager is not None and not slot.failed
        ]

    def is_configured(self, kind: BackendKind) -> bool:
        return kind in self._selected

    async def initialize(self) -> None:
        """
        Build and initialize only the selected managers.

        A relational failure aborts initialization and closes whatever was
        opened. A document store failure only disables that backend.
        Repeated calls after success are no-ops.
        """
        async with self._lock:
            if self._initialized:
                return

            selected = BackendKind.parse(self.config.databases)
            self._selected = frozenset(selected)
            logger.info(f"Initializing data access: {self.config!r}")

            if BackendKind.POSTGRESQL in self._selected:
                self._slots[BackendKind.POSTGRESQL].manager = ConnectionPoolManager(self.config.postgres)
            if BackendKind.MONGODB in self._selected:
                self._slots[BackendKind.MONGODB].manager = DocumentStoreManager(self.config.mongo)
            if BackendKind.SQLITE in self._selected:
                logger.info(f"Legacy SQLite source registered for import: {self.config.sqlite_path}")

            live: List[Tuple[BackendKind, Any]] = [
                (kind, slot.manager) for kind, slot in self._slots.items() if slot.manager is not None
            ]
            results = await asyncio.gather(
                *(manager.initialize() for _, manager in live),
                return_exceptions=True,
            )

            fatal: Optional[BaseException] = None
            for (kind, _), result in zip(live, results):
                if not isinstance(result, BaseException):
                    continue
                if kind is BackendKind.MONGODB:
                    logger.error(f"Document store unavailable, continuing without it: {result}")
                    self._slots[kind].failed = True
                elif fatal is None:
                    fatal = result

            if fatal is not None:
                await self._close_managers()
                self._reset()
                raise fatal

            self._initialized = True
            logger.info(
                "Data access initialized: %s",
                ", ".join(k.value for k in self.active_backends) or "no live backends",
            )

    def _require(self, kind: BackendKind) -> Any:
        """Resolve a backend to its live manager or raise a typed error."""
        if not self._initialized:
            raise ConfigurationError("Data access is not initialized; call initialize() first")
        slot = self._slots[kind]
        if kind not in self._selected or slot.manager is None:
            raise BackendNotConfiguredError(kind.value)
        if slot.failed:
            raise BackendUnavailableError(kind.value)
        return slot.manager

    @property
    def relational(self) -> ConnectionPoolManager:
        return self._require(BackendKind.POSTGRESQL)

    @property
    def documents(self) -> DocumentStoreManager:
        return self._require(BackendKind.MONGODB)

    # Relational pass-throughs

    async def query(self, sql: str, *args) -> List[Dict[str, Any]]:
        return await self.relational.query(sql, *args)

    async def execute(self, sql: str, *args) -> str:
        return await self.relational.execute(sql, *args)

    async def fetchval(self, sql: str, *args) -> Any:
        return await self.relational.fetchval(sql, *args)

    async def transaction(self, fn: Callable[[PooledConnection], Awaitable[T]]) -> T:
        return await self.relational.transaction(fn)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PooledConnection]:
        async with self.relational.session() as conn:
            yield conn

    # Document pass-throughs

    async def store_document(self, collection: str, document: Dict[str, Any]) -> str:
        return await self.documents.store_document(collection, document)

    async def find_documents(self, collection: str, query: Optional[Dict[str, Any]] = None, **options) -> List[Dict[str, Any]]:
        return await self.documents.find_documents(collection, query, **options)

    async def update_documents(self, collection: str, query: Dict[str, Any], update: Dict[str, Any], **options) -> int:
        return await self.documents.update_documents(collection, query, update, **options)

    async def delete_documents(self, collection: str, query: Dict[str, Any]) -> int:
        return await self.documents.delete_documents(collection, query)

    async def upsert_document(self, collection: str, key: Any, document: Dict[str, Any]) -> bool:
        return await self.documents.upsert_document(collection, key, document)

    async def get_user_preferences(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return await self.documents.get_user_preferences(user_id)

    async def set_user_preferences(self, user_id: Any, preferences: Dict[str, Any]) -> None:
        await self.documents.set_user_preferences(user_id, preferences)

    # Best-effort logging. None of these raise: a missing or failed document
    # store only produces a warning and the entry is dropped.

    def _live_documents(self, what: str) -> Optional[DocumentStoreManager]:
        slot = self._slots[BackendKind.MONGODB]
        if not self._initialized or slot.manager is None or slot.failed:
            logger.warning(f"{what} dropped, document store not available")
            return None
        return slot.manager

    async def _best_effort(self, what: str, write: Callable[[DocumentStoreManager], Awaitable[bool]]) -> bool:
        manager = self._live_documents(what)
        if manager is None:
            return False
        try:
            return await write(manager)
        except Exception as e:
            logger.warning(f"{what} dropped: {e}")
            return False

    async def log_audit(self, action: str, actor_id: Any, details: Any = None, ip: Optional[str] = None) -> bool:
        """Record an audit entry if the document store is live."""
        return await self._best_effort(
            f"Audit entry {action!r}", lambda m: m.log_audit(action, actor_id, details, ip)
        )

    def log_audit_nowait(
        self,
        action: str,
        actor_id: Any,
        details: Any = None,
        ip: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Schedule an audit write and return without waiting for it.

        Returns the background task, or None when the entry was dropped
        because no document store is live. Pending writes finish before
        close() returns.
        """
        manager = self._live_documents(f"Audit entry {action!r}")
        if manager is None:
            return None
        try:
            return manager.log_audit_nowait(action, actor_id, details, ip)
        except RuntimeError as e:
            logger.warning(f"Audit entry {action!r} dropped: {e}")
            return None

    async def log_system(self, level: str, message: str, source: str, details: Any = None) -> bool:
        return await self._best_effort(
            "System log entry", lambda m: m.log_system(level, message, source, details)
        )

    async def log_user_activity(self, user_id: Any, action: str, details: Any = None) -> bool:
        return await self._best_effort(
            "User activity entry", lambda m: m.log_user_activity(user_id, action, details)
        )

    async def log_performance(self, service: str, endpoint: str, duration_ms: float, details: Any = None) -> bool:
        return await self._best_effort(
            "Performance entry", lambda m: m.log_performance(service, endpoint, duration_ms, details)
        )

    async def log_error(
        self,
        level: str,
        message: str,
        source: str,
        error: Optional[BaseException] = None,
        details: Any = None,
    ) -> bool:
        return await self._best_effort(
            "Error log entry", lambda m: m.log_error(level, message, source, error, details)
        )

    async def log_api_usage(self, endpoint: str, method: str, user_id: Any = None, duration_ms: Optional[float] = None, details: Any = None) -> bool:
        return await self._best_effort(
            "API usage entry", lambda m: m.log_api_usage(endpoint, method, user_id, duration_ms, details)
        )

    async def log_search(self, query: str, user_id: Any = None, results: Optional[int] = None, duration_ms: Optional[float] = None, details: Any = None) -> bool:
        return await self._best_effort(
            "Search entry", lambda m: m.log_search(query, user_id, results, duration_ms, details)
        )

    async def health_check(self) -> Dict[str, HealthReport]:
        """Check every active backend concurrently, keyed by backend name."""
        reports: Dict[str, HealthReport] = {}
        checks = []
        for kind, slot in self._slots.items():
            if slot.manager is None:
                continue
            if slot.failed:
                reports[kind.value] = HealthReport(
                    healthy=False,
                    response_time_ms=0.0,
                    error="backend failed to initialize",
                )
                continue
            checks.append((kind, slot.manager.health_check()))

        results = await asyncio.gather(*(check for _, check in checks))
        for (kind, _), report in zip(checks, results):
            reports[kind.value] = report
        return reports

    async def close(self) -> None:
        """Close every active backend concurrently, then allow re-initialization."""
        async with self._lock:
            await self._close_managers()
            self._reset()
            logger.info("Data access closed")

    async def _close_managers(self) -> None:
        managers = [
            (kind, slot.manager) for kind, slot in self._slots.items()
            if slot.manager is not None and not slot.failed
        ]
        results = await asyncio.gather(
            *(manager.close() for _, manager in managers),
            return_exceptions=True,
        )
        for (kind, _), result in zip(managers, results):
            if isinstance(result, BaseException):
                logger.error(f"Error closing {kind.value}: {result}")

    def _reset(self) -> None:
        self._slots = {kind: _Slot() for kind in BackendKind}
        self._selected = frozenset()
        self._initialized = False


# Global instance management
_data_access: Optional[DataAccessFacade] = None


async def get_data_access() -> DataAccessFacade:
    """Get the process-wide facade, initializing it on first use."""
    global _data_access
    if _data_access is None:
        _data_access = DataAccessFacade()
    await _data_access.initialize()
    return _data_access


async def close_data_access() -> None:
    """Close the process-wide facade."""
    global _data_access
    if _data_access:
        await _data_access.close()
        _data_access = None
