"""
Test Fixtures

The asyncpg and pymongo drivers are replaced at their import seams by
in-process fakes:

* FakePostgres: an asyncpg-style pool whose connections are stdlib sqlite3
  connections to one database file. Placeholders are converted from $n the
  same way the SQLite fallback of a dual-backend adapter does it, and the
  few PostgreSQL-only statements the data layer issues are answered
  directly.
* FakeMongo: an in-memory AsyncMongoClient with top-level equality filters.
"""

import asyncio
import copy
import re
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

from nova_data.config import DatabaseConfig, DocumentStoreConfig, PoolConfig
from nova_data.database.facade import DataAccessFacade


# =============================================================================
# PostgreSQL fake
# =============================================================================

SQLITE_TYPE_NAMES = {
    "integer": "integer",
    "int": "integer",
    "bigint": "bigint",
    "smallint": "smallint",
    "boolean": "boolean",
    "timestamp": "timestamp without time zone",
    "timestamptz": "timestamp with time zone",
    "text": "text",
    "varchar": "character varying",
    "jsonb": "jsonb",
    "json": "json",
    "real": "real",
    "numeric": "numeric",
}


def _pg_type(declared: str) -> str:
    base = declared.split("(")[0].strip().lower()
    return SQLITE_TYPE_NAMES.get(base, base or "text")


def _to_sqlite(sql: str) -> str:
    sql = re.sub(r"\$(\d+)", r"?\1", sql)
    return re.sub(r"SERIAL PRIMARY KEY", "INTEGER PRIMARY KEY AUTOINCREMENT", sql, flags=re.IGNORECASE)


def _adapt(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


class FakeTransaction:
    """asyncpg Transaction over BEGIN/SAVEPOINT."""

    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self._savepoint: Optional[str] = None

    async def start(self):
        conn = self._conn
        if conn.fail_begin:
            raise sqlite3.OperationalError("cannot begin transaction")
        if conn.depth == 0:
            conn.db.execute("BEGIN")
        else:
            self._savepoint = f"sp_{conn.depth}"
            conn.db.execute(f"SAVEPOINT {self._savepoint}")
        conn.depth += 1

    async def commit(self):
        self._conn.depth -= 1
        if self._savepoint:
            self._conn.db.execute(f"RELEASE SAVEPOINT {self._savepoint}")
        else:
            self._conn.db.execute("COMMIT")

    async def rollback(self):
        self._conn.depth -= 1
        if self._savepoint:
            self._conn.db.execute(f"ROLLBACK TO SAVEPOINT {self._savepoint}")
            self._conn.db.execute(f"RELEASE SAVEPOINT {self._savepoint}")
        else:
            self._conn.db.execute("ROLLBACK")


class FakeConnection:
    """asyncpg Connection subset used by the data layer."""

    def __init__(self, server: "FakePostgres"):
        self.server = server
        self.db = sqlite3.connect(str(server.path), isolation_level=None, timeout=1.0)
        self.db.row_factory = sqlite3.Row
        self.depth = 0
        self.fail_begin = False

    def _run(self, sql: str, args) -> sqlite3.Cursor:
        self.server.statements.append(sql)
        for pattern, error in self.server.failures:
            if pattern in sql:
                raise error
        return self.db.execute(_to_sqlite(sql), [_adapt(a) for a in args])

    def _special(self, sql: str, args) -> Optional[List[Dict[str, Any]]]:
        if "pg_advisory_lock" in sql or "pg_advisory_unlock" in sql:
            self.server.statements.append(sql)
            self.server.lock_calls.append((sql.split("(")[0].split()[-1], args[0]))
            return [{"locked": True}]
        if "information_schema.columns" in sql:
            self.server.statements.append(sql)
            info = self.db.execute(f'PRAGMA table_info("{args[0]}")').fetchall()
            return [{"column_name": row["name"], "data_type": _pg_type(row["type"])} for row in info]
        if "pg_get_serial_sequence" in sql:
            self.server.statements.append(sql)
            return [{"setval": 1}]
        return None

    async def fetch(self, sql: str, *args) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        special = self._special(sql, args)
        if special is not None:
            return special
        return [dict(row) for row in self._run(sql, args).fetchall()]

    async def fetchval(self, sql: str, *args) -> Any:
        rows = await self.fetch(sql, *args)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    async def execute(self, sql: str, *args) -> str:
        await asyncio.sleep(0)
        if self._special(sql, args) is not None:
            return "SELECT 1"
        cursor = self._run(sql, args)
        keyword = sql.strip().split()[0].upper()
        if keyword == "INSERT":
            return f"INSERT 0 {cursor.rowcount}"
        if keyword in ("UPDATE", "DELETE"):
            return f"{keyword} {cursor.rowcount}"
        if keyword == "SELECT":
            return f"SELECT {len(cursor.fetchall())}"
        return " ".join(sql.strip().split()[:2]).upper()

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    def close(self):
        self.db.close()


class FakePool:
    """asyncpg Pool subset: bounded acquire/release and size figures."""

    def __init__(self, server: "FakePostgres", min_size: int, max_size: int):
        self.server = server
        self._min = min_size
        self._max = max_size
        self._slots = asyncio.Semaphore(max_size)
        self._all: List[FakeConnection] = [FakeConnection(server) for _ in range(min_size)]
        self._idle: List[FakeConnection] = list(self._all)
        self.max_in_use = 0
        self.closed = False

    async def acquire(self, *, timeout: Optional[float] = None) -> FakeConnection:
        await asyncio.wait_for(self._slots.acquire(), timeout)
        if self._idle:
            conn = self._idle.pop()
        else:
            conn = FakeConnection(self.server)
            self._all.append(conn)
        self.max_in_use = max(self.max_in_use, len(self._all) - len(self._idle))
        return conn

    async def release(self, conn: FakeConnection) -> None:
        self._idle.append(conn)
        self._slots.release()

    def get_size(self) -> int:
        return len(self._all)

    def get_idle_size(self) -> int:
        return len(self._idle)

    def get_min_size(self) -> int:
        return self._min

    def get_max_size(self) -> int:
        return self._max

    async def close(self) -> None:
        self.terminate()

    def terminate(self) -> None:
        for conn in self._all:
            conn.close()
        self._all.clear()
        self._idle.clear()
        self.closed = True


class FakePostgres:
    """Stands in for a PostgreSQL server; install with the fake_postgres fixture."""

    def __init__(self, path: Path):
        self.path = path
        self.pools: List[FakePool] = []
        self.create_calls: List[Dict[str, Any]] = []
        self.statements: List[str] = []
        self.lock_calls: List[tuple] = []
        self.failures: List[tuple] = []
        self.connect_error: Optional[Exception] = None
        db = sqlite3.connect(str(path))
        db.execute("PRAGMA journal_mode=WAL")
        db.close()

    async def create_pool(self, **kwargs) -> FakePool:
        self.create_calls.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        pool = FakePool(self, kwargs.get("min_size", 2), kwargs.get("max_size", 10))
        self.pools.append(pool)
        return pool

    def fail_on(self, fragment: str, error: Optional[Exception] = None) -> None:
        """Make every statement containing fragment raise."""
        self.failures.append((fragment, error or sqlite3.OperationalError(f"injected failure: {fragment}")))

    def rows(self, sql: str, *params) -> List[Dict[str, Any]]:
        """Read directly from the backing database."""
        db = sqlite3.connect(str(self.path))
        db.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in db.execute(sql, params).fetchall()]
        finally:
            db.close()

    def tables(self) -> List[str]:
        return [r["name"] for r in self.rows(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )]


# =============================================================================
# MongoDB fake
# =============================================================================

class _Result:
    def __init__(self, **fields):
        self.__dict__.update(fields)


def _matches(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    return all(document.get(key) == value for key, value in query.items())


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]], projection: Optional[Dict[str, Any]]):
        self._documents = documents
        self._projection = projection
        self._skip = 0
        self._limit = 0

    def sort(self, keys):
        for key, direction in reversed(list(keys)):
            self._documents.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    async def to_list(self, length=None):
        documents = self._documents[self._skip:]
        if self._limit:
            documents = documents[: self._limit]
        if self._projection:
            keep = {k for k, v in self._projection.items() if v}
            documents = [{k: v for k, v in d.items() if k in keep or k == "_id"} for d in documents]
        return documents


class FakeCollection:
    def __init__(self, server: "FakeMongo", name: str):
        self.server = server
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.indexes: List[tuple] = []

    def _check(self):
        if self.server.down:
            raise ServerSelectionTimeoutError("server unavailable")

    async def insert_one(self, document: Dict[str, Any]):
        self._check()
        if self.server.insert_gate is not None:
            await self.server.insert_gate.wait()
        if self.server.insert_failures > 0:
            self.server.insert_failures -= 1
            raise AutoReconnect("connection reset")
        stored = copy.deepcopy(document)
        stored.setdefault("_id", uuid4().hex)
        self.documents.append(stored)
        return _Result(inserted_id=stored["_id"])

    def find(self, query=None, projection=None):
        self._check()
        matched = [copy.deepcopy(d) for d in self.documents if _matches(d, query or {})]
        return FakeCursor(matched, projection)

    async def update_many(self, query, update, upsert=False):
        self._check()
        modified = 0
        for document in self.documents:
            if _matches(document, query):
                document.update(update.get("$set", {}))
                modified += 1
        return _Result(modified_count=modified, upserted_id=None)

    async def update_one(self, query, update, upsert=False):
        self._check()
        for document in self.documents:
            if _matches(document, query):
                document.update(update.get("$set", {}))
                return _Result(modified_count=1, upserted_id=None)
        if not upsert:
            return _Result(modified_count=0, upserted_id=None)
        document = dict(query)
        document.update(copy.deepcopy(update.get("$setOnInsert", {})))
        document.update(update.get("$set", {}))
        self.documents.append(document)
        return _Result(modified_count=0, upserted_id=document["_id"])

    async def find_one(self, query):
        self._check()
        for document in self.documents:
            if _matches(document, query):
                return copy.deepcopy(document)
        return None

    async def replace_one(self, query, replacement, upsert=False):
        self._check()
        for index, document in enumerate(self.documents):
            if _matches(document, query):
                stored = copy.deepcopy(replacement)
                stored["_id"] = document["_id"]
                self.documents[index] = stored
                return _Result(modified_count=1, upserted_id=None)
        if not upsert:
            return _Result(modified_count=0, upserted_id=None)
        stored = copy.deepcopy(replacement)
        stored.setdefault("_id", uuid4().hex)
        self.documents.append(stored)
        return _Result(modified_count=0, upserted_id=stored["_id"])

    async def delete_many(self, query):
        self._check()
        kept = [d for d in self.documents if not _matches(d, query)]
        deleted = len(self.documents) - len(kept)
        self.documents = kept
        return _Result(deleted_count=deleted)

    async def create_index(self, keys, **kwargs):
        self._check()
        self.indexes.append((keys, kwargs))
        return "_".join(f"{k}_{d}" for k, d in keys)


class FakeDatabase:
    def __init__(self, server: "FakeMongo", name: str):
        self.server = server
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(self.server, name)
        return self.collections[name]

    async def command(self, name: str):
        if self.server.down:
            raise ServerSelectionTimeoutError("server unavailable")
        return {"ok": 1.0}


class FakeMongoClient:
    def __init__(self, server: "FakeMongo", uri: str, **options):
        self.server = server
        self.uri = uri
        self.options = options
        self.closed = False
        self.admin = FakeDatabase(server, "admin")

    def __getitem__(self, name: str) -> FakeDatabase:
        return self.server.database(name)

    async def close(self):
        self.closed = True


class FakeMongo:
    """Stands in for a MongoDB server; install with the fake_mongo fixture."""

    def __init__(self):
        self.down = False
        self.insert_failures = 0
        # When set, inserts wait for the event before storing
        self.insert_gate: Optional[asyncio.Event] = None
        self.clients: List[FakeMongoClient] = []
        self.databases: Dict[str, FakeDatabase] = {}

    def client(self, uri: str, **options) -> FakeMongoClient:
        client = FakeMongoClient(self, uri, **options)
        self.clients.append(client)
        return client

    def database(self, name: str) -> FakeDatabase:
        if name not in self.databases:
            self.databases[name] = FakeDatabase(self, name)
        return self.databases[name]

    def collection(self, name: str, database: str = "nova_logs") -> FakeCollection:
        return self.database(database)[name]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_postgres(tmp_path, monkeypatch) -> FakePostgres:
    """Replace asyncpg.create_pool with a sqlite-backed fake."""
    server = FakePostgres(tmp_path / "postgres.sqlite3")
    monkeypatch.setattr("nova_data.database.pool.asyncpg.create_pool", server.create_pool)
    return server


@pytest.fixture
def fake_mongo(monkeypatch) -> FakeMongo:
    """Replace AsyncMongoClient with an in-memory fake."""
    server = FakeMongo()
    monkeypatch.setattr("nova_data.database.documents.AsyncMongoClient", server.client)
    return server


@pytest.fixture
def make_config(tmp_path):
    """Build a DatabaseConfig for the given backends, rooted in tmp_path."""
    def factory(*databases: str, **postgres_overrides) -> DatabaseConfig:
        return DatabaseConfig(
            databases=list(databases),
            postgres=PoolConfig(**postgres_overrides),
            mongo=DocumentStoreConfig(),
            sqlite_path=str(tmp_path / "log.sqlite"),
            migrations_dir=tmp_path / "migrations",
        )
    return factory


@pytest_asyncio.fixture
async def facade(fake_postgres, fake_mongo, make_config):
    """Initialized facade over both fakes."""
    db = DataAccessFacade(make_config("postgresql", "mongodb"))
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def relational_facade(fake_postgres, make_config):
    """Initialized facade with only the relational backend selected."""
    db = DataAccessFacade(make_config("postgresql"))
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def legacy_db(tmp_path):
    """Create a legacy SQLite file; returns a function that seeds it."""
    path = tmp_path / "legacy.sqlite"

    def seed(script: str) -> Path:
        db = sqlite3.connect(str(path))
        try:
            db.executescript(script)
        finally:
            db.close()
        return path

    return seed
