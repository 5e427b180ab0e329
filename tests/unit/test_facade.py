"""
Tests for the data access facade.
"""

import asyncio

import pytest

import nova_data.database.facade as facade_module
from nova_data import BackendKind, DataAccessFacade, close_data_access, get_data_access
from nova_data.errors import (
    BackendConnectionError,
    BackendNotConfiguredError,
    BackendUnavailableError,
    ConfigurationError,
)


class TestRegistry:
    """Test backend selection."""

    @pytest.mark.asyncio
    async def test_only_selected_backends_built(self, fake_postgres, fake_mongo, make_config):
        db = DataAccessFacade(make_config("postgresql"))
        await db.initialize()

        assert db.active_backends == [BackendKind.POSTGRESQL]
        assert fake_mongo.clients == []
        assert db.is_configured(BackendKind.MONGODB) is False

        await db.close()

    @pytest.mark.asyncio
    async def test_unselected_backend_raises_not_configured(self, relational_facade):
        """Using a backend that was never selected fails at the call site."""
        with pytest.raises(BackendNotConfiguredError) as exc_info:
            await relational_facade.store_document("events", {"a": 1})

        assert exc_info.value.kind == "mongodb"

    @pytest.mark.asyncio
    async def test_relational_not_selected(self, fake_mongo, make_config):
        db = DataAccessFacade(make_config("mongodb"))
        await db.initialize()

        with pytest.raises(BackendNotConfiguredError):
            await db.query("SELECT 1")

        await db.close()

    @pytest.mark.asyncio
    async def test_unknown_backend_name(self, make_config):
        db = DataAccessFacade(make_config("postgresql", "cassandra"))
        with pytest.raises(ConfigurationError, match="cassandra"):
            await db.initialize()

    @pytest.mark.asyncio
    async def test_use_before_initialize(self, make_config):
        db = DataAccessFacade(make_config("postgresql"))
        with pytest.raises(ConfigurationError):
            await db.query("SELECT 1")

    @pytest.mark.asyncio
    async def test_sqlite_kind_builds_no_manager(self, fake_postgres, make_config):
        """The legacy kind only registers the import source."""
        db = DataAccessFacade(make_config("postgresql", "sqlite"))
        await db.initialize()

        assert db.is_configured(BackendKind.SQLITE) is True
        assert db.active_backends == [BackendKind.POSTGRESQL]
        assert set(await db.health_check()) == {"postgresql"}

        await db.close()


class TestPassThroughs:
    """Test forwarding to the managers."""

    @pytest.mark.asyncio
    async def test_relational_round_trip(self, facade):
        await facade.execute("CREATE TABLE kiosks (id VARCHAR(255) PRIMARY KEY, active BOOLEAN)")

        async def activate(tx):
            await tx.execute("INSERT INTO kiosks (id, active) VALUES ($1, $2)", "k1", True)
            return await tx.fetchval("SELECT COUNT(*) FROM kiosks")

        assert await facade.transaction(activate) == 1
        rows = await facade.query("SELECT id FROM kiosks WHERE active = $1", True)
        assert rows == [{"id": "k1"}]

    @pytest.mark.asyncio
    async def test_document_round_trip(self, facade):
        await facade.store_document("user_activity", {"user_id": 7, "page": "/home"})

        assert await facade.update_documents("user_activity", {"user_id": 7}, {"$set": {"page": "/admin"}}) == 1
        found = await facade.find_documents("user_activity", {"user_id": 7})
        assert found[0]["page"] == "/admin"
        assert await facade.delete_documents("user_activity", {"user_id": 7}) == 1

    @pytest.mark.asyncio
    async def test_session_holds_one_connection(self, facade, fake_postgres):
        async with facade.session() as session:
            await session.execute("CREATE TABLE t (n INTEGER)")
            await session.execute("INSERT INTO t (n) VALUES ($1)", 1)
            rows = await session.query("SELECT n FROM t")

        assert rows == [{"n": 1}]


class TestPartialFailure:
    """Test initialization when a backend is down."""

    @pytest.mark.asyncio
    async def test_document_store_failure_is_not_fatal(self, fake_postgres, fake_mongo, make_config):
        """A dead document store leaves the relational side working."""
        fake_mongo.down = True
        db = DataAccessFacade(make_config("postgresql", "mongodb"))
        await db.initialize()

        assert await db.query("SELECT 1 AS one") == [{"one": 1}]
        with pytest.raises(BackendUnavailableError):
            await db.find_documents("events")

        health = await db.health_check()
        assert health["postgresql"].healthy is True
        assert health["mongodb"].healthy is False

        await db.close()

    @pytest.mark.asyncio
    async def test_relational_failure_is_fatal(self, fake_postgres, fake_mongo, make_config):
        fake_postgres.connect_error = OSError("connection refused")
        db = DataAccessFacade(make_config("postgresql", "mongodb"))

        with pytest.raises(BackendConnectionError):
            await db.initialize()

        assert db.is_initialized is False
        assert all(client.closed for client in fake_mongo.clients)

    @pytest.mark.asyncio
    async def test_log_audit_never_raises_when_store_down(self, fake_postgres, fake_mongo, make_config):
        fake_mongo.down = True
        db = DataAccessFacade(make_config("postgresql", "mongodb"))
        await db.initialize()

        assert await db.log_audit("user.login", "user-1") is False

        await db.close()

    @pytest.mark.asyncio
    async def test_log_audit_without_document_backend(self, relational_facade):
        assert await relational_facade.log_audit("user.login", "user-1") is False

    @pytest.mark.asyncio
    async def test_log_audit_forwarded(self, facade, fake_mongo):
        assert await facade.log_audit("user.login", "user-1", {"ip": "10.0.0.1"}) is True
        assert len(fake_mongo.collection("audit_logs").documents) == 1

    @pytest.mark.asyncio
    async def test_log_audit_accepts_numeric_actor_and_list_details(self, facade, fake_mongo):
        assert await facade.log_audit("kiosk.activated", 42, {"kiosk": "k1"}) is True
        assert await facade.log_audit("bulk.delete", "admin", ["a", "b"]) is True

        entries = fake_mongo.collection("audit_logs").documents
        assert entries[0]["actor_id"] == "42"
        assert entries[1]["details"] == {"value": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_log_audit_unexpected_error_contained(self, facade, monkeypatch):
        async def broken(*args):
            raise RuntimeError("driver bug")

        monkeypatch.setattr(facade.documents, "log_audit", broken)

        assert await facade.log_audit("user.login", "user-1") is False


class TestBackgroundAudit:
    """Test log_audit_nowait on the facade."""

    @pytest.mark.asyncio
    async def test_caller_returns_before_write_finishes(self, facade, fake_mongo):
        fake_mongo.insert_gate = asyncio.Event()

        task = facade.log_audit_nowait("kiosk.activated", 42, {"kiosk": "k1"}, ip="10.0.0.9")
        await asyncio.sleep(0)

        assert task is not None
        assert not task.done()
        assert fake_mongo.collection("audit_logs").documents == []

        fake_mongo.insert_gate.set()
        assert await task is True
        assert fake_mongo.collection("audit_logs").documents[0]["ip"] == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_pending_write_flushed_by_close(self, fake_postgres, fake_mongo, make_config):
        db = DataAccessFacade(make_config("postgresql", "mongodb"))
        await db.initialize()

        db.log_audit_nowait("config.changed", "admin")
        await db.close()

        assert len(fake_mongo.collection("audit_logs").documents) == 1

    @pytest.mark.asyncio
    async def test_dropped_without_document_backend(self, relational_facade):
        assert relational_facade.log_audit_nowait("user.login", "user-1") is None

    @pytest.mark.asyncio
    async def test_dropped_when_store_failed(self, fake_postgres, fake_mongo, make_config):
        fake_mongo.down = True
        db = DataAccessFacade(make_config("postgresql", "mongodb"))
        await db.initialize()

        assert db.log_audit_nowait("user.login", "user-1") is None

        await db.close()


class TestLogWritersAndPreferences:
    """Test the remaining document store forwards."""

    @pytest.mark.asyncio
    async def test_writers_forwarded(self, facade, fake_mongo):
        assert await facade.log_system("info", "Started", "api") is True
        assert await facade.log_user_activity(1, "login") is True
        assert await facade.log_performance("api", "/health", 1.5) is True
        assert await facade.log_error("error", "Boom", "api", ValueError("bad")) is True
        assert await facade.log_api_usage("/health", "GET") is True
        assert await facade.log_search("vpn", user_id=1, results=0) is True

        for name in ("system_logs", "user_activity", "performance_metrics", "error_logs", "api_usage", "search_analytics"):
            assert len(fake_mongo.collection(name).documents) == 1

    @pytest.mark.asyncio
    async def test_writers_without_document_backend(self, relational_facade):
        assert await relational_facade.log_system("info", "Started", "api") is False
        assert await relational_facade.log_error("error", "Boom", "api") is False

    @pytest.mark.asyncio
    async def test_preferences_round_trip(self, facade):
        await facade.set_user_preferences(9, {"theme": "dark"})
        assert (await facade.get_user_preferences(9))["theme"] == "dark"

    @pytest.mark.asyncio
    async def test_preferences_need_document_backend(self, relational_facade):
        with pytest.raises(BackendNotConfiguredError):
            await relational_facade.get_user_preferences(9)


class TestLifecycle:
    """Test health, shutdown and re-initialization."""

    @pytest.mark.asyncio
    async def test_health_check_keyed_by_backend(self, facade):
        health = await facade.health_check()

        assert set(health) == {"postgresql", "mongodb"}
        assert all(report.healthy for report in health.values())
        assert health["postgresql"].detail["pool"]["max"] == 10

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, facade, fake_postgres):
        await facade.initialize()
        assert len(fake_postgres.pools) == 1

    @pytest.mark.asyncio
    async def test_close_then_initialize(self, fake_postgres, fake_mongo, make_config):
        """A closed facade can be initialized again."""
        db = DataAccessFacade(make_config("postgresql", "mongodb"))
        await db.initialize()
        await db.close()

        assert db.is_initialized is False
        assert fake_postgres.pools[0].closed is True
        with pytest.raises(ConfigurationError):
            await db.query("SELECT 1")

        await db.initialize()
        assert await db.query("SELECT 1 AS one") == [{"one": 1}]
        assert len(fake_postgres.pools) == 2

        await db.close()

    @pytest.mark.asyncio
    async def test_process_wide_singleton(self, fake_postgres, make_config, monkeypatch):
        monkeypatch.setattr(facade_module, "_data_access", None)
        monkeypatch.setattr(facade_module.DatabaseConfig, "from_env", classmethod(lambda cls: make_config("postgresql")))

        first = await get_data_access()
        second = await get_data_access()

        assert first is second
        assert first.is_initialized is True

        await close_data_access()
        assert facade_module._data_access is None
