"""Unit tests for the Postgres checkpoint store using stub pools and connections."""

from datetime import datetime, timezone

import psycopg
import pytest

from flowguard.storage import postgres as postgres_module
from flowguard.storage.errors import (
    StorageReadError,
    StorageUnavailableError,
    StorageWriteError,
    VersionConflict,
)
from flowguard.storage.models import SessionRecord, ThreadStatus
from flowguard.storage.postgres import PostgresCheckpointStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = list(rows or [])

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        return FakeCursor(self.pool.handler(sql, params))


class FakePool:
    def __init__(self, handler=None):
        self.handler = handler or (lambda sql, params: [])
        self.executed = []
        self.closed = False

    def connection(self):
        return FakeConnection(self)

    def close(self):
        self.closed = True

    def statements(self, needle):
        return [sql for sql, _ in self.executed if needle in sql]


def _checkpoint_row(thread_id, state, metadata=None, version=1):
    return {
        "thread_id": thread_id,
        "checkpoint_data": state,
        "metadata": metadata or {"source": "step", "step": None, "timestamp": NOW.isoformat(), "extra": {}},
        "version": version,
        "created_at": NOW,
        "updated_at": NOW,
    }


def _make_store(handler=None, **kwargs):
    pool = FakePool()
    kwargs.setdefault("retry_delay_ms", 0)
    store = PostgresCheckpointStore("postgresql://app:secret@db/flow", pool=pool, **kwargs)
    pool.executed.clear()
    if handler is not None:
        pool.handler = handler
    return store, pool


class UpsertHandler:
    """Scripted database: ``current`` is the stored version, or None."""

    def __init__(self, current=None, guard_passes=True):
        self.current = current
        self.guard_passes = guard_passes

    def __call__(self, sql, params):
        if "FOR UPDATE" in sql:
            return [{"version": self.current}] if self.current is not None else []
        if "INSERT INTO flowguard_checkpoint (" in sql:
            if not self.guard_passes:
                return []
            thread_id, state, metadata, version = params
            return [_checkpoint_row(thread_id, state.obj, metadata.obj, version)]
        return []


class TestSchema:
    def test_startup_creates_tables(self):
        pool = FakePool()
        store = PostgresCheckpointStore("postgresql://localhost/flow", pool=pool)
        created = " ".join(sql for sql, _ in pool.executed)
        for table in (
            "flowguard_checkpoint",
            "flowguard_checkpoint_version",
            "flowguard_session",
            "flowguard_resource_usage",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table} " in created
        assert store.persisted is True
        assert store.backend == "postgres"

    def test_schema_failure_is_storage_unavailable(self):
        def _boom(sql, params):
            raise psycopg.OperationalError("connection refused")

        with pytest.raises(StorageUnavailableError):
            PostgresCheckpointStore("postgresql://localhost/flow", pool=FakePool(_boom))

    def test_unreachable_pool_is_storage_unavailable(self, monkeypatch):
        created = []

        class UnreachablePool:
            def __init__(self, dsn, **kwargs):
                self.kwargs = kwargs
                self.closed = False
                created.append(self)

            def open(self, wait=False, timeout=None):
                raise psycopg.OperationalError("timeout")

            def close(self):
                self.closed = True

        monkeypatch.setattr(postgres_module, "ConnectionPool", UnreachablePool)
        with pytest.raises(StorageUnavailableError) as excinfo:
            PostgresCheckpointStore("postgresql://app:secret@db/flow", connect_timeout_s=0.1)
        assert created[0].closed is True
        assert "secret" not in str(excinfo.value.detail)
        assert created[0].kwargs["kwargs"]["autocommit"] is False


class TestReads:
    def test_get_missing_returns_none(self):
        store, _ = _make_store()
        assert store.get("missing") is None

    def test_get_decodes_row(self):
        store, _ = _make_store(lambda sql, params: [_checkpoint_row("t1", {"counter": 1}, version=3)])
        checkpoint = store.get("t1")
        assert checkpoint.state == {"counter": 1}
        assert checkpoint.version == 3
        assert checkpoint.metadata.source == "step"

    def test_get_decodes_text_json(self):
        row = _checkpoint_row("t1", '{"counter": 1}')
        row["metadata"] = '{"source": "input"}'
        store, _ = _make_store(lambda sql, params: [row])
        checkpoint = store.get("t1")
        assert checkpoint.state == {"counter": 1}
        assert checkpoint.metadata.source == "input"

    def test_read_failure_is_not_not_found(self):
        def _boom(sql, params):
            raise psycopg.OperationalError("server closed the connection")

        store, _ = _make_store(_boom, max_retries=1)
        with pytest.raises(StorageReadError) as excinfo:
            store.get("t1")
        assert excinfo.value.detail["attempts"] == 2

    def test_list_and_versions(self):
        def _handler(sql, params):
            if "UNION" in sql:
                return [{"version": 1}, {"version": 2}]
            return [{"thread_id": "b"}, {"thread_id": "a"}]

        store, _ = _make_store(_handler)
        assert store.list() == ["b", "a"]
        assert store.list_versions("a") == [1, 2]


class TestPut:
    def test_first_put_assigns_version_one(self):
        store, pool = _make_store(UpsertHandler(current=None))
        checkpoint = store.put("t1", {"counter": 1})
        assert checkpoint.version == 1
        assert checkpoint.state == {"counter": 1}
        assert pool.statements("flowguard_checkpoint_version") == []

    def test_put_archives_previous_version(self):
        store, pool = _make_store(UpsertHandler(current=4), audit_versions=2)
        checkpoint = store.put("t1", {"counter": 2})
        assert checkpoint.version == 5
        assert len(pool.statements("INSERT INTO flowguard_checkpoint_version")) == 1
        trim = [params for sql, params in pool.executed if sql.startswith("DELETE FROM flowguard_checkpoint_version")]
        assert trim == [("t1", "t1", 2)]

    def test_upsert_is_version_guarded_in_sql(self):
        store, pool = _make_store(UpsertHandler(current=None))
        store.put("t1", {})
        upsert = pool.statements("INSERT INTO flowguard_checkpoint (")[0]
        assert "WHERE flowguard_checkpoint.version < EXCLUDED.version" in upsert

    def test_lower_explicit_version_conflicts(self):
        store, pool = _make_store(UpsertHandler(current=7))
        with pytest.raises(VersionConflict):
            store.put("t1", {}, version=7)
        assert pool.statements("INSERT INTO flowguard_checkpoint (") == []

    def test_lost_race_conflicts(self):
        store, _ = _make_store(UpsertHandler(current=1, guard_passes=False))
        with pytest.raises(VersionConflict):
            store.put("t1", {})

    def test_non_serializable_state_rejected_before_io(self):
        store, pool = _make_store(UpsertHandler())
        with pytest.raises(TypeError):
            store.put("t1", {"bad": object()})
        assert pool.executed == []

    def test_transient_failures_are_retried(self):
        inner = UpsertHandler(current=None)
        failures = {"left": 2}

        def _flaky(sql, params):
            if "FOR UPDATE" in sql and failures["left"]:
                failures["left"] -= 1
                raise psycopg.OperationalError("connection reset")
            return inner(sql, params)

        store, _ = _make_store(_flaky, max_retries=3)
        assert store.put("t1", {"counter": 1}).version == 1
        assert failures["left"] == 0

    def test_exhausted_retries_surface_write_error(self):
        calls = {"n": 0}

        def _down(sql, params):
            calls["n"] += 1
            raise psycopg.InterfaceError("connection closed")

        store, _ = _make_store(_down, max_retries=2)
        with pytest.raises(StorageWriteError) as excinfo:
            store.put("t1", {})
        assert excinfo.value.attempts == 3
        assert calls["n"] == 3

    def test_non_transient_errors_are_not_retried(self):
        calls = {"n": 0}

        def _bad(sql, params):
            calls["n"] += 1
            raise psycopg.DataError("invalid input")

        store, _ = _make_store(_bad, max_retries=3)
        with pytest.raises(psycopg.DataError):
            store.put("t1", {})
        assert calls["n"] == 1


class TestCompanionRecords:
    def test_upsert_session(self):
        def _handler(sql, params):
            thread_id, user_id, status, component, start_time, metadata = params
            return [{
                "thread_id": thread_id,
                "user_id": user_id,
                "status": status,
                "component": component,
                "start_time": start_time,
                "last_activity": NOW,
                "metadata": metadata.obj,
            }]

        store, _ = _make_store(_handler)
        record = store.upsert_session(
            SessionRecord(thread_id="t1", user_id="u1", status=ThreadStatus.INTERRUPTED, metadata={"k": 1})
        )
        assert record.status is ThreadStatus.INTERRUPTED
        assert record.metadata == {"k": 1}

    def test_resource_usage(self):
        store, pool = _make_store(lambda sql, params: [{"usage": {"tokens": 5}}])
        assert store.get_resource_usage("t1") == {"tokens": 5.0}
        store.put_resource_usage("t1", {"tokens": 6})
        assert pool.statements("INSERT INTO flowguard_resource_usage")

    def test_delete_clears_all_tables(self):
        store, pool = _make_store()
        store.delete("t1")
        deleted = [sql.split()[2] for sql in pool.statements("DELETE FROM")]
        assert set(deleted) == {
            "flowguard_checkpoint",
            "flowguard_checkpoint_version",
            "flowguard_session",
            "flowguard_resource_usage",
        }

    def test_close_closes_pool(self):
        store, pool = _make_store()
        store.close()
        assert pool.closed is True
