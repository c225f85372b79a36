from __future__ import annotations

from typing import Any, Dict, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from flowguard.logging import get_logger, mask_dsn
from flowguard.storage.common import call_with_retry, dumps_state, loads_state
from flowguard.storage.errors import (
    StorageReadError,
    StorageUnavailableError,
    StorageWriteError,
    VersionConflict,
)
from flowguard.storage.models import (
    Checkpoint,
    CheckpointMetadata,
    SessionRecord,
    ThreadStatus,
)

# Connection-level failures worth another attempt; constraint and data errors are not
TRANSIENT_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS flowguard_checkpoint (
        thread_id TEXT PRIMARY KEY,
        checkpoint_data JSONB NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        version BIGINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowguard_checkpoint_version (
        thread_id TEXT NOT NULL,
        version BIGINT NOT NULL,
        checkpoint_data JSONB NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (thread_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowguard_session (
        thread_id TEXT PRIMARY KEY,
        user_id TEXT,
        status TEXT NOT NULL,
        component TEXT,
        start_time TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowguard_resource_usage (
        thread_id TEXT PRIMARY KEY,
        usage JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS flowguard_checkpoint_updated_idx ON flowguard_checkpoint (updated_at DESC)",
)


class PostgresCheckpointStore:
    """Durable checkpoint store backed by Postgres.

    One row per thread holds the current checkpoint; superseded versions are
    copied into ``flowguard_checkpoint_version`` for audit and trimmed to
    ``audit_versions`` rows per thread.
    """

    backend = "postgres"
    persisted = True

    def __init__(
        self,
        dsn: str,
        *,
        max_retries: int = 3,
        retry_delay_ms: int = 500,
        audit_versions: int = 10,
        min_size: int = 1,
        max_size: int = 10,
        connect_timeout_s: float = 15.0,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.audit_versions = audit_versions
        self.logger = get_logger(__name__)
        if pool is None:
            pool = ConnectionPool(
                self.dsn,
                min_size=min_size,
                max_size=max_size,
                kwargs={"row_factory": dict_row, "autocommit": False},
                open=False,
            )
            try:
                pool.open(wait=True, timeout=connect_timeout_s)
            except psycopg.Error as exc:
                pool.close()
                raise StorageUnavailableError(
                    "checkpoint database unreachable",
                    {"database": mask_dsn(dsn), "error": str(exc)},
                ) from exc
        self.pool = pool
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the checkpoint, audit, session and usage tables if missing."""

        try:
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
        except psycopg.Error as exc:
            raise StorageUnavailableError(
                "unable to provision checkpoint schema",
                {"database": mask_dsn(self.dsn), "error": str(exc)},
            ) from exc

    def _retry(self, fn, *, operation: str, thread_id: Optional[str] = None, error_cls=StorageWriteError):
        return call_with_retry(
            fn,
            operation=operation,
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            retry_on=TRANSIENT_ERRORS,
            logger=self.logger,
            error_cls=error_cls,
            detail={"thread_id": thread_id} if thread_id else None,
        )

    @staticmethod
    def _checkpoint_from_row(row: Dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            thread_id=row["thread_id"],
            state=loads_state(row["checkpoint_data"]),
            metadata=CheckpointMetadata.from_dict(loads_state(row.get("metadata"))),
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get(self, thread_id: str) -> Optional[Checkpoint]:
        def _read() -> Optional[Dict[str, Any]]:
            with self._connect() as conn:
                return conn.execute(
                    """
                    SELECT thread_id, checkpoint_data, metadata, version, created_at, updated_at
                    FROM flowguard_checkpoint WHERE thread_id = %s
                    """,
                    (thread_id,),
                ).fetchone()

        row = self._retry(
            _read, operation="checkpoint_get", thread_id=thread_id, error_cls=StorageReadError
        )
        if not row:
            return None
        return self._checkpoint_from_row(row)

    def put(
        self,
        thread_id: str,
        state: Any,
        metadata: Optional[CheckpointMetadata | Dict[str, Any]] = None,
        *,
        version: Optional[int] = None,
    ) -> Checkpoint:
        dumps_state(state)
        meta = (
            metadata
            if isinstance(metadata, CheckpointMetadata)
            else CheckpointMetadata.from_dict(metadata)
        )

        def _write() -> Dict[str, Any]:
            with self._connect() as conn:
                current = conn.execute(
                    "SELECT version FROM flowguard_checkpoint WHERE thread_id = %s FOR UPDATE",
                    (thread_id,),
                ).fetchone()
                current_version = int(current["version"]) if current else 0
                new_version = current_version + 1 if version is None else version
                if new_version <= current_version:
                    raise VersionConflict(thread_id, current_version, new_version)
                if current and self.audit_versions > 0:
                    conn.execute(
                        """
                        INSERT INTO flowguard_checkpoint_version (thread_id, version, checkpoint_data, metadata, created_at)
                        SELECT thread_id, version, checkpoint_data, metadata, updated_at
                        FROM flowguard_checkpoint WHERE thread_id = %s
                        ON CONFLICT (thread_id, version) DO NOTHING
                        """,
                        (thread_id,),
                    )
                    conn.execute(
                        """
                        DELETE FROM flowguard_checkpoint_version
                        WHERE thread_id = %s AND version NOT IN (
                            SELECT version FROM flowguard_checkpoint_version
                            WHERE thread_id = %s ORDER BY version DESC LIMIT %s
                        )
                        """,
                        (thread_id, thread_id, self.audit_versions),
                    )
                row = conn.execute(
                    """
                    INSERT INTO flowguard_checkpoint (thread_id, checkpoint_data, metadata, version, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, now(), now())
                    ON CONFLICT (thread_id) DO UPDATE SET
                        checkpoint_data = EXCLUDED.checkpoint_data,
                        metadata = EXCLUDED.metadata,
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                    WHERE flowguard_checkpoint.version < EXCLUDED.version
                    RETURNING thread_id, checkpoint_data, metadata, version, created_at, updated_at
                    """,
                    (thread_id, Jsonb(state), Jsonb(meta.to_dict()), new_version),
                ).fetchone()
                if not row:
                    raise VersionConflict(thread_id, current_version, new_version)
                return row

        row = self._retry(_write, operation="checkpoint_put", thread_id=thread_id)
        checkpoint = self._checkpoint_from_row(row)
        self.logger.debug(
            "checkpoint_put", thread_id=thread_id, version=checkpoint.version, backend=self.backend
        )
        return checkpoint

    def list(self) -> List[str]:
        def _read() -> List[Dict[str, Any]]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT thread_id FROM flowguard_checkpoint ORDER BY updated_at DESC"
                ).fetchall()

        rows = self._retry(_read, operation="checkpoint_list", error_cls=StorageReadError)
        return [row["thread_id"] for row in rows]

    def list_versions(self, thread_id: str) -> List[int]:
        def _read() -> List[Dict[str, Any]]:
            with self._connect() as conn:
                return conn.execute(
                    """
                    SELECT version FROM flowguard_checkpoint_version WHERE thread_id = %s
                    UNION
                    SELECT version FROM flowguard_checkpoint WHERE thread_id = %s
                    ORDER BY version
                    """,
                    (thread_id, thread_id),
                ).fetchall()

        rows = self._retry(
            _read, operation="checkpoint_versions", thread_id=thread_id, error_cls=StorageReadError
        )
        return [int(row["version"]) for row in rows]

    def delete(self, thread_id: str) -> None:
        def _write() -> None:
            with self._connect() as conn:
                for table in (
                    "flowguard_checkpoint_version",
                    "flowguard_resource_usage",
                    "flowguard_session",
                    "flowguard_checkpoint",
                ):
                    conn.execute(f"DELETE FROM {table} WHERE thread_id = %s", (thread_id,))

        self._retry(_write, operation="checkpoint_delete", thread_id=thread_id)
        self.logger.info("checkpoint_deleted", thread_id=thread_id, backend=self.backend)

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            thread_id=row["thread_id"],
            status=ThreadStatus(row["status"]),
            user_id=row.get("user_id"),
            component=row.get("component"),
            start_time=row["start_time"],
            last_activity=row["last_activity"],
            metadata=loads_state(row.get("metadata")) or {},
        )

    def upsert_session(self, record: SessionRecord) -> SessionRecord:
        def _write() -> Dict[str, Any]:
            with self._connect() as conn:
                return conn.execute(
                    """
                    INSERT INTO flowguard_session (thread_id, user_id, status, component, start_time, last_activity, metadata)
                    VALUES (%s, %s, %s, %s, %s, now(), %s)
                    ON CONFLICT (thread_id) DO UPDATE SET
                        user_id = COALESCE(EXCLUDED.user_id, flowguard_session.user_id),
                        status = EXCLUDED.status,
                        component = COALESCE(EXCLUDED.component, flowguard_session.component),
                        last_activity = EXCLUDED.last_activity,
                        metadata = EXCLUDED.metadata
                    RETURNING thread_id, user_id, status, component, start_time, last_activity, metadata
                    """,
                    (
                        record.thread_id,
                        record.user_id,
                        record.status.value,
                        record.component,
                        record.start_time,
                        Jsonb(record.metadata),
                    ),
                ).fetchone()

        row = self._retry(_write, operation="session_upsert", thread_id=record.thread_id)
        return self._session_from_row(row)

    def get_session(self, thread_id: str) -> Optional[SessionRecord]:
        def _read() -> Optional[Dict[str, Any]]:
            with self._connect() as conn:
                return conn.execute(
                    """
                    SELECT thread_id, user_id, status, component, start_time, last_activity, metadata
                    FROM flowguard_session WHERE thread_id = %s
                    """,
                    (thread_id,),
                ).fetchone()

        row = self._retry(
            _read, operation="session_get", thread_id=thread_id, error_cls=StorageReadError
        )
        return self._session_from_row(row) if row else None

    def get_resource_usage(self, thread_id: str) -> Optional[Dict[str, float]]:
        def _read() -> Optional[Dict[str, Any]]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT usage FROM flowguard_resource_usage WHERE thread_id = %s",
                    (thread_id,),
                ).fetchone()

        row = self._retry(
            _read, operation="resource_usage_get", thread_id=thread_id, error_cls=StorageReadError
        )
        if not row:
            return None
        usage = loads_state(row["usage"]) or {}
        return {name: float(amount) for name, amount in usage.items()}

    def put_resource_usage(self, thread_id: str, usage: Dict[str, float]) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO flowguard_resource_usage (thread_id, usage, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (thread_id) DO UPDATE SET usage = EXCLUDED.usage, updated_at = EXCLUDED.updated_at
                    """,
                    (thread_id, Jsonb(dict(usage))),
                )

        self._retry(_write, operation="resource_usage_put", thread_id=thread_id)

    def close(self) -> None:
        self.pool.close()
