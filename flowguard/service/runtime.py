from __future__ import annotations

import threading
from typing import Optional

from flowguard.config import Settings, get_settings, reset_settings_cache
from flowguard.logging import get_logger, mask_dsn
from flowguard.service.interrupts import InterruptCoordinator
from flowguard.service.orchestrator import WorkflowOrchestrator
from flowguard.service.resources import ResourceGovernor
from flowguard.storage.errors import StorageUnavailableError
from flowguard.storage.memory import MemoryCheckpointStore
from flowguard.storage.postgres import PostgresCheckpointStore

logger = get_logger(__name__)


def build_checkpoint_store(settings: Settings):
    """Open the durable checkpoint store, degrading to memory when allowed.

    The returned store's ``persisted`` flag tells callers whether checkpoints
    survive a restart.
    """
    audit_versions = settings.checkpoint_audit_versions
    if settings.use_memory_store:
        logger.info("checkpoint_store_initialized", backend="memory", persisted=False)
        return MemoryCheckpointStore(audit_versions=audit_versions)

    try:
        store = PostgresCheckpointStore(
            settings.database_url,
            max_retries=settings.checkpointer_max_retries,
            retry_delay_ms=settings.checkpointer_retry_delay_ms,
            audit_versions=audit_versions,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            connect_timeout_s=settings.db_connect_timeout_s,
        )
    except StorageUnavailableError as exc:
        if not settings.allow_memory_fallback:
            logger.error(
                "checkpoint_store_init_failed",
                database=mask_dsn(settings.database_url),
                error=exc.message,
            )
            raise
        logger.warning(
            "checkpoint_store_fallback",
            database=mask_dsn(settings.database_url),
            error=exc.message,
            backend="memory",
            persisted=False,
        )
        return MemoryCheckpointStore(audit_versions=audit_versions)

    logger.info(
        "checkpoint_store_initialized",
        backend="postgres",
        database=mask_dsn(settings.database_url),
        persisted=True,
    )
    return store


class Runtime:
    """Services for one process, built explicitly from settings.

    Resource governors are not shared here: the orchestrator creates one per
    workflow thread from ``governor_factory``.
    """

    def __init__(self, settings: Optional[Settings] = None, store=None):
        self.settings = settings or get_settings()
        self.store = store if store is not None else build_checkpoint_store(self.settings)
        self.interrupts = InterruptCoordinator(self.store)
        self.orchestrator = WorkflowOrchestrator(
            self.store,
            governor_factory=self.governor_factory,
            interrupts=self.interrupts,
            cycle_threshold=self.settings.cycle_threshold,
            history_size=self.settings.history_size,
            history_state_window=self.settings.history_state_window,
            soft_limit_mode=self.settings.soft_limit_mode,
            persist_resources=self.settings.enable_resource_persistence,
            component=self.settings.default_component,
            max_iterations=self.settings.max_iterations or None,
            progress_field=self.settings.progress_field or None,
            max_iterations_without_progress=self.settings.max_iterations_without_progress,
            min_required_iterations=self.settings.min_required_iterations,
        )
        logger.info(
            "runtime_initialized",
            backend=self.store.backend,
            persisted=self.store.persisted,
            soft_limit_mode=self.settings.soft_limit_mode,
            resource_persistence=self.settings.enable_resource_persistence,
        )

    def governor_factory(self) -> ResourceGovernor:
        return ResourceGovernor.from_settings(self.settings)

    async def shutdown(self) -> None:
        """Let in-flight steps finish, bounded by the graceful shutdown timeout, then close the store."""

        timeout_s = self.settings.graceful_shutdown_timeout_ms / 1000.0
        drained = await self.orchestrator.drain(timeout_s)
        logger.info("runtime_shutdown", drained=drained, inflight=self.orchestrator.inflight)
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime used by the HTTP layer."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the process Runtime from a fresh read of the environment."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
