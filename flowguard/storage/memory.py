from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from flowguard.logging import get_logger
from flowguard.storage.common import ThreadLocks, dumps_state, snapshot
from flowguard.storage.errors import VersionConflict
from flowguard.storage.models import (
    Checkpoint,
    CheckpointMetadata,
    SessionRecord,
    utcnow,
)


class MemoryCheckpointStore:
    """Volatile checkpoint store used for tests and as the durable-backend fallback.

    Nothing here survives a process restart, which ``persisted = False``
    advertises to callers and operators.
    """

    backend = "memory"
    persisted = False

    def __init__(self, *, audit_versions: int = 10) -> None:
        self.logger = get_logger(__name__)
        self.audit_versions = audit_versions
        self.checkpoints: Dict[str, Checkpoint] = {}
        self.audit: Dict[str, List[Checkpoint]] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.resource_usage: Dict[str, Dict[str, float]] = {}
        self._locks = ThreadLocks()
        # Guards the dict structure for list(); per-thread locks serialize writes
        self._index_lock = threading.Lock()

    def get(self, thread_id: str) -> Optional[Checkpoint]:
        current = self.checkpoints.get(thread_id)
        if current is None:
            return None
        return replace(current, state=snapshot(current.state))

    def put(
        self,
        thread_id: str,
        state: Any,
        metadata: Optional[CheckpointMetadata | Dict[str, Any]] = None,
        *,
        version: Optional[int] = None,
    ) -> Checkpoint:
        # Reject non-serializable state here too so tests catch what Postgres would
        dumps_state(state)
        meta = (
            metadata
            if isinstance(metadata, CheckpointMetadata)
            else CheckpointMetadata.from_dict(metadata)
        )
        with self._locks.for_thread(thread_id):
            current = self.checkpoints.get(thread_id)
            current_version = current.version if current else 0
            new_version = current_version + 1 if version is None else version
            if new_version <= current_version:
                raise VersionConflict(thread_id, current_version, new_version)
            now = utcnow()
            checkpoint = Checkpoint(
                thread_id=thread_id,
                state=snapshot(state),
                metadata=meta,
                version=new_version,
                created_at=current.created_at if current else now,
                updated_at=now,
            )
            with self._index_lock:
                if current is not None and self.audit_versions > 0:
                    history = self.audit.setdefault(thread_id, [])
                    history.append(current)
                    del history[: -self.audit_versions]
                # re-insert so dict order tracks recency
                self.checkpoints.pop(thread_id, None)
                self.checkpoints[thread_id] = checkpoint
        self.logger.debug(
            "checkpoint_put", thread_id=thread_id, version=new_version, backend=self.backend
        )
        return replace(checkpoint, state=snapshot(checkpoint.state))

    def list(self) -> List[str]:
        with self._index_lock:
            return [thread_id for thread_id in reversed(self.checkpoints)]

    def list_versions(self, thread_id: str) -> List[int]:
        with self._index_lock:
            versions = [c.version for c in self.audit.get(thread_id, [])]
            current = self.checkpoints.get(thread_id)
        if current is not None:
            versions.append(current.version)
        return versions

    def delete(self, thread_id: str) -> None:
        with self._locks.for_thread(thread_id):
            with self._index_lock:
                self.checkpoints.pop(thread_id, None)
                self.audit.pop(thread_id, None)
                self.sessions.pop(thread_id, None)
                self.resource_usage.pop(thread_id, None)
        self._locks.discard(thread_id)
        self.logger.info("checkpoint_deleted", thread_id=thread_id, backend=self.backend)

    def upsert_session(self, record: SessionRecord) -> SessionRecord:
        with self._locks.for_thread(record.thread_id):
            existing = self.sessions.get(record.thread_id)
            stored = replace(
                record,
                start_time=existing.start_time if existing else record.start_time,
                last_activity=utcnow(),
                metadata=dict(record.metadata),
            )
            self.sessions[record.thread_id] = stored
        return replace(stored, metadata=dict(stored.metadata))

    def get_session(self, thread_id: str) -> Optional[SessionRecord]:
        record = self.sessions.get(thread_id)
        if record is None:
            return None
        return replace(record, metadata=dict(record.metadata))

    def get_resource_usage(self, thread_id: str) -> Optional[Dict[str, float]]:
        usage = self.resource_usage.get(thread_id)
        return dict(usage) if usage is not None else None

    def put_resource_usage(self, thread_id: str, usage: Dict[str, float]) -> None:
        with self._locks.for_thread(thread_id):
            self.resource_usage[thread_id] = dict(usage)

    def close(self) -> None:
        return None
