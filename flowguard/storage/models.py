from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(raw: Any) -> datetime:
    """Coerce a stored timestamp to an aware UTC datetime.

    Accepts datetimes, epoch milliseconds and ISO-8601 strings, including the
    ``Z`` suffix JavaScript writers emit. Naive values are taken as UTC and
    a missing value falls back to now.
    """
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        ts = datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
    elif raw:
        text = str(raw).strip()
        if text[-1:] in ("Z", "z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    else:
        ts = utcnow()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class ThreadStatus(str, Enum):
    """Lifecycle of a workflow thread."""

    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ThreadStatus.COMPLETED, ThreadStatus.FAILED)


@dataclass
class CheckpointMetadata:
    source: str = "step"
    step: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckpointMetadata":
        data = data or {}
        return cls(
            source=data.get("source") or "step",
            step=data.get("step"),
            timestamp=parse_timestamp(data.get("timestamp")),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class Checkpoint:
    thread_id: str
    state: Any
    metadata: CheckpointMetadata
    version: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionRecord:
    """Run-tracking record kept alongside a thread's checkpoint."""

    thread_id: str
    status: ThreadStatus = ThreadStatus.RUNNING
    user_id: Optional[str] = None
    component: Optional[str] = None
    start_time: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowThread:
    thread_id: str
    status: ThreadStatus
    current_checkpoint_version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "status": self.status.value,
            "current_checkpoint_version": self.current_checkpoint_version,
        }
