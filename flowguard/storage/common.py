"""Common storage utilities shared between memory and postgres implementations.

Both checkpoint stores serialize state the same way, serialize writes per
thread id the same way, and (for the durable backend) retry transient
failures with the same bounded backoff policy.
"""

from __future__ import annotations

import copy
import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from flowguard.storage.errors import StorageError, StorageWriteError

T = TypeVar("T")

# Upper bound on a single backoff sleep regardless of attempt count
MAX_BACKOFF_MS = 10_000


# ============================================================================
# SERIALIZATION
# ============================================================================

def dumps_state(value: Any) -> str:
    """Serialize an opaque workflow state to JSON.

    Raises:
        TypeError: If the value is not JSON-serializable. Checkpointed state
            must survive a process restart, so non-serializable values are
            rejected rather than coerced.
    """
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise TypeError(f"Checkpoint state must be JSON-serializable: {e}") from e


def loads_state(raw: Any) -> Any:
    """Inverse of ``dumps_state``; passes through already-decoded JSONB values."""

    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def snapshot(value: Any) -> Any:
    """Detached copy of a state so later caller mutations never leak into storage."""

    return copy.deepcopy(value)


# ============================================================================
# RETRY WITH BOUNDED EXPONENTIAL BACKOFF
# ============================================================================

def backoff_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Delay before retry ``attempt`` (1-based): base, 2x base, 4x base..."""

    if attempt < 1:
        return 0
    return min(base_delay_ms * (2 ** (attempt - 1)), MAX_BACKOFF_MS)


def call_with_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    max_retries: int,
    base_delay_ms: int,
    retry_on: Tuple[Type[BaseException], ...],
    logger: Any,
    error_cls: Type[StorageError] = StorageWriteError,
    detail: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` retrying transient failures, then surface an error.

    ``fn`` is attempted at most ``max_retries + 1`` times. Exceptions outside
    ``retry_on`` propagate immediately. When the budget is exhausted the last
    error is wrapped in ``error_cls`` so callers always get an explicit
    outcome.
    """
    attempt = 0
    last_error: Optional[BaseException] = None
    while attempt <= max_retries:
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            attempt += 1
            if attempt > max_retries:
                break
            delay_ms = backoff_delay_ms(attempt, base_delay_ms)
            logger.warning(
                "storage_retry",
                operation=operation,
                attempt=attempt,
                max_retries=max_retries,
                backoff_ms=delay_ms,
                error_type=type(exc).__name__,
                error=str(exc),
                **(detail or {}),
            )
            if delay_ms > 0:
                sleep(delay_ms / 1000.0)

    logger.error(
        "storage_retries_exhausted",
        operation=operation,
        attempts=attempt,
        error=str(last_error),
        **(detail or {}),
    )
    message = f"{operation} failed after {attempt} attempts: {last_error}"
    if issubclass(error_cls, StorageWriteError):
        raise error_cls(message, attempts=attempt, detail=detail) from last_error
    raise error_cls(message, {**(detail or {}), "attempts": attempt}) from last_error


# ============================================================================
# PER-THREAD WRITE SERIALIZATION
# ============================================================================

class ThreadLocks:
    """Lazily created lock per workflow thread id.

    Writes to one thread id are serialized; writes to different thread ids
    never wait on each other. The registry guard is only held while looking
    up or creating a lock, never across a write.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def for_thread(self, thread_id: str) -> threading.RLock:
        lock = self._locks.get(thread_id)
        if lock is not None:
            return lock
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[thread_id] = lock
            return lock

    def discard(self, thread_id: str) -> None:
        with self._guard:
            self._locks.pop(thread_id, None)
