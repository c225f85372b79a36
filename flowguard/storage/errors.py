from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for checkpoint storage failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailableError(StorageError):
    """Raised when the durable backend cannot be reached or provisioned."""


class StorageReadError(StorageError):
    """Raised when a read fails; distinct from a thread that does not exist."""


class StorageWriteError(StorageError):
    """Raised when a write still fails after the bounded retry budget."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, {**(detail or {}), "attempts": attempts})
        self.attempts = attempts


class VersionConflict(StorageError):
    """Raised when a put would not advance a thread's checkpoint version."""

    def __init__(self, thread_id: str, current: int, attempted: int):
        super().__init__(
            f"checkpoint version {attempted} does not advance current version {current}",
            {"thread_id": thread_id, "current_version": current, "attempted_version": attempted},
        )
        self.thread_id = thread_id
        self.current = current
        self.attempted = attempted


__all__ = [
    "StorageError",
    "StorageUnavailableError",
    "StorageReadError",
    "StorageWriteError",
    "VersionConflict",
]
