from __future__ import annotations

from typing import Dict, Optional, Tuple


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` used in the response envelope:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - cycle_detected (422)
    - resource_limit_exceeded (422)
    - loop_detected (422)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested thread or interrupt not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Thread state conflict (409)."""
    status_code = 409
    error_code = "conflict"


class InterruptProtocolError(ConflictError):
    """Missing thread id, duplicate resume, resume without a pending interrupt,
    or a second interrupt while one is outstanding."""


class CycleDetectedError(ServiceError):
    """Run stopped because its state fingerprints repeat (422)."""
    status_code = 422
    error_code = "cycle_detected"

    def __init__(
        self,
        thread_id: str,
        *,
        cycle_length: int,
        repetitions: int,
        last_unique_state_index: int,
    ) -> None:
        super().__init__(
            f"cycle of length {cycle_length} repeated {repetitions} times",
            detail={
                "thread_id": thread_id,
                "cycle_length": cycle_length,
                "repetitions": repetitions,
                "last_unique_state_index": last_unique_state_index,
            },
        )
        self.thread_id = thread_id
        self.cycle_length = cycle_length
        self.repetitions = repetitions
        self.last_unique_state_index = last_unique_state_index


class ResourceLimitExceededError(ServiceError):
    """Run stopped because a resource budget was exceeded (422)."""
    status_code = 422
    error_code = "resource_limit_exceeded"

    def __init__(
        self,
        thread_id: str,
        *,
        usage: Dict[str, float],
        exceeded: Dict[str, Tuple[float, float]],
    ) -> None:
        names = ", ".join(sorted(exceeded))
        super().__init__(
            f"resource limit exceeded: {names}",
            detail={
                "thread_id": thread_id,
                "usage": dict(usage),
                "exceeded": {
                    name: {"usage": used, "limit": limit}
                    for name, (used, limit) in exceeded.items()
                },
            },
        )
        self.thread_id = thread_id
        self.usage = dict(usage)
        self.exceeded = dict(exceeded)


class LoopDetectedError(ServiceError):
    """Run stopped by the iteration or no-progress guard (422)."""
    status_code = 422
    error_code = "loop_detected"

    def __init__(
        self,
        thread_id: str,
        *,
        reason: str,
        iterations: int,
        iterations_without_progress: int,
    ) -> None:
        super().__init__(
            f"loop guard stopped the run: {reason}",
            detail={
                "thread_id": thread_id,
                "reason": reason,
                "iterations": iterations,
                "iterations_without_progress": iterations_without_progress,
            },
        )
        self.thread_id = thread_id
        self.reason = reason
        self.iterations = iterations
        self.iterations_without_progress = iterations_without_progress


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InterruptProtocolError",
    "CycleDetectedError",
    "ResourceLimitExceededError",
    "LoopDetectedError",
]
