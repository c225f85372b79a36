from __future__ import annotations

import time
from typing import Callable, Dict, Mapping, Optional, Tuple

from flowguard.config import Settings
from flowguard.logging import get_logger

logger = get_logger(__name__)

TrackingFunction = Callable[[str, float, Dict[str, float]], float]
LimitCallback = Callable[[Dict[str, float]], None]

TIME_RESOURCE = "time"


def weighted_tokens(weights: Mapping[str, float], target: str = "weighted_tokens") -> TrackingFunction:
    """Tracking function that folds several token counters into ``target``.

    Each tracked amount is multiplied by the weight of its source resource;
    sources without a weight leave the derived value unchanged. Register the
    result under the same ``target`` name, e.g.
    ``{"weighted_tokens": weighted_tokens({"prompt_tokens": 1.0, "completion_tokens": 1.5})}``.
    """

    def _track(resource: str, amount: float, usage: Dict[str, float]) -> float:
        return usage.get(target, 0.0) + amount * weights.get(resource, 0.0)

    return _track


class ResourceGovernor:
    """Accumulates resource usage for one run and checks it against limits.

    Usage is never reset implicitly; callers own ``reset_usage``. A governor is
    not shared across runs. Build a separate one when process-wide totals
    are wanted.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, float]] = None,
        on_limit_exceeded: Optional[LimitCallback] = None,
        tracking_functions: Optional[Mapping[str, TrackingFunction]] = None,
    ) -> None:
        self.limits: Dict[str, float] = dict(limits or {})
        self.on_limit_exceeded = on_limit_exceeded
        self.tracking_functions: Dict[str, TrackingFunction] = dict(tracking_functions or {})
        self._usage: Dict[str, float] = {}
        self._timer_mark: Optional[float] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        on_limit_exceeded: Optional[LimitCallback] = None,
        tracking_functions: Optional[Mapping[str, TrackingFunction]] = None,
    ) -> "ResourceGovernor":
        return cls(
            limits=settings.resource_limits(),
            on_limit_exceeded=on_limit_exceeded,
            tracking_functions=tracking_functions,
        )

    def track_resource(self, name: str, amount: float) -> None:
        for derived, fn in self.tracking_functions.items():
            self._usage[derived] = float(fn(name, amount, dict(self._usage)))
        if name not in self.tracking_functions:
            self._usage[name] = self._usage.get(name, 0.0) + float(amount)

    def exceeded(self) -> Dict[str, Tuple[float, float]]:
        """Resources strictly over their limit, as ``{name: (usage, limit)}``."""

        return {
            name: (used, self.limits[name])
            for name, used in self._usage.items()
            if name in self.limits and used > self.limits[name]
        }

    def check_limits(self) -> bool:
        """Return True when any resource is over its limit.

        The callback fires on every call that finds a breach; de-duplicating
        repeated notifications is left to the caller.
        """
        breached = self.exceeded()
        if not breached:
            return False
        logger.warning(
            "resource_limit_exceeded",
            exceeded={name: {"usage": used, "limit": limit} for name, (used, limit) in breached.items()},
        )
        if self.on_limit_exceeded is not None:
            self.on_limit_exceeded(self.get_current_usage())
        return True

    def get_current_usage(self) -> Dict[str, float]:
        return dict(self._usage)

    def reset_usage(self) -> None:
        self._usage = {}
        self._timer_mark = None

    def load_usage(self, usage: Mapping[str, float]) -> None:
        """Restore counters persisted by an earlier process."""

        self._usage = {name: float(amount) for name, amount in usage.items()}

    def start_timer(self) -> None:
        self._timer_mark = time.monotonic()

    def track_elapsed(self) -> float:
        """Add wall-clock milliseconds since the last mark to the ``time`` resource."""

        now = time.monotonic()
        if self._timer_mark is None:
            self._timer_mark = now
            return 0.0
        elapsed_ms = (now - self._timer_mark) * 1000.0
        self._timer_mark = now
        self.track_resource(TIME_RESOURCE, elapsed_ms)
        return elapsed_ms
