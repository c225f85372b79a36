"""State fingerprinting and cycle detection for workflow runs.

A fingerprint is a SHA-256 digest over a canonical JSON rendering of a
workflow state after bookkeeping fields are stripped, the optional
whole-state normalizer has run, and the include/exclude filters and leaf
normalizer are applied. Sets are hashed as sorted lists so digests do not
depend on hash randomization. A run's fingerprints
form a ``StateHistory``; ``detect_cycle`` looks for the latest fingerprint
recurring too often and reports the shortest repeating period at the tail.
"""

from __future__ import annotations

import copy
import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional, Sequence

# Bookkeeping keys that change every step without carrying semantic progress
VOLATILE_FIELDS = (
    "state_history",
    "stateHistory",
    "loop_detection",
    "loopDetection",
    "_iteration_count",
    "_iterationCount",
)

_MISSING = object()


@dataclass
class FingerprintOptions:
    """Controls which parts of a state feed the fingerprint.

    ``include_fields`` and ``exclude_fields`` accept dot paths
    (``"research.items"``) and are mutually exclusive. ``normalize`` receives
    the whole state (volatile fields already removed) before filtering and
    returns the state to fingerprint; use it to sort lists or reshape nested
    data. ``normalize_value`` is called as ``normalize_value(value, path)``
    on every leaf after filtering.
    """

    include_fields: Optional[Sequence[str]] = None
    exclude_fields: Optional[Sequence[str]] = None
    normalize: Optional[Callable[[Any], Any]] = None
    normalize_value: Optional[Callable[[Any, str], Any]] = None
    volatile_fields: Sequence[str] = VOLATILE_FIELDS

    def __post_init__(self) -> None:
        if self.include_fields and self.exclude_fields:
            raise ValueError("include_fields and exclude_fields are mutually exclusive")


@dataclass
class StateHistoryEntry:
    node_name: str
    fingerprint: str
    timestamp: int
    original_state: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_name": self.node_name,
            "fingerprint": self.fingerprint,
            "timestamp": self.timestamp,
            "original_state": self.original_state,
        }


@dataclass
class CycleResult:
    cycle_detected: bool = False
    cycle_length: Optional[int] = None
    repetitions: Optional[int] = None
    last_unique_state_index: Optional[int] = None


def _get_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _select_fields(state: Dict[str, Any], paths: Iterable[str]) -> Dict[str, Any]:
    selected: Dict[str, Any] = {}
    for path in paths:
        value = _get_path(state, path)
        if value is _MISSING:
            continue
        parts = path.split(".")
        target = selected
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return selected


def _drop_fields(state: Dict[str, Any], paths: Iterable[str]) -> Dict[str, Any]:
    for path in paths:
        parts = path.split(".")
        parent = _get_path(state, ".".join(parts[:-1])) if len(parts) > 1 else state
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)
    return state


def _deep_map(value: Any, fn: Callable[[Any, str], Any], path: str = "") -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        return {
            key: _deep_map(item, fn, f"{path}.{key}" if path else str(key))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            _deep_map(item, fn, f"{path}.{index}" if path else str(index))
            for index, item in enumerate(value)
        ]
    return fn(value, path)


def normalize_state(state: Any, options: Optional[FingerprintOptions] = None) -> Any:
    """Return the filtered, normalized copy of ``state`` that gets hashed."""

    options = options or FingerprintOptions()
    if isinstance(state, dict):
        normalized = {
            key: copy.deepcopy(value)
            for key, value in state.items()
            if key not in options.volatile_fields
        }
    else:
        normalized = copy.deepcopy(state)
    if options.normalize is not None:
        normalized = options.normalize(normalized)
    if isinstance(normalized, dict):
        if options.include_fields:
            normalized = _select_fields(normalized, options.include_fields)
        elif options.exclude_fields:
            normalized = _drop_fields(normalized, options.exclude_fields)
    if options.normalize_value is not None:
        normalized = _deep_map(normalized, options.normalize_value)
    return normalized


def _canonical_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=canonical_json)
    return str(value)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_canonical_default)


def fingerprint_state(state: Any, options: Optional[FingerprintOptions] = None) -> str:
    """Hex SHA-256 digest of the normalized state."""

    payload = canonical_json(normalize_state(state, options))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprint(
    state: Any,
    options: Optional[FingerprintOptions] = None,
    node_name: str = "",
) -> StateHistoryEntry:
    return StateHistoryEntry(
        node_name=node_name,
        fingerprint=fingerprint_state(state, options),
        timestamp=int(time.time() * 1000),
        original_state=copy.deepcopy(state),
    )


def states_equivalent(
    first: Any, second: Any, options: Optional[FingerprintOptions] = None
) -> bool:
    return fingerprint_state(first, options) == fingerprint_state(second, options)


def _shortest_period(fingerprints: List[str]) -> Optional[int]:
    for length in range(1, len(fingerprints) // 2 + 1):
        if fingerprints[-length:] == fingerprints[-2 * length:-length]:
            return length
    return None


def _suffix_start(fingerprints: List[str], period: int) -> int:
    start = max(len(fingerprints) - period, 0)
    while start > 0 and start - 1 + period < len(fingerprints):
        if fingerprints[start - 1] != fingerprints[start - 1 + period]:
            break
        start -= 1
    return start


def detect_cycle(
    history: Sequence[StateHistoryEntry], cycle_threshold: int = 3
) -> CycleResult:
    """Flag a cycle when the latest fingerprint occurs ``cycle_threshold`` times.

    Occurrences are counted across the whole history, so an alternating tail
    such as A B A B A B is caught even though equal fingerprints are never
    adjacent. ``cycle_length`` is the smallest period L for which the last L
    fingerprints equal the L before them; when no such period exists the
    distance between the last two occurrences is used instead.
    ``last_unique_state_index`` points at the entry just before the repeating
    suffix and is where ``prune_history`` truncates.
    """
    if len(history) <= 1:
        return CycleResult()

    fingerprints = [entry.fingerprint for entry in history]
    latest = fingerprints[-1]
    count = fingerprints.count(latest)
    if count < max(cycle_threshold, 2):
        return CycleResult()

    period = _shortest_period(fingerprints)
    if period is None:
        previous = len(fingerprints) - 2 - fingerprints[-2::-1].index(latest)
        period = len(fingerprints) - 1 - previous
    start = _suffix_start(fingerprints, period)
    return CycleResult(
        cycle_detected=True,
        cycle_length=period,
        repetitions=count // period,
        last_unique_state_index=max(0, start - 1),
    )


def is_progress_detected(history: Sequence[StateHistoryEntry], progress_field: str) -> bool:
    """Compare ``progress_field`` (a dot path) between the last two entries.

    Numbers compare by value, lists and strings by length, anything else by
    canonical JSON. Too little history, or a missing field or snapshot,
    counts as progress since stagnation cannot be shown.
    """
    if len(history) < 2:
        return True
    previous_state = history[-2].original_state
    current_state = history[-1].original_state
    if previous_state is None or current_state is None:
        return True
    return progress_changed(
        _get_path(previous_state, progress_field),
        _get_path(current_state, progress_field),
    )


def progress_value(state: Any, progress_field: str) -> Any:
    """Value at ``progress_field`` (a dot path) for ``progress_changed``.

    An absent field yields a marker that ``progress_changed`` treats as progress.
    """
    return _get_path(state, progress_field)


def progress_changed(previous: Any, current: Any) -> bool:
    if previous is _MISSING or current is _MISSING:
        return True
    numeric = (int, float)
    if (
        isinstance(previous, numeric)
        and isinstance(current, numeric)
        and not isinstance(previous, bool)
        and not isinstance(current, bool)
    ):
        return current != previous
    if isinstance(previous, list) and isinstance(current, list):
        return len(current) != len(previous)
    if isinstance(previous, str) and isinstance(current, str):
        return len(current) != len(previous)
    return canonical_json(current) != canonical_json(previous)


def prune_history(
    history: Sequence[StateHistoryEntry], cycle: CycleResult
) -> List[StateHistoryEntry]:
    """Drop the repeating suffix so a recovered run restarts from a unique state."""

    if not cycle.cycle_detected or cycle.last_unique_state_index is None:
        return list(history)
    return list(history[: cycle.last_unique_state_index + 1])


class StateHistory:
    """Bounded per-run fingerprint history.

    At most ``max_entries`` entries are kept. Only the newest ``state_window``
    entries retain their ``original_state``; older entries keep just the
    fingerprint, which is all cycle detection needs.
    """

    def __init__(self, max_entries: int = 50, state_window: int = 5) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.state_window = max(0, state_window)
        self._entries: Deque[StateHistoryEntry] = deque(maxlen=max_entries)

    def append(self, entry: StateHistoryEntry) -> None:
        self._entries.append(entry)
        if len(self._entries) > self.state_window:
            stale = self._entries[len(self._entries) - self.state_window - 1]
            stale.original_state = None

    def replace(self, entries: Iterable[StateHistoryEntry]) -> None:
        self._entries.clear()
        for entry in entries:
            self.append(entry)

    def entries(self) -> List[StateHistoryEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StateHistoryEntry]:
        return iter(list(self._entries))

    def __getitem__(self, index: int) -> StateHistoryEntry:
        return self._entries[index]
