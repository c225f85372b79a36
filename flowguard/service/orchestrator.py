from __future__ import annotations

import asyncio
import copy
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from flowguard.logging import bind_thread_id, get_logger, log_workflow_trace, thread_id_var
from flowguard.service.errors import (
    ConflictError,
    CycleDetectedError,
    LoopDetectedError,
    NotFoundError,
    ResourceLimitExceededError,
    ValidationError,
)
from flowguard.service.fingerprint import (
    FingerprintOptions,
    StateHistory,
    StateHistoryEntry,
    detect_cycle,
    fingerprint,
    progress_changed,
    progress_value,
)
from flowguard.service.interrupts import (
    InterruptCoordinator,
    InterruptPayload,
    ResumeDecision,
    ResumeInput,
)
from flowguard.service.resources import ResourceGovernor
from flowguard.storage.common import dumps_state
from flowguard.storage.models import (
    Checkpoint,
    CheckpointMetadata,
    SessionRecord,
    ThreadStatus,
    WorkflowThread,
)


@dataclass
class StepState:
    """A step's new state plus the resource deltas it consumed."""

    state: Any
    resources: Dict[str, float] = field(default_factory=dict)


@dataclass
class FanOut:
    """Independent branches run concurrently and merged before checkpointing.

    Each branch receives its own copy of the input state. ``merge`` gets the
    branch states in declaration order; without one, dict states are
    shallow-merged left to right.
    """

    steps: Sequence[Callable[[Any], Any]]
    merge: Optional[Callable[[List[Any]], Any]] = None


@dataclass
class Interrupt:
    payload: InterruptPayload
    state: Any


StepOutcome = Union[StepState, FanOut, Interrupt, Dict[str, Any]]
StepFn = Callable[[Any], Union[StepOutcome, Awaitable[StepOutcome]]]


@dataclass
class InitResult:
    is_new: bool
    thread_id: str
    state: Any = None
    checkpoint: Optional[Checkpoint] = None


@dataclass
class LoopCounters:
    iterations: int = 0
    without_progress: int = 0
    previous: Any = None
    observed: bool = False

    def observe(self, value: Any) -> None:
        if self.observed and not progress_changed(self.previous, value):
            self.without_progress += 1
        else:
            self.without_progress = 0
        self.previous = value
        self.observed = True


@dataclass
class StepResult:
    thread_id: str
    state: Any
    checkpoint: Checkpoint
    usage: Dict[str, float] = field(default_factory=dict)
    interrupt: Optional[InterruptPayload] = None

    @property
    def interrupted(self) -> bool:
        return self.interrupt is not None


def _merge_dicts(states: List[Any]) -> Any:
    merged: Dict[str, Any] = {}
    for state in states:
        if not isinstance(state, dict):
            raise ValidationError("fan-out branches without a merge function must return dict states")
        merged.update(state)
    return merged


class WorkflowOrchestrator:
    """Safety wrapper around an external step engine.

    Every step's resulting state is fingerprinted and checked for cycles,
    its resource deltas are applied and checked against limits, and only
    then is it checkpointed. Optional loop guards stop a run after
    ``max_iterations`` committed steps, or after
    ``max_iterations_without_progress`` steps in which ``progress_field`` did
    not change; neither is enforced before ``min_required_iterations``.

    Steps for one thread run one at a time; distinct threads proceed
    concurrently. Store calls run in worker threads so retry backoff never
    stalls the event loop. Per-thread bookkeeping is released once a thread
    completes, fails or is forgotten.
    """

    def __init__(
        self,
        store,
        *,
        governor_factory: Optional[Callable[[], ResourceGovernor]] = None,
        interrupts: Optional[InterruptCoordinator] = None,
        cycle_threshold: int = 3,
        fingerprint_options: Optional[FingerprintOptions] = None,
        history_size: int = 50,
        history_state_window: int = 5,
        soft_limit_mode: bool = False,
        persist_resources: bool = False,
        component: Optional[str] = None,
        max_iterations: Optional[int] = None,
        progress_field: Optional[str] = None,
        max_iterations_without_progress: int = 3,
        min_required_iterations: int = 0,
    ) -> None:
        self.store = store
        self.governor_factory = governor_factory or ResourceGovernor
        self.interrupts = interrupts or InterruptCoordinator(store)
        self.cycle_threshold = cycle_threshold
        self.fingerprint_options = fingerprint_options or FingerprintOptions()
        self.history_size = history_size
        self.history_state_window = history_state_window
        self.soft_limit_mode = soft_limit_mode
        self.persist_resources = persist_resources
        self.component = component
        self.max_iterations = max_iterations
        self.progress_field = progress_field
        self.max_iterations_without_progress = max_iterations_without_progress
        self.min_required_iterations = min_required_iterations
        self.logger = get_logger(__name__)
        self._governors: Dict[str, ResourceGovernor] = {}
        self._histories: Dict[str, StateHistory] = {}
        self._traces: Dict[str, List[str]] = {}
        self._loops: Dict[str, LoopCounters] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight = 0

    # ------------------------------------------------------------------
    # per-thread bookkeeping
    # ------------------------------------------------------------------

    def _lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    def governor(self, thread_id: str) -> ResourceGovernor:
        gov = self._governors.get(thread_id)
        if gov is None:
            gov = self.governor_factory()
            self._governors[thread_id] = gov
        return gov

    def _history(self, thread_id: str) -> StateHistory:
        hist = self._histories.get(thread_id)
        if hist is None:
            hist = StateHistory(self.history_size, self.history_state_window)
            self._histories[thread_id] = hist
        return hist

    @staticmethod
    def _require_thread_id(thread_id: str) -> None:
        if not thread_id or not thread_id.strip():
            raise ValidationError("thread id is required")

    def _set_status(
        self, thread_id: str, status: ThreadStatus, **metadata: Any
    ) -> SessionRecord:
        existing = self.store.get_session(thread_id)
        record = SessionRecord(
            thread_id=thread_id,
            status=status,
            user_id=existing.user_id if existing else None,
            component=(existing.component if existing else None) or self.component,
            metadata={**(existing.metadata if existing else {}), **metadata},
        )
        if existing:
            record.start_time = existing.start_time
        return self.store.upsert_session(record)

    @property
    def inflight(self) -> int:
        return self._inflight

    async def drain(self, timeout_s: float) -> bool:
        """Wait for in-flight steps to finish; False when ``timeout_s`` elapses first."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout_s, 0.0)
        while self._inflight > 0:
            if loop.time() >= deadline:
                self.logger.warning("orchestrator_drain_timeout", inflight=self._inflight)
                return False
            await asyncio.sleep(0.05)
        return True

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    async def init_or_resume(self, thread_id: str, *, user_id: Optional[str] = None) -> InitResult:
        self._require_thread_id(thread_id)
        return await asyncio.to_thread(self._init_or_resume, thread_id, user_id)

    def _init_or_resume(self, thread_id: str, user_id: Optional[str]) -> InitResult:
        checkpoint = self.store.get(thread_id)
        governor = self.governor(thread_id)
        if checkpoint is None:
            self.store.upsert_session(
                SessionRecord(
                    thread_id=thread_id,
                    status=ThreadStatus.RUNNING,
                    user_id=user_id,
                    component=self.component,
                )
            )
            governor.start_timer()
            self.logger.info("thread_initialized", thread_id=thread_id)
            return InitResult(is_new=True, thread_id=thread_id)

        if self.persist_resources:
            usage = self.store.get_resource_usage(thread_id)
            if usage:
                governor.load_usage(usage)
        governor.start_timer()
        session = self.store.get_session(thread_id)
        if session is None:
            pending = self.interrupts.pending(thread_id)
            self._set_status(
                thread_id, ThreadStatus.INTERRUPTED if pending else ThreadStatus.RUNNING
            )
        self.logger.info(
            "thread_resumed_from_checkpoint", thread_id=thread_id, version=checkpoint.version
        )
        return InitResult(
            is_new=False, thread_id=thread_id, state=checkpoint.state, checkpoint=checkpoint
        )

    async def run_step(
        self,
        thread_id: str,
        step: StepFn,
        state: Any,
        *,
        node_name: str = "",
    ) -> StepResult:
        """Run ``step`` against ``state`` and checkpoint the outcome.

        Raises:
            CycleDetectedError: the new state repeats earlier ones too often.
            ResourceLimitExceededError: a limit was breached outside soft mode.
            LoopDetectedError: an iteration or no-progress guard tripped.
            ConflictError: the thread is terminal or waiting on a resume.
            ValidationError: the step returned no state or one that is not
                JSON-serializable.
        """
        self._require_thread_id(thread_id)
        node_name = node_name or getattr(step, "__name__", "step")
        async with self._lock(thread_id):
            token = bind_thread_id(thread_id)
            self._inflight += 1
            try:
                session = await asyncio.to_thread(self.store.get_session, thread_id)
                if session is not None and session.status.is_terminal:
                    raise ConflictError(
                        f"thread is {session.status.value}", detail={"thread_id": thread_id}
                    )
                if session is not None and session.status is ThreadStatus.INTERRUPTED:
                    raise ConflictError(
                        "thread is waiting for a resume", detail={"thread_id": thread_id}
                    )
                self._traces.setdefault(thread_id, []).append(node_name)

                outcome = await self._invoke(step, state)
                if isinstance(outcome, Interrupt):
                    return await asyncio.to_thread(self._pause, thread_id, outcome)
                if isinstance(outcome, FanOut):
                    new_state, resources = await self._run_fan_out(thread_id, outcome, state)
                else:
                    new_state, resources = self._unpack(outcome)
                return await asyncio.to_thread(
                    self._commit, thread_id, node_name, new_state, resources
                )
            finally:
                self._inflight -= 1
                thread_id_var.reset(token)

    async def resume_with_input(self, thread_id: str, resume_input: ResumeInput) -> ResumeDecision:
        self._require_thread_id(thread_id)
        async with self._lock(thread_id):
            return await asyncio.to_thread(self._resume, thread_id, resume_input)

    def _resume(self, thread_id: str, resume_input: ResumeInput) -> ResumeDecision:
        decision = self.interrupts.resume(thread_id, resume_input)
        if decision.reinterrupted:
            self._set_status(thread_id, ThreadStatus.INTERRUPTED)
        else:
            self._set_status(thread_id, ThreadStatus.RUNNING)
            self.governor(thread_id).start_timer()
        return decision

    def complete(self, thread_id: str) -> WorkflowThread:
        self._set_status(thread_id, ThreadStatus.COMPLETED)
        self._release(thread_id)
        self.logger.info("thread_completed", thread_id=thread_id)
        return self.get_thread(thread_id)

    def fail(self, thread_id: str, reason: str) -> WorkflowThread:
        self._set_status(thread_id, ThreadStatus.FAILED, failure_reason=reason)
        self._release(thread_id)
        self.logger.error("thread_failed", thread_id=thread_id, reason=reason)
        return self.get_thread(thread_id)

    def get_thread(self, thread_id: str) -> WorkflowThread:
        self._require_thread_id(thread_id)
        checkpoint = self.store.get(thread_id)
        session = self.store.get_session(thread_id)
        if checkpoint is None and session is None:
            raise NotFoundError("thread not found", detail={"thread_id": thread_id})
        if session is not None:
            status = session.status
        elif self.interrupts.pending(thread_id) is not None:
            status = ThreadStatus.INTERRUPTED
        else:
            status = ThreadStatus.RUNNING
        return WorkflowThread(
            thread_id=thread_id,
            status=status,
            current_checkpoint_version=checkpoint.version if checkpoint else None,
        )

    def history(self, thread_id: str) -> List[StateHistoryEntry]:
        hist = self._histories.get(thread_id)
        return hist.entries() if hist is not None else []

    def reset_resources(self, thread_id: str) -> None:
        self.governor(thread_id).reset_usage()
        if self.persist_resources:
            self.store.put_resource_usage(thread_id, {})
        self.logger.info("resources_reset", thread_id=thread_id)

    def forget(self, thread_id: str) -> None:
        """Drop in-process bookkeeping for a deleted thread."""

        self._release(thread_id)

    # ------------------------------------------------------------------
    # step handling
    # ------------------------------------------------------------------

    @staticmethod
    async def _invoke(step: StepFn, state: Any) -> Any:
        result = step(state)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _unpack(outcome: Any) -> Tuple[Any, Dict[str, float]]:
        if isinstance(outcome, StepState):
            return outcome.state, dict(outcome.resources)
        if outcome is None:
            raise ValidationError("step returned no state")
        if isinstance(outcome, (FanOut, Interrupt)):
            raise ValidationError("fan-out branches must return a state")
        return outcome, {}

    async def _run_fan_out(
        self, thread_id: str, batch: FanOut, state: Any
    ) -> Tuple[Any, Dict[str, float]]:
        if not batch.steps:
            raise ValidationError("fan-out batch has no steps")
        results = await asyncio.gather(
            *(self._invoke(branch, copy.deepcopy(state)) for branch in batch.steps),
            return_exceptions=True,
        )
        failures = [item for item in results if isinstance(item, BaseException)]
        if failures:
            self.logger.error(
                "fan_out_failed",
                thread_id=thread_id,
                failed=len(failures),
                branches=len(batch.steps),
                error=str(failures[0]),
            )
            raise failures[0]

        states: List[Any] = []
        resources: Dict[str, float] = {}
        for item in results:
            branch_state, branch_resources = self._unpack(item)
            states.append(branch_state)
            for name, amount in branch_resources.items():
                resources[name] = resources.get(name, 0.0) + amount
        merged = (batch.merge or _merge_dicts)(states)
        self.logger.info("fan_out_merged", thread_id=thread_id, branches=len(states))
        return merged, resources

    @staticmethod
    def _require_serializable(thread_id: str, node_name: str, state: Any) -> None:
        try:
            dumps_state(state)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "step state must be JSON-serializable",
                detail={"thread_id": thread_id, "node": node_name, "error": str(exc)},
            ) from exc

    def _pause(self, thread_id: str, outcome: Interrupt) -> StepResult:
        self._require_serializable(thread_id, outcome.payload.type, outcome.state)
        checkpoint = self.interrupts.interrupt(thread_id, outcome.payload, outcome.state)
        self._set_status(thread_id, ThreadStatus.INTERRUPTED)
        governor = self.governor(thread_id)
        governor.track_elapsed()
        if self.persist_resources:
            self.store.put_resource_usage(thread_id, governor.get_current_usage())
        return StepResult(
            thread_id=thread_id,
            state=checkpoint.state,
            checkpoint=checkpoint,
            usage=governor.get_current_usage(),
            interrupt=outcome.payload,
        )

    def _commit(
        self, thread_id: str, node_name: str, state: Any, resources: Dict[str, float]
    ) -> StepResult:
        self._require_serializable(thread_id, node_name, state)
        history = self._history(thread_id)
        history.append(fingerprint(state, self.fingerprint_options, node_name))
        cycle = detect_cycle(history.entries(), self.cycle_threshold)
        if cycle.cycle_detected:
            self.logger.warning(
                "cycle_detected",
                thread_id=thread_id,
                node=node_name,
                cycle_length=cycle.cycle_length,
                repetitions=cycle.repetitions,
                last_unique_state_index=cycle.last_unique_state_index,
            )
            self._fail_run(thread_id, "cycle_detected")
            raise CycleDetectedError(
                thread_id,
                cycle_length=cycle.cycle_length,
                repetitions=cycle.repetitions,
                last_unique_state_index=cycle.last_unique_state_index,
            )

        self._check_loop_guards(thread_id, node_name, state)

        governor = self.governor(thread_id)
        for name, amount in resources.items():
            governor.track_resource(name, amount)
        governor.track_elapsed()
        usage = governor.get_current_usage()
        if self.persist_resources:
            self.store.put_resource_usage(thread_id, usage)
        if governor.check_limits():
            if self.soft_limit_mode:
                self.logger.warning("resource_limit_soft_breach", thread_id=thread_id, usage=usage)
            else:
                exceeded = governor.exceeded()
                self._fail_run(thread_id, "resource_limit_exceeded")
                raise ResourceLimitExceededError(thread_id, usage=usage, exceeded=exceeded)

        checkpoint = self.store.put(
            thread_id,
            state,
            CheckpointMetadata(source="step", step=node_name, extra={"usage": usage}),
        )
        self._set_status(thread_id, ThreadStatus.RUNNING)
        return StepResult(thread_id=thread_id, state=state, checkpoint=checkpoint, usage=usage)

    def _check_loop_guards(self, thread_id: str, node_name: str, state: Any) -> None:
        counters = self._loops.setdefault(thread_id, LoopCounters())
        counters.iterations += 1
        if self.progress_field:
            counters.observe(progress_value(state, self.progress_field))
        if counters.iterations < self.min_required_iterations:
            return

        reason = None
        if self.max_iterations and counters.iterations >= self.max_iterations:
            reason = "max_iterations"
        elif (
            self.progress_field
            and self.max_iterations_without_progress
            and counters.without_progress >= self.max_iterations_without_progress
        ):
            reason = "no_progress"
        if reason is None:
            return

        iterations, without_progress = counters.iterations, counters.without_progress
        self.logger.warning(
            "loop_detected",
            thread_id=thread_id,
            node=node_name,
            reason=reason,
            iterations=iterations,
            iterations_without_progress=without_progress,
        )
        self._fail_run(thread_id, reason)
        raise LoopDetectedError(
            thread_id,
            reason=reason,
            iterations=iterations,
            iterations_without_progress=without_progress,
        )

    def _fail_run(self, thread_id: str, reason: str) -> None:
        self._set_status(thread_id, ThreadStatus.FAILED, failure_reason=reason)
        self._release(thread_id)

    def _release(self, thread_id: str) -> None:
        trace = self._traces.pop(thread_id, None)
        if trace:
            log_workflow_trace(trace, self.logger)
        self._histories.pop(thread_id, None)
        self._governors.pop(thread_id, None)
        self._loops.pop(thread_id, None)
        self._locks.pop(thread_id, None)
        self.interrupts.forget(thread_id)
