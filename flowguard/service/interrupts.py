"""Human-in-the-loop interrupt and resume protocol.

A paused thread's state and its pending question live in the thread's
checkpoint: the metadata ``extra["interrupt"]`` record carries the payload
and whether it is still ``pending`` or already ``consumed``. Nothing is held
in process memory, so a resume may arrive after a restart.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from flowguard.logging import get_logger
from flowguard.service.errors import InterruptProtocolError
from flowguard.storage.common import ThreadLocks
from flowguard.storage.models import Checkpoint, CheckpointMetadata, parse_timestamp, utcnow

logger = get_logger(__name__)

PENDING = "pending"
CONSUMED = "consumed"


class Intent(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"
    ASK_QUESTION = "ask_question"


@dataclass
class InterruptPayload:
    type: str
    question: str
    options: List[str] = field(default_factory=list)
    data: Any = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "question": self.question,
            "options": list(self.options),
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InterruptPayload":
        return cls(
            type=data.get("type") or "review",
            question=data.get("question") or "",
            options=list(data.get("options") or []),
            data=data.get("data"),
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class ResumeInput:
    action: str
    feedback: Optional[str] = None


@dataclass
class ResumeDecision:
    intent: Intent
    next_step: Optional[str]
    feedback: Optional[str]
    state: Any
    reinterrupted: bool = False
    follow_up: Optional[InterruptPayload] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "next_step": self.next_step,
            "feedback": self.feedback,
            "state": self.state,
            "reinterrupted": self.reinterrupted,
            "follow_up": self.follow_up.to_dict() if self.follow_up else None,
        }


class IntentClassifier(Protocol):
    def classify(self, resume_input: ResumeInput) -> Intent:
        ...


_WORD_RE = re.compile(r"[a-z']+")
_QUESTION_WORDS = {"what", "why", "how", "when", "where", "who", "which"}


class KeywordIntentClassifier:
    """Synonym-matching classifier for free-text review responses.

    Questions (a ``?`` or a leading question word) win over everything else,
    then intent names, then synonyms. Input that matches nothing is treated
    as a modification request.
    """

    synonyms: Dict[Intent, Tuple[str, ...]] = {
        Intent.APPROVE: ("yes", "good", "proceed", "accept", "confirm", "ok", "okay", "fine", "lgtm"),
        Intent.REJECT: ("no", "bad", "stop", "decline", "cancel"),
        Intent.MODIFY: ("change", "update", "revise", "edit", "improve", "fix"),
    }

    def __init__(self, default: Intent = Intent.MODIFY) -> None:
        self.default = default

    def classify(self, resume_input: ResumeInput) -> Intent:
        text = " ".join(part for part in (resume_input.action, resume_input.feedback) if part)
        lowered = text.lower()
        words = _WORD_RE.findall(lowered)
        if "?" in lowered or (words and words[0] in _QUESTION_WORDS):
            return Intent.ASK_QUESTION
        for intent in (Intent.APPROVE, Intent.REJECT, Intent.MODIFY):
            if intent.value in words:
                return intent
        for intent, synonyms in self.synonyms.items():
            if any(word in synonyms for word in words):
                return intent
        return self.default


def _explicit_intent(action: Optional[str]) -> Optional[Intent]:
    if not action:
        return None
    try:
        return Intent(action.strip().lower())
    except ValueError:
        return None


class InterruptCoordinator:
    """Pause/resume state machine backed by the checkpoint store.

    ``running -> interrupted -> resuming -> running | terminated``. One
    outstanding interrupt per thread; each interrupt accepts exactly one
    resume.
    """

    def __init__(
        self,
        store,
        *,
        classifier: Optional[IntentClassifier] = None,
        route_map: Optional[Mapping[Intent | str, str]] = None,
        default_route: Optional[str] = None,
    ) -> None:
        self.store = store
        self.classifier: IntentClassifier = classifier or KeywordIntentClassifier()
        self.route_map: Dict[Intent, str] = {}
        for intent, step in (route_map or {}).items():
            self.route_map[Intent(intent)] = step
        self.default_route = default_route
        self._locks = ThreadLocks()

    def forget(self, thread_id: str) -> None:
        self._locks.discard(thread_id)

    @staticmethod
    def _record(checkpoint: Optional[Checkpoint]) -> Optional[Dict[str, Any]]:
        if checkpoint is None:
            return None
        return checkpoint.metadata.extra.get("interrupt")

    @staticmethod
    def _require_thread_id(thread_id: str) -> None:
        if not thread_id or not thread_id.strip():
            raise InterruptProtocolError("thread id is required")

    def interrupt(self, thread_id: str, payload: InterruptPayload, state: Any) -> Checkpoint:
        """Persist ``state`` with ``payload`` as the thread's pending interrupt."""

        self._require_thread_id(thread_id)
        with self._locks.for_thread(thread_id):
            record = self._record(self.store.get(thread_id))
            if record and record.get("status") == PENDING:
                raise InterruptProtocolError(
                    "thread already has an outstanding interrupt",
                    detail={"thread_id": thread_id, "pending": record.get("payload")},
                )
            checkpoint = self.store.put(
                thread_id,
                state,
                CheckpointMetadata(
                    source="interrupt",
                    step=payload.type,
                    extra={"interrupt": {"status": PENDING, "payload": payload.to_dict()}},
                ),
            )
        logger.info(
            "interrupt_raised",
            thread_id=thread_id,
            interrupt_type=payload.type,
            version=checkpoint.version,
        )
        return checkpoint

    def pending(self, thread_id: str) -> Optional[InterruptPayload]:
        self._require_thread_id(thread_id)
        record = self._record(self.store.get(thread_id))
        if not record or record.get("status") != PENDING:
            return None
        return InterruptPayload.from_dict(record["payload"])

    def classify(self, resume_input: ResumeInput) -> Intent:
        explicit = _explicit_intent(resume_input.action)
        if explicit is not None:
            return explicit
        return self.classifier.classify(resume_input)

    def route(self, intent: Intent) -> Optional[str]:
        return self.route_map.get(intent, self.default_route)

    def resume(self, thread_id: str, resume_input: ResumeInput) -> ResumeDecision:
        """Consume the pending interrupt and decide where the run continues.

        An ``ask_question`` intent consumes the interrupt and raises a follow-up
        one carrying the question, leaving the thread interrupted.
        """
        self._require_thread_id(thread_id)
        with self._locks.for_thread(thread_id):
            checkpoint = self.store.get(thread_id)
            record = self._record(checkpoint)
            if checkpoint is None or not record:
                raise InterruptProtocolError(
                    "no outstanding interrupt to resume", detail={"thread_id": thread_id}
                )
            if record.get("status") != PENDING:
                raise InterruptProtocolError(
                    "interrupt was already resumed", detail={"thread_id": thread_id}
                )

            original = InterruptPayload.from_dict(record["payload"])
            intent = self.classify(resume_input)
            resolution = {
                "action": resume_input.action,
                "feedback": resume_input.feedback,
                "intent": intent.value,
                "resolved_at": utcnow().isoformat(),
            }
            self.store.put(
                thread_id,
                checkpoint.state,
                CheckpointMetadata(
                    source="resume",
                    step=original.type,
                    extra={
                        "interrupt": {
                            "status": CONSUMED,
                            "payload": original.to_dict(),
                            "resolution": resolution,
                        }
                    },
                ),
            )
            logger.info("interrupt_resumed", thread_id=thread_id, intent=intent.value)

            if intent is Intent.ASK_QUESTION:
                follow_up = InterruptPayload(
                    type="question",
                    question=resume_input.feedback or resume_input.action,
                    options=list(original.options),
                    data={"original": original.to_dict()},
                )
                self.interrupt(thread_id, follow_up, checkpoint.state)
                return ResumeDecision(
                    intent=intent,
                    next_step=None,
                    feedback=resume_input.feedback,
                    state=checkpoint.state,
                    reinterrupted=True,
                    follow_up=follow_up,
                )

        return ResumeDecision(
            intent=intent,
            next_step=self.route(intent),
            feedback=resume_input.feedback,
            state=checkpoint.state,
        )
