"""Tests for the HITL interrupt/resume protocol and intent classification."""

from datetime import datetime, timezone

import pytest

from flowguard.service.errors import InterruptProtocolError
from flowguard.service.interrupts import (
    Intent,
    InterruptCoordinator,
    InterruptPayload,
    KeywordIntentClassifier,
    ResumeInput,
)
from flowguard.storage.memory import MemoryCheckpointStore


@pytest.fixture
def coordinator(memory_store):
    return InterruptCoordinator(
        memory_store,
        route_map={"approve": "write_next_section", Intent.MODIFY: "revise_section"},
        default_route="review_router",
    )


def _payload(**overrides):
    data = {
        "type": "section_review",
        "question": "Approve the introduction?",
        "options": ["approve", "modify", "reject"],
        "data": {"section": "intro"},
    }
    data.update(overrides)
    return InterruptPayload(**data)


class TestInterrupt:
    def test_interrupt_persists_payload_and_state(self, coordinator, memory_store):
        checkpoint = coordinator.interrupt("t1", _payload(), {"draft": "v1"})
        assert checkpoint.metadata.source == "interrupt"
        assert memory_store.get("t1").state == {"draft": "v1"}
        pending = coordinator.pending("t1")
        assert pending.question == "Approve the introduction?"
        assert pending.options == ["approve", "modify", "reject"]

    def test_pending_survives_new_coordinator(self, coordinator, memory_store):
        coordinator.interrupt("t1", _payload(), {"draft": "v1"})
        restarted = InterruptCoordinator(memory_store)
        assert restarted.pending("t1").type == "section_review"

    def test_second_interrupt_while_pending_is_an_error(self, coordinator):
        coordinator.interrupt("t1", _payload(), {})
        with pytest.raises(InterruptProtocolError):
            coordinator.interrupt("t1", _payload(question="Another?"), {})

    def test_missing_thread_id(self, coordinator):
        with pytest.raises(InterruptProtocolError):
            coordinator.interrupt("", _payload(), {})
        with pytest.raises(InterruptProtocolError):
            coordinator.resume("  ", ResumeInput(action="approve"))

    def test_no_pending_without_interrupt(self, coordinator, memory_store):
        memory_store.put("t1", {"draft": "v1"})
        assert coordinator.pending("t1") is None
        assert coordinator.pending("unknown") is None

    def test_payload_wire_shape(self):
        wire = _payload().to_dict()
        assert set(wire) == {"type", "question", "options", "data", "timestamp"}
        assert InterruptPayload.from_dict(wire).timestamp.isoformat() == wire["timestamp"]

    def test_payload_accepts_zulu_timestamps(self):
        wire = {**_payload().to_dict(), "timestamp": "2024-05-01T12:00:00Z"}
        ts = InterruptPayload.from_dict(wire).timestamp
        assert ts == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_payload_accepts_epoch_millis(self):
        wire = {**_payload().to_dict(), "timestamp": 1714564800000}
        ts = InterruptPayload.from_dict(wire).timestamp
        assert ts == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_pending_reads_zulu_timestamp_from_store(self, coordinator, memory_store):
        payload = {**_payload().to_dict(), "timestamp": "2024-05-01T12:00:00.250Z"}
        memory_store.put(
            "t1",
            {"draft": "v1"},
            {"source": "interrupt", "extra": {"interrupt": {"status": "pending", "payload": payload}}},
        )
        assert coordinator.pending("t1").timestamp.microsecond == 250000

    def test_forget_releases_thread_lock(self, coordinator):
        coordinator.interrupt("t1", _payload(), {})
        assert "t1" in coordinator._locks._locks
        coordinator.forget("t1")
        assert "t1" not in coordinator._locks._locks
        assert coordinator.pending("t1") is not None


class TestResume:
    def test_resume_routes_by_intent(self, coordinator):
        coordinator.interrupt("t1", _payload(), {"draft": "v1"})
        decision = coordinator.resume("t1", ResumeInput(action="approve"))
        assert decision.intent is Intent.APPROVE
        assert decision.next_step == "write_next_section"
        assert decision.state == {"draft": "v1"}
        assert decision.reinterrupted is False
        assert coordinator.pending("t1") is None

    def test_unmapped_intent_uses_default_route(self, coordinator):
        coordinator.interrupt("t1", _payload(), {})
        decision = coordinator.resume("t1", ResumeInput(action="reject", feedback="off topic"))
        assert decision.intent is Intent.REJECT
        assert decision.next_step == "review_router"
        assert decision.feedback == "off topic"

    def test_second_resume_is_rejected(self, coordinator):
        coordinator.interrupt("t1", _payload(), {})
        coordinator.resume("t1", ResumeInput(action="approve"))
        with pytest.raises(InterruptProtocolError):
            coordinator.resume("t1", ResumeInput(action="approve"))

    def test_resume_without_interrupt_is_rejected(self, coordinator, memory_store):
        with pytest.raises(InterruptProtocolError):
            coordinator.resume("t1", ResumeInput(action="approve"))
        memory_store.put("t1", {})
        with pytest.raises(InterruptProtocolError):
            coordinator.resume("t1", ResumeInput(action="approve"))

    def test_free_text_is_classified(self, coordinator):
        coordinator.interrupt("t1", _payload(), {})
        decision = coordinator.resume(
            "t1", ResumeInput(action="respond", feedback="please revise the budget table")
        )
        assert decision.intent is Intent.MODIFY
        assert decision.next_step == "revise_section"

    def test_question_reinterrupts(self, coordinator):
        coordinator.interrupt("t1", _payload(), {"draft": "v1"})
        decision = coordinator.resume(
            "t1", ResumeInput(action="respond", feedback="What sources did you use?")
        )
        assert decision.intent is Intent.ASK_QUESTION
        assert decision.reinterrupted is True
        assert decision.next_step is None
        follow_up = coordinator.pending("t1")
        assert follow_up.type == "question"
        assert follow_up.question == "What sources did you use?"
        assert follow_up.data["original"]["question"] == "Approve the introduction?"

        answered = coordinator.resume("t1", ResumeInput(action="approve"))
        assert answered.intent is Intent.APPROVE

    def test_resume_audit_trail_in_store(self, coordinator, memory_store):
        coordinator.interrupt("t1", _payload(), {})
        coordinator.resume("t1", ResumeInput(action="approve", feedback="looks good"))
        record = memory_store.get("t1").metadata.extra["interrupt"]
        assert record["status"] == "consumed"
        assert record["resolution"]["intent"] == "approve"
        assert record["resolution"]["feedback"] == "looks good"


class TestKeywordIntentClassifier:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("yes", Intent.APPROVE),
            ("Looks fine, proceed", Intent.APPROVE),
            ("no", Intent.REJECT),
            ("cancel this section", Intent.REJECT),
            ("edit the second paragraph", Intent.MODIFY),
            ("why is the budget so high", Intent.ASK_QUESTION),
            ("is this final?", Intent.ASK_QUESTION),
            ("hmm", Intent.MODIFY),
        ],
    )
    def test_classification(self, text, expected):
        assert KeywordIntentClassifier().classify(ResumeInput(action=text)) is expected

    def test_word_matching_avoids_substrings(self):
        # "know" must not read as "no"
        result = KeywordIntentClassifier().classify(ResumeInput(action="I know the answer"))
        assert result is Intent.MODIFY

    def test_custom_classifier_is_used(self, memory_store):
        class AlwaysReject:
            def classify(self, resume_input):
                return Intent.REJECT

        coordinator = InterruptCoordinator(memory_store, classifier=AlwaysReject())
        coordinator.interrupt("t1", _payload(), {})
        decision = coordinator.resume("t1", ResumeInput(action="sounds great"))
        assert decision.intent is Intent.REJECT
        assert decision.next_step is None

    def test_explicit_action_bypasses_classifier(self, memory_store):
        class Exploding:
            def classify(self, resume_input):
                raise AssertionError("classifier should not run")

        coordinator = InterruptCoordinator(memory_store, classifier=Exploding())
        coordinator.interrupt("t1", _payload(), {})
        assert coordinator.resume("t1", ResumeInput(action="Modify")).intent is Intent.MODIFY


def test_coordinator_works_with_fresh_store():
    store = MemoryCheckpointStore()
    coordinator = InterruptCoordinator(store)
    coordinator.interrupt("t9", _payload(), {"n": 1})
    assert store.list() == ["t9"]
