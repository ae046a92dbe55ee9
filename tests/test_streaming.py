"""Tests for the stream emitter and event payloads."""
import json

import pytest

from researchflow.errors import ErrorCode
from researchflow.models.events import EventType
from researchflow.models.research import (
    ClassificationResult,
    QueryComplexity,
    ResearchPlan,
    SessionMetrics,
    SubQuestion,
)
from researchflow.services import streaming
from researchflow.services.streaming import StreamEmitter


class TestStreamEmitter:
    @pytest.mark.asyncio
    async def test_sequence_is_monotonic_and_order_preserved(self):
        emitter = StreamEmitter("research-1")
        emitter.emit(*streaming.research_start("q"))
        emitter.emit(*streaming.synthesize_start(2))
        emitter.emit(*streaming.research_cancelled("stop"))
        emitter.close()

        events = [event async for event in emitter]
        assert [e.sequence for e in events] == [1, 2, 3]
        assert [e.type for e in events] == [
            EventType.RESEARCH_START,
            EventType.SYNTHESIZE_START,
            EventType.RESEARCH_CANCELLED,
        ]
        assert all(e.session_id == "research-1" for e in events)
        assert emitter.events_emitted == 3

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_drops_late_events(self):
        emitter = StreamEmitter("research-1")
        emitter.emit(*streaming.research_start("q"))
        emitter.close()
        emitter.close()

        assert emitter.closed
        assert emitter.emit(*streaming.research_start("late")) is None

        events = [event async for event in emitter]
        assert len(events) == 1

    def test_event_wire_format(self):
        emitter = StreamEmitter("research-1")
        event = emitter.emit(*streaming.search_progress("sq-1", 4))

        wire = event.format()
        assert wire.startswith("event: search_progress\ndata: ")
        assert wire.endswith("\n\n")
        payload = json.loads(wire.split("data: ", 1)[1])
        assert payload == {
            "type": "search_progress",
            "session_id": "research-1",
            "sequence": 1,
            "timestamp": event.timestamp,
            "data": {"sub_question_id": "sq-1", "sources_found": 4},
        }

    def test_terminal_types(self):
        terminal = {t for t in EventType if t.is_terminal}
        assert terminal == {EventType.RESEARCH_COMPLETE, EventType.RESEARCH_CANCELLED, EventType.ERROR}


class TestPayloads:
    def test_classified(self):
        result = ClassificationResult(
            complexity=QueryComplexity.MODERATE,
            confidence=0.7,
            reasoning="two things",
            estimated_time=30,
            suggested_model="sonar",
        )
        event_type, data = streaming.classified(result)
        assert event_type == EventType.CLASSIFY
        assert data["complexity"] == "moderate"
        assert data["suggested_model"] == "sonar"

    def test_plan_created(self):
        plan = ResearchPlan(
            id="plan-research-1",
            session_id="research-1",
            original_query="q",
            sub_questions=(
                SubQuestion(id="sq-1", question="First?", reasoning="r"),
                SubQuestion(id="sq-2", question="Second?", reasoning="r", depends_on=("sq-1",)),
            ),
            total_estimated_time=20,
        )
        event_type, data = streaming.plan_created(plan)
        assert event_type == EventType.PLAN
        assert data["sub_questions"][1]["depends_on"] == ["sq-1"]
        assert data["sub_questions"][0]["status"] == "pending"
        json.dumps(data)

    def test_progress_rounded_and_clamped(self):
        assert streaming.synthesize_progress(33.333)[1]["progress"] == 33.3
        assert streaming.synthesize_progress(140)[1]["progress"] == 100.0
        assert streaming.synthesize_progress(-3)[1]["progress"] == 0.0

    def test_error_payload(self):
        event_type, data = streaming.error(ErrorCode.TIMEOUT, detail="took 130s")
        assert event_type == EventType.ERROR
        assert data == {
            "code": "TIMEOUT",
            "message": "Research took too long. Returning partial results.",
            "recoverable": True,
            "detail": "took 130s",
        }
        assert streaming.error(ErrorCode.UNKNOWN)[1]["recoverable"] is False

    def test_research_complete_serializes_metrics(self):
        _, data = streaming.research_complete("answer", [], 1200, SessionMetrics(session_id="research-1"))
        assert data["total_time_ms"] == 1200
        assert data["metrics"]["session_id"] == "research-1"
        json.dumps(data)
