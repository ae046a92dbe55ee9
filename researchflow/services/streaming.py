from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Optional

from researchflow.errors import ERROR_MESSAGES, RECOVERABLE_CODES, ErrorCode
from researchflow.models.events import EventType, ResearchStreamEvent
from researchflow.models.research import (
    Citation,
    ClassificationResult,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    SessionMetrics,
    SubQuestion,
)
from researchflow.services.logger import logger

EventDraft = tuple[EventType, dict[str, Any]]

_END = object()


class StreamEmitter:
    """Ordered, single-consumer event channel for one research session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events_emitted(self) -> int:
        return self._sequence

    def emit(
        self,
        event_type: EventType,
        data: Optional[dict[str, Any]] = None,
    ) -> ResearchStreamEvent | None:
        if self._closed:
            logger.warning(f"Dropping {event_type.value} for {self.session_id}: stream closed")
            return None
        self._sequence += 1
        event = ResearchStreamEvent(
            type=event_type,
            session_id=self.session_id,
            sequence=self._sequence,
            timestamp=int(time.time() * 1000),
            data=data or {},
        )
        self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[ResearchStreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item


# --- Event payloads ---


def research_start(query: str, **kwargs: Any) -> EventDraft:
    return EventType.RESEARCH_START, {"query": query, **kwargs}


def classified(result: ClassificationResult) -> EventDraft:
    return EventType.CLASSIFY, result.model_dump(mode="json")


def plan_created(plan: ResearchPlan) -> EventDraft:
    return EventType.PLAN, {
        "id": plan.id,
        "original_query": plan.original_query,
        "sub_questions": [sub_question_payload(sq) for sq in plan.sub_questions],
        "total_estimated_time": plan.total_estimated_time,
        "used_fallback": plan.used_fallback,
        "shortfall": plan.shortfall,
        "created_at": plan.created_at.isoformat(),
    }


def sub_question_payload(sub_question: SubQuestion) -> dict[str, Any]:
    return {
        "id": sub_question.id,
        "question": sub_question.question,
        "reasoning": sub_question.reasoning,
        "priority": sub_question.priority.value,
        "depends_on": list(sub_question.depends_on),
        "status": sub_question.status.value,
    }


def search_start(sub_question: SubQuestion, round: int = 1) -> EventDraft:
    return EventType.SEARCH_START, {
        "sub_question_id": sub_question.id,
        "question": sub_question.question,
        "round": round,
    }


def search_progress(sub_question_id: str, sources_found: int) -> EventDraft:
    return EventType.SEARCH_PROGRESS, {
        "sub_question_id": sub_question_id,
        "sources_found": sources_found,
    }


def search_complete(note: ResearchNote, round: int = 1, duration_ms: int | None = None) -> EventDraft:
    data: dict[str, Any] = {
        "sub_question_id": note.sub_question_id,
        "note": note.model_dump(mode="json"),
        "citations_count": len(note.citations),
        "round": round,
    }
    if duration_ms is not None:
        data["duration_ms"] = duration_ms
    return EventType.SEARCH_COMPLETE, data


def search_failed(
    sub_question_id: str,
    error: str,
    *,
    retryable: bool = False,
    attempts: int = 0,
    reason: str | None = None,
    round: int = 1,
) -> EventDraft:
    data: dict[str, Any] = {
        "sub_question_id": sub_question_id,
        "error": error,
        "retryable": retryable,
        "attempts": attempts,
        "round": round,
    }
    if reason:
        data["reason"] = reason
    return EventType.SEARCH_FAILED, data


def synthesize_start(notes_count: int, round: int = 1) -> EventDraft:
    return EventType.SYNTHESIZE_START, {"notes_count": notes_count, "round": round}


def synthesize_progress(progress: float, partial_answer: str | None = None, round: int = 1) -> EventDraft:
    data: dict[str, Any] = {"progress": round_progress(progress), "round": round}
    if partial_answer is not None:
        data["partial_answer"] = partial_answer
    return EventType.SYNTHESIZE_PROGRESS, data


def round_progress(progress: float) -> float:
    return float(f"{max(0.0, min(100.0, progress)):.1f}")


def gap_found(gap: ResearchGap) -> EventDraft:
    return EventType.GAP_FOUND, gap.model_dump(mode="json")


def round2_start(gaps: list[ResearchGap], queries: list[str]) -> EventDraft:
    return EventType.ROUND2_START, {
        "gaps": [gap.model_dump(mode="json") for gap in gaps],
        "queries": queries,
    }


def research_complete(
    answer: str,
    citations: list[Citation],
    total_time_ms: int,
    metrics: SessionMetrics,
    confidence: float | None = None,
) -> EventDraft:
    data: dict[str, Any] = {
        "answer": answer,
        "citations": [citation.model_dump(mode="json") for citation in citations],
        "total_time_ms": total_time_ms,
        "metrics": metrics.model_dump(mode="json"),
    }
    if confidence is not None:
        data["confidence"] = confidence
    return EventType.RESEARCH_COMPLETE, data


def research_cancelled(reason: str | None = None) -> EventDraft:
    data: dict[str, Any] = {"message": ERROR_MESSAGES[ErrorCode.CANCELLED]}
    if reason:
        data["reason"] = reason
    return EventType.RESEARCH_CANCELLED, data


def error(code: ErrorCode, message: str | None = None, *, detail: str | None = None) -> EventDraft:
    data: dict[str, Any] = {
        "code": code.value,
        "message": message or ERROR_MESSAGES[code],
        "recoverable": code in RECOVERABLE_CODES,
    }
    if detail:
        data["detail"] = detail
    return EventType.ERROR, data
