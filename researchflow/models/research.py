from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueryComplexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SubQuestionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubQuestionStatus.COMPLETED, SubQuestionStatus.FAILED)


# Allowed forward moves; anything else is rejected by the scheduler.
STATUS_TRANSITIONS: dict[SubQuestionStatus, frozenset[SubQuestionStatus]] = {
    SubQuestionStatus.PENDING: frozenset({SubQuestionStatus.RUNNING, SubQuestionStatus.FAILED}),
    SubQuestionStatus.RUNNING: frozenset({SubQuestionStatus.COMPLETED, SubQuestionStatus.FAILED}),
    SubQuestionStatus.COMPLETED: frozenset(),
    SubQuestionStatus.FAILED: frozenset(),
}


class SessionStatus(StrEnum):
    INITIALIZING = "initializing"
    CLASSIFYING = "classifying"
    PLANNING = "planning"
    SEARCHING = "searching"
    SYNTHESIZING = "synthesizing"
    ROUND2_SEARCHING = "round2_searching"
    ROUND2_SYNTHESIZING = "round2_synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    complexity: QueryComplexity
    confidence: float
    reasoning: str
    estimated_time: int  # seconds
    suggested_model: str


class SubQuestion(BaseModel):
    """One independently answerable piece of the original query."""

    model_config = ConfigDict(frozen=True)

    id: str
    question: str
    reasoning: str
    priority: Priority = Priority.MEDIUM
    depends_on: tuple[str, ...] = ()
    status: SubQuestionStatus = SubQuestionStatus.PENDING
    failure_reason: Optional[str] = None


class ResearchPlan(BaseModel):
    """Immutable plan snapshot. Status changes go through ``with_status``."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    original_query: str
    sub_questions: tuple[SubQuestion, ...]
    created_at: datetime = Field(default_factory=utcnow)
    total_estimated_time: int
    shortfall: int = 0
    used_fallback: bool = False

    def get(self, sub_question_id: str) -> SubQuestion | None:
        for sub_question in self.sub_questions:
            if sub_question.id == sub_question_id:
                return sub_question
        return None

    def with_status(
        self,
        sub_question_id: str,
        status: SubQuestionStatus,
        reason: str | None = None,
    ) -> ResearchPlan:
        updated = tuple(
            sq.model_copy(update={"status": status, "failure_reason": reason})
            if sq.id == sub_question_id
            else sq
            for sq in self.sub_questions
        )
        return self.model_copy(update={"sub_questions": updated})

    def ids_with_status(self, *statuses: SubQuestionStatus) -> list[str]:
        return [sq.id for sq in self.sub_questions if sq.status in statuses]


class Citation(BaseModel):
    id: str
    url: str
    title: str
    domain: str
    snippet: Optional[str] = None
    favicon: Optional[str] = None


class ResearchNote(BaseModel):
    """Answer attached to a completed sub-question."""

    id: str
    session_id: str
    sub_question_id: str
    content: str
    citations: list[Citation] = []
    confidence: float = 0.5
    created_at: datetime = Field(default_factory=utcnow)


class ResearchGap(BaseModel):
    id: str
    session_id: str
    round: int
    description: str
    suggested_query: str
    priority: Priority = Priority.MEDIUM
    resolved: bool = False


class SynthesisOutput(BaseModel):
    answer: str
    citations: list[Citation] = []
    gaps: list[ResearchGap] = []
    confidence: float = 0.0


class ExecutionOutcome(BaseModel):
    sub_question_id: str
    success: bool
    note: Optional[ResearchNote] = None
    error: Optional[str] = None
    retryable: bool = False
    attempts: int = 0
    duration_ms: int = 0


class SessionMetrics(BaseModel):
    session_id: str
    total_duration_ms: int = 0
    classification_duration_ms: int = 0
    planning_duration_ms: int = 0
    search_duration_ms: int = 0
    synthesis_duration_ms: int = 0
    round2_duration_ms: Optional[int] = None
    total_queries: int = 0
    total_citations: int = 0
    gaps_found: int = 0
    gaps_resolved: int = 0
    parallelization_efficiency: float = 0.0
    estimated_cost_usd: float = 0.0


class ResearchSession(BaseModel):
    id: str
    query: str
    status: SessionStatus = SessionStatus.INITIALIZING
    complexity: Optional[QueryComplexity] = None
    plan: Optional[ResearchPlan] = None
    round2_plan: Optional[ResearchPlan] = None
    notes: list[ResearchNote] = []
    gaps: list[ResearchGap] = []
    current_round: int = 1
    final_answer: Optional[str] = None
    citations: list[Citation] = []
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def update(self, **changes: Any) -> ResearchSession:
        return self.model_copy(update=changes)
