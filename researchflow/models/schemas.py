from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from researchflow.models.research import QueryComplexity, SessionStatus


# --- Requests ---


class ResearchOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    force_complexity: Optional[QueryComplexity] = Field(default=None, alias="forceComplexity")
    skip_round2: bool = Field(default=False, alias="skipRound2")
    max_cost: Optional[float] = Field(default=None, alias="maxCost", gt=0)
    use_llm_classification: Optional[bool] = Field(default=None, alias="useLLMClassification")


class ResearchRequest(BaseModel):
    # Left as Any so empty / non-string queries reach the 400 path instead of 422.
    query: Any = None
    options: ResearchOptions = Field(default_factory=ResearchOptions)


# --- Responses ---


class HealthResponse(BaseModel):
    status: str
    service: str
    llm_configured: bool
    search_configured: bool
    ready: bool


class SessionResponse(BaseModel):
    id: str
    query: str
    status: SessionStatus
    complexity: Optional[QueryComplexity] = None
    current_round: int
    final_answer: Optional[str] = None
    sub_questions: list[dict[str, Any]] = []
    citations: list[dict[str, Any]] = []
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
