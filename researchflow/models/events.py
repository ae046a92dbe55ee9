from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    RESEARCH_START = "research_start"
    CLASSIFY = "classify"
    PLAN = "plan"
    SEARCH_START = "search_start"
    SEARCH_PROGRESS = "search_progress"
    SEARCH_COMPLETE = "search_complete"
    SEARCH_FAILED = "search_failed"
    SYNTHESIZE_START = "synthesize_start"
    SYNTHESIZE_PROGRESS = "synthesize_progress"
    GAP_FOUND = "gap_found"
    ROUND2_START = "round2_start"
    RESEARCH_COMPLETE = "research_complete"
    RESEARCH_CANCELLED = "research_cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            EventType.RESEARCH_COMPLETE,
            EventType.RESEARCH_CANCELLED,
            EventType.ERROR,
        )


@dataclass(frozen=True, slots=True)
class ResearchStreamEvent:
    type: EventType
    session_id: str
    sequence: int
    timestamp: int  # epoch milliseconds
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def format(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_dict())}\n\n"
