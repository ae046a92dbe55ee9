"""Tunable tables for classification, planning, cost and gap analysis."""

from __future__ import annotations

from researchflow.models.research import Priority, QueryComplexity

# Keyword indicators, matched as lowercase substrings.
SIMPLE_INDICATORS = ("what is", "who is", "define", "meaning of", "when did", "where is")
MODERATE_INDICATORS = (
    "compare",
    "difference between",
    "how does",
    "explain",
    "why does",
    "benefits of",
    "pros and cons",
)
COMPLEX_INDICATORS = (
    "analyze",
    "evaluate",
    "comprehensive",
    "in-depth",
    "deep dive",
    "research",
    "investigate",
    "thorough",
    "detailed comparison",
    "implications of",
    "impact on",
    "factors affecting",
)
CONJUNCTIONS = ("and", "as well as", "along with", "including")
TEMPORAL_WORDS = ("over time", "historically", "evolution", "trend")
QUANTITATIVE_WORDS = ("statistics", "data", "numbers", "metrics", "percentage")

SIMPLE_LENGTH_THRESHOLD = 50
MODERATE_LENGTH_THRESHOLD = 150

LLM_CLASSIFICATION_THRESHOLD = 0.8

ESTIMATED_TIME_BY_COMPLEXITY: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 10,
    QueryComplexity.MODERATE: 30,
    QueryComplexity.COMPLEX: 60,
}

# (min, max) sub-questions per tier
SUB_QUESTION_LIMITS: dict[QueryComplexity, tuple[int, int]] = {
    QueryComplexity.SIMPLE: (1, 2),
    QueryComplexity.MODERATE: (2, 3),
    QueryComplexity.COMPLEX: (3, 5),
}
MIN_QUESTION_LENGTH = 10
DEFAULT_REASONING = "Addresses a key aspect of the research query"

BASE_SECONDS_PER_SEARCH = 5
PRIORITY_TIME_WEIGHTS: dict[Priority, float] = {
    Priority.HIGH: 1.5,
    Priority.MEDIUM: 1.0,
    Priority.LOW: 0.8,
}

# USD per answered sub-question
COST_PER_QUERY: dict[str, float] = {
    "sonar": 0.005,
    "sonar-pro": 0.02,
}

MAX_QUERY_LENGTH = 2000

MAX_GAPS_TO_ADDRESS = 3
MIN_CONFIDENCE_TO_COMPLETE = 0.8
GAP_PRIORITY_WEIGHTS: dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

SYNTHESIS_PROGRESS_INTERVAL_S = 0.5
SYNTHESIS_EXPECTED_CHARS = 3000

FAILURE_BUDGET_EXCEEDED = "budget_exceeded"
FAILURE_ROUND_LIMIT = "round_limit_reached"
FAILURE_TIME_BUDGET = "time_budget_exceeded"
FAILURE_CANCELLED = "cancelled"


def recommended_model(complexity: QueryComplexity) -> str:
    return "sonar-pro" if complexity == QueryComplexity.COMPLEX else "sonar"
