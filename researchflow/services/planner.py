"""Decompose a research query into dependency-ordered sub-questions."""

from __future__ import annotations

import math
from typing import Any, Optional

from researchflow import constants as c
from researchflow.errors import PlanningError, ResearchCancelledError, RetryAbortedError
from researchflow.models.research import (
    Priority,
    QueryComplexity,
    ResearchPlan,
    SubQuestion,
)
from researchflow.services.cancellation import CancellationToken
from researchflow.services.json_parsing import find_json_value
from researchflow.services.logger import log_research_step, logger


def _has_question(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("question"), str)


def _is_plan_object(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("subQuestions"), list)


def _is_question_list(value: Any) -> bool:
    return isinstance(value, list) and any(_has_question(item) for item in value)


def parse_sub_questions(raw_text: str) -> Optional[list[dict[str, Any]]]:
    """Raw candidate dicts from generator output, or None when nothing parseable is found.

    A ``{"subQuestions": [...]}`` object wins over a bare list; bare lists
    count only when they hold question dicts, so bracketed prose is skipped.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        return None
    found = find_json_value(raw_text, _is_plan_object)
    if found is not None:
        items = found[2]["subQuestions"]
    else:
        found = find_json_value(raw_text, _is_question_list)
        if found is None:
            return None
        items = found[2]
    return [item for item in items if isinstance(item, dict)]


def _normalize_priority(value: Any) -> Priority:
    if isinstance(value, str):
        try:
            return Priority(value.strip().lower())
        except ValueError:
            pass
    return Priority.MEDIUM


def _normalize_dependency(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return f"sq-{value}"
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if stripped.isdigit():
            return f"sq-{int(stripped)}"
        return stripped
    return None


def normalize_dependencies(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    seen: list[str] = []
    for entry in raw:
        dep = _normalize_dependency(entry)
        if dep is not None and dep not in seen:
            seen.append(dep)
    return tuple(seen)


def validate_sub_questions(
    candidates: list[dict[str, Any]],
    complexity: QueryComplexity,
) -> list[SubQuestion]:
    _, maximum = c.SUB_QUESTION_LIMITS[complexity]
    valid = [
        candidate
        for candidate in candidates
        if isinstance(candidate.get("question"), str)
        and len(candidate["question"].strip()) > c.MIN_QUESTION_LENGTH
    ][:maximum]

    sub_questions: list[SubQuestion] = []
    for index, candidate in enumerate(valid, start=1):
        reasoning = candidate.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            reasoning = c.DEFAULT_REASONING
        sub_questions.append(
            SubQuestion(
                id=f"sq-{index}",
                question=candidate["question"].strip(),
                reasoning=reasoning.strip(),
                priority=_normalize_priority(candidate.get("priority")),
                depends_on=normalize_dependencies(candidate.get("dependsOn")),
            )
        )
    return sub_questions


def estimate_total_time(sub_questions: list[SubQuestion] | tuple[SubQuestion, ...]) -> int:
    search_time = sum(
        c.BASE_SECONDS_PER_SEARCH * c.PRIORITY_TIME_WEIGHTS[sq.priority] for sq in sub_questions
    )
    synthesis_time = 5 + 2 * len(sub_questions)
    return math.ceil(search_time + synthesis_time)


def fallback_sub_questions(query: str, complexity: QueryComplexity) -> list[SubQuestion]:
    sub_questions = [
        SubQuestion(
            id="sq-1",
            question=query,
            reasoning="Direct search for the research query",
            priority=Priority.HIGH,
        )
    ]
    if complexity != QueryComplexity.SIMPLE:
        sub_questions.append(
            SubQuestion(
                id="sq-2",
                question=f"What are the key considerations and implications of {query}?",
                reasoning="Exploring implications and considerations",
                priority=Priority.MEDIUM,
            )
        )
    return sub_questions


class ResearchPlanner:
    def __init__(self, providers: Any):
        self.providers = providers

    async def create_plan(
        self,
        query: str,
        session_id: str,
        complexity: QueryComplexity,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ResearchPlan:
        """Build a plan; generator failures of any kind produce the fallback plan."""
        used_fallback = False
        shortfall = 0
        try:
            sub_questions = await self._generate(query, complexity, cancel_token)
            minimum, _ = c.SUB_QUESTION_LIMITS[complexity]
            if len(sub_questions) < minimum:
                shortfall = minimum - len(sub_questions)
                logger.warning(
                    f"Planner produced {len(sub_questions)} valid sub-questions, "
                    f"minimum for {complexity.value} is {minimum}"
                )
        except (ResearchCancelledError, RetryAbortedError):
            raise
        except Exception as exc:
            logger.warning(f"Planning failed, using fallback plan: {exc}")
            sub_questions = fallback_sub_questions(query, complexity)
            used_fallback = True

        plan = ResearchPlan(
            id=f"plan-{session_id}",
            session_id=session_id,
            original_query=query,
            sub_questions=tuple(sub_questions),
            total_estimated_time=estimate_total_time(sub_questions),
            shortfall=shortfall,
            used_fallback=used_fallback,
        )
        log_research_step(
            session_id,
            "plan",
            "completed",
            {
                "sub_questions": len(plan.sub_questions),
                "used_fallback": used_fallback,
                "shortfall": shortfall,
            },
        )
        return plan

    async def _generate(
        self,
        query: str,
        complexity: QueryComplexity,
        cancel_token: Optional[CancellationToken],
    ) -> list[SubQuestion]:
        call = self.providers.generate_sub_questions(query, complexity)
        raw_text = await (cancel_token.race(call) if cancel_token else call)

        candidates = parse_sub_questions(raw_text)
        if candidates is None:
            raise PlanningError("No JSON sub-question list in planner output")
        sub_questions = validate_sub_questions(candidates, complexity)
        if not sub_questions:
            raise PlanningError("Planner output contained no valid sub-questions")
        return sub_questions
