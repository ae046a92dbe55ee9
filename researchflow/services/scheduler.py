"""Dependency-aware dispatch over a research plan.

The scheduler is the only writer of the plan snapshot. Every status change
goes through ``transition``, which swaps in a new immutable ``ResearchPlan``.
Dispatch is wave based: ``next_batch`` is called again only after the previous
batch has fully settled.
"""

from __future__ import annotations

import time
from typing import Callable, Iterable, Optional

from researchflow import constants as c
from researchflow.errors import InvalidTransitionError
from researchflow.models.research import (
    STATUS_TRANSITIONS,
    ResearchPlan,
    SubQuestion,
    SubQuestionStatus,
)
from researchflow.services.logger import log_research_step, logger

_COST_EPSILON = 1e-9


class DependencyScheduler:
    def __init__(
        self,
        plan: ResearchPlan,
        *,
        max_batches: int = 5,
        max_cost: float = 0.5,
        cost_per_query: float = 0.005,
        time_budget_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._plan = plan
        self.max_batches = max(int(max_batches), 1)
        self.max_cost = max_cost
        self.cost_per_query = cost_per_query
        self.time_budget_s = time_budget_s
        self._clock = clock
        self._started_at = clock()

        self.batches_dispatched = 0
        self.spent = 0.0
        self.stop_reason: Optional[str] = None
        # Sub-questions failed by the most recent stop, for event reporting.
        self.stopped: list[SubQuestion] = []

    @property
    def plan(self) -> ResearchPlan:
        return self._plan

    @property
    def session_id(self) -> str:
        return self._plan.session_id

    @property
    def remaining_budget(self) -> float:
        return max(self.max_cost - self.spent, 0.0)

    @property
    def resolved_ids(self) -> set[str]:
        return set(
            self._plan.ids_with_status(SubQuestionStatus.COMPLETED, SubQuestionStatus.FAILED)
        )

    @property
    def pending(self) -> list[SubQuestion]:
        return [sq for sq in self._plan.sub_questions if sq.status == SubQuestionStatus.PENDING]

    @property
    def is_finished(self) -> bool:
        return not any(
            sq.status in (SubQuestionStatus.PENDING, SubQuestionStatus.RUNNING)
            for sq in self._plan.sub_questions
        )

    def ready_batch(self, completed_ids: Iterable[str]) -> list[SubQuestion]:
        done = set(completed_ids)
        return [
            sq
            for sq in self._plan.sub_questions
            if sq.status == SubQuestionStatus.PENDING and all(dep in done for dep in sq.depends_on)
        ]

    def topological_order(self) -> list[SubQuestion]:
        """All sub-questions in dependency order.

        When nothing is ready (cycle or dangling reference) the rest are
        appended in plan order.
        """
        ordered: list[SubQuestion] = []
        ordered_ids: set[str] = set()
        remaining = list(self._plan.sub_questions)

        while remaining:
            ready = [sq for sq in remaining if all(dep in ordered_ids for dep in sq.depends_on)]
            if not ready:
                logger.warning(
                    f"Unresolved dependencies in {self._plan.id}, "
                    f"appending {len(remaining)} sub-questions in plan order"
                )
                ordered.extend(remaining)
                break
            for sq in ready:
                ordered.append(sq)
                ordered_ids.add(sq.id)
            remaining = [sq for sq in remaining if sq.id not in ordered_ids]
        return ordered

    def transition(
        self,
        sub_question_id: str,
        status: SubQuestionStatus,
        reason: Optional[str] = None,
    ) -> SubQuestion:
        current = self._plan.get(sub_question_id)
        if current is None:
            raise KeyError(f"Unknown sub-question: {sub_question_id}")
        if status not in STATUS_TRANSITIONS[current.status]:
            raise InvalidTransitionError(sub_question_id, current.status.value, status.value)

        failure_reason = reason if status == SubQuestionStatus.FAILED else None
        self._plan = self._plan.with_status(sub_question_id, status, failure_reason)
        log_research_step(
            self.session_id,
            f"sub_question:{sub_question_id}",
            status.value,
            {"reason": failure_reason} if failure_reason else None,
        )
        return self._plan.get(sub_question_id)

    def record_spend(self, queries: int = 1) -> float:
        self.spent += queries * self.cost_per_query
        return self.spent

    def affordable_queries(self) -> int:
        if self.cost_per_query <= 0:
            return len(self.pending)
        return int((self.max_cost - self.spent + _COST_EPSILON) // self.cost_per_query)

    def stop(self, reason: str) -> list[SubQuestion]:
        """Fail every pending sub-question with ``reason``; running ones are left alone."""
        self.stop_reason = reason
        failed = [self.transition(sq.id, SubQuestionStatus.FAILED, reason) for sq in self.pending]
        self.stopped = failed
        if failed:
            logger.info(f"Scheduler stopped ({reason}), failed {len(failed)} pending sub-questions")
        return failed

    def next_batch(self) -> list[SubQuestion]:
        """Next wave to dispatch, or ``[]`` when done or stopped.

        Call only after the previous wave settled.
        """
        self.stopped = []
        if self.stop_reason is not None or not self.pending:
            return []

        if self.batches_dispatched >= self.max_batches:
            self.stop(c.FAILURE_ROUND_LIMIT)
            return []
        if self.time_budget_s is not None and self._clock() - self._started_at > self.time_budget_s:
            self.stop(c.FAILURE_TIME_BUDGET)
            return []

        affordable = self.affordable_queries()
        if affordable <= 0:
            self.stop(c.FAILURE_BUDGET_EXCEEDED)
            return []

        batch = self.ready_batch(self.resolved_ids)
        if not batch:
            batch = self.pending
            logger.warning(
                f"No ready sub-questions in {self._plan.id} (cycle or dangling dependency), "
                f"dispatching {len(batch)} remaining in plan order"
            )

        if len(batch) > affordable:
            logger.info(f"Budget allows {affordable} of {len(batch)} ready sub-questions")
            batch = batch[:affordable]

        self.batches_dispatched += 1
        return batch
