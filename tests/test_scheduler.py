"""Tests for dependency-aware dispatch and budget enforcement."""
import pytest

from researchflow.errors import InvalidTransitionError
from researchflow.models.research import ResearchPlan, SubQuestion, SubQuestionStatus
from researchflow.services.scheduler import DependencyScheduler


def _plan(*specs):
    """specs: (id, depends_on) pairs."""
    return ResearchPlan(
        id="plan-research-test",
        session_id="research-test",
        original_query="test query",
        sub_questions=tuple(
            SubQuestion(id=sq_id, question=f"Question for {sq_id}?", reasoning="r", depends_on=tuple(deps))
            for sq_id, deps in specs
        ),
        total_estimated_time=10,
    )


def _settle(scheduler, batch, status=SubQuestionStatus.COMPLETED):
    for sq in batch:
        scheduler.transition(sq.id, SubQuestionStatus.RUNNING)
        scheduler.record_spend(1)
        scheduler.transition(sq.id, status, "boom" if status == SubQuestionStatus.FAILED else None)


def _ids(batch):
    return [sq.id for sq in batch]


class TestReadiness:
    def test_ready_batch_respects_dependencies(self):
        scheduler = DependencyScheduler(_plan(("sq-1", []), ("sq-2", []), ("sq-3", ["sq-1", "sq-2"])))
        assert _ids(scheduler.ready_batch(set())) == ["sq-1", "sq-2"]
        assert _ids(scheduler.ready_batch({"sq-1"})) == ["sq-1", "sq-2"]

    def test_waves_follow_dependency_chain(self):
        scheduler = DependencyScheduler(_plan(("sq-1", []), ("sq-2", ["sq-1"]), ("sq-3", ["sq-2"])))
        waves = []
        while True:
            batch = scheduler.next_batch()
            if not batch:
                break
            waves.append(_ids(batch))
            _settle(scheduler, batch)
        assert waves == [["sq-1"], ["sq-2"], ["sq-3"]]
        assert scheduler.is_finished
        assert scheduler.stop_reason is None

    def test_failed_dependency_still_unblocks(self):
        scheduler = DependencyScheduler(_plan(("sq-1", []), ("sq-2", ["sq-1"])))
        _settle(scheduler, scheduler.next_batch(), SubQuestionStatus.FAILED)
        assert _ids(scheduler.next_batch()) == ["sq-2"]

    def test_cycle_degrades_to_dispatching_remaining(self):
        scheduler = DependencyScheduler(_plan(("sq-1", ["sq-2"]), ("sq-2", ["sq-1"]), ("sq-3", ["sq-9"])))
        assert _ids(scheduler.next_batch()) == ["sq-1", "sq-2", "sq-3"]

    def test_topological_order(self):
        scheduler = DependencyScheduler(_plan(("sq-1", ["sq-3"]), ("sq-2", []), ("sq-3", ["sq-2"])))
        assert _ids(scheduler.topological_order()) == ["sq-2", "sq-3", "sq-1"]

    def test_topological_order_appends_cycles(self):
        scheduler = DependencyScheduler(_plan(("sq-1", ["sq-2"]), ("sq-2", ["sq-1"]), ("sq-3", [])))
        assert _ids(scheduler.topological_order()) == ["sq-3", "sq-1", "sq-2"]


class TestTransitions:
    def test_status_only_moves_forward(self):
        scheduler = DependencyScheduler(_plan(("sq-1", [])))
        with pytest.raises(InvalidTransitionError):
            scheduler.transition("sq-1", SubQuestionStatus.COMPLETED)

        scheduler.transition("sq-1", SubQuestionStatus.RUNNING)
        scheduler.transition("sq-1", SubQuestionStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            scheduler.transition("sq-1", SubQuestionStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            scheduler.transition("sq-1", SubQuestionStatus.FAILED)

    def test_unknown_sub_question(self):
        scheduler = DependencyScheduler(_plan(("sq-1", [])))
        with pytest.raises(KeyError):
            scheduler.transition("sq-404", SubQuestionStatus.RUNNING)

    def test_plan_snapshots_are_immutable(self):
        scheduler = DependencyScheduler(_plan(("sq-1", [])))
        before = scheduler.plan
        scheduler.transition("sq-1", SubQuestionStatus.RUNNING)
        assert before.get("sq-1").status == SubQuestionStatus.PENDING
        assert scheduler.plan.get("sq-1").status == SubQuestionStatus.RUNNING

    def test_failure_reason_recorded(self):
        scheduler = DependencyScheduler(_plan(("sq-1", [])))
        scheduler.transition("sq-1", SubQuestionStatus.FAILED, "provider error")
        assert scheduler.plan.get("sq-1").failure_reason == "provider error"


class TestBudget:
    def test_batch_truncated_to_affordable_count(self):
        plan = _plan(("sq-1", []), ("sq-2", []), ("sq-3", []), ("sq-4", []))
        scheduler = DependencyScheduler(plan, max_cost=0.04, cost_per_query=0.02)

        batch = scheduler.next_batch()
        assert _ids(batch) == ["sq-1", "sq-2"]
        _settle(scheduler, batch)

        assert scheduler.next_batch() == []
        assert scheduler.stop_reason == "budget_exceeded"
        assert _ids(scheduler.stopped) == ["sq-3", "sq-4"]
        assert all(sq.failure_reason == "budget_exceeded" for sq in scheduler.stopped)
        assert scheduler.spent == pytest.approx(0.04)
        assert scheduler.is_finished

    def test_spend_never_exceeds_budget(self):
        plan = _plan(*[(f"sq-{n}", []) for n in range(1, 6)])
        scheduler = DependencyScheduler(plan, max_cost=0.015, cost_per_query=0.005)
        dispatched = 0
        while batch := scheduler.next_batch():
            dispatched += len(batch)
            _settle(scheduler, batch)
        assert dispatched == 3
        assert scheduler.spent <= 0.015 + 1e-9

    def test_round_limit(self):
        scheduler = DependencyScheduler(_plan(("sq-1", []), ("sq-2", ["sq-1"])), max_batches=1)
        _settle(scheduler, scheduler.next_batch())
        assert scheduler.next_batch() == []
        assert scheduler.stop_reason == "round_limit_reached"
        assert _ids(scheduler.stopped) == ["sq-2"]

    def test_time_budget(self):
        now = [0.0]
        scheduler = DependencyScheduler(
            _plan(("sq-1", []), ("sq-2", ["sq-1"])),
            time_budget_s=10,
            clock=lambda: now[0],
        )
        _settle(scheduler, scheduler.next_batch())
        now[0] = 11.0
        assert scheduler.next_batch() == []
        assert scheduler.stop_reason == "time_budget_exceeded"

    def test_stopped_scheduler_stays_stopped(self):
        scheduler = DependencyScheduler(_plan(("sq-1", [])), max_cost=0.001, cost_per_query=0.005)
        assert scheduler.next_batch() == []
        assert scheduler.stop_reason == "budget_exceeded"
        assert scheduler.next_batch() == []
        assert scheduler.stopped == []
