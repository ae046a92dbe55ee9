"""Tests for plan generation, validation and the fallback plan."""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from researchflow.errors import ResearchCancelledError
from researchflow.models.research import Priority, QueryComplexity
from researchflow.services.cancellation import CancellationToken
from researchflow.services.json_parsing import extract_json_object, strip_code_fences
from researchflow.services.planner import (
    ResearchPlanner,
    estimate_total_time,
    fallback_sub_questions,
    normalize_dependencies,
    parse_sub_questions,
    validate_sub_questions,
)


def _planner(output=None, side_effect=None):
    providers = MagicMock()
    providers.generate_sub_questions = AsyncMock(return_value=output, side_effect=side_effect)
    return ResearchPlanner(providers), providers


class TestParsing:
    def test_object_with_sub_questions(self):
        raw = 'Here is the plan:\n{"subQuestions": [{"question": "A long enough question?"}]}\nDone.'
        assert parse_sub_questions(raw) == [{"question": "A long enough question?"}]

    def test_bare_list_in_code_fence(self):
        raw = '```json\n[{"question": "First question here?"}, "stray", {"question": "Second one here?"}]\n```'
        assert [c["question"] for c in parse_sub_questions(raw)] == [
            "First question here?",
            "Second one here?",
        ]

    def test_bracketed_prose_before_plan_is_skipped(self):
        raw = (
            "Following guideline [1], here is the plan:\n"
            + json.dumps({"subQuestions": [{"question": "What changed in the last decade?"}]})
        )
        assert parse_sub_questions(raw) == [{"question": "What changed in the last decade?"}]

    def test_lists_without_questions_are_ignored(self):
        assert parse_sub_questions('See [1] and ["a", 2] for details.') is None
        raw = 'Ranked [3, 1]: [{"question": "Which option is cheaper to run?"}]'
        assert parse_sub_questions(raw) == [{"question": "Which option is cheaper to run?"}]

    def test_unparseable_output(self):
        assert parse_sub_questions("I could not think of anything") is None
        assert parse_sub_questions("") is None

    def test_json_helpers(self):
        assert strip_code_fences("```json\n{\"a\": 1}\n```") == '{"a": 1}'
        assert extract_json_object('noise {"a": {"b": 2}} trailing') == {"a": {"b": 2}}
        with pytest.raises(json.JSONDecodeError):
            extract_json_object("no json here")


class TestValidation:
    def test_dependency_normalization(self):
        assert normalize_dependencies([1, "2", "sq-3", True, "", 1, None]) == ("sq-1", "sq-2", "sq-3")
        assert normalize_dependencies("sq-1") == ()

    def test_short_questions_dropped_and_ids_sequential(self):
        candidates = [
            {"question": "too short"},
            {"question": "What is the first real question?", "priority": "HIGH", "dependsOn": []},
            {"question": 42},
            {"question": "What follows from the first answer?", "priority": "urgent", "dependsOn": [1]},
        ]
        sub_questions = validate_sub_questions(candidates, QueryComplexity.MODERATE)

        assert [sq.id for sq in sub_questions] == ["sq-1", "sq-2"]
        assert sub_questions[0].priority == Priority.HIGH
        assert sub_questions[1].priority == Priority.MEDIUM
        assert sub_questions[1].depends_on == ("sq-1",)
        assert sub_questions[0].reasoning == "Addresses a key aspect of the research query"

    def test_numeric_dependencies_resolve_against_reassigned_ids(self):
        candidates = [
            {"question": "too short"},
            {"question": "What is the first real question?"},
            {"question": "What follows from the first answer?", "dependsOn": [2]},
            {"question": "What follows from the second answer?", "dependsOn": [3]},
        ]
        sub_questions = validate_sub_questions(candidates, QueryComplexity.MODERATE)

        # Indices are read against the surviving ids, not the raw positions.
        assert [sq.depends_on for sq in sub_questions] == [(), ("sq-2",), ("sq-3",)]

    def test_truncated_to_tier_maximum(self):
        candidates = [{"question": f"Research question number {n} here?"} for n in range(8)]
        assert len(validate_sub_questions(candidates, QueryComplexity.SIMPLE)) == 2
        assert len(validate_sub_questions(candidates, QueryComplexity.COMPLEX)) == 5

    def test_estimate_total_time(self):
        sub_questions = validate_sub_questions(
            [
                {"question": "A high priority question?", "priority": "high"},
                {"question": "A low priority question?", "priority": "low"},
            ],
            QueryComplexity.MODERATE,
        )
        # 5 * 1.5 + 5 * 0.8 + (5 + 2 * 2)
        assert estimate_total_time(sub_questions) == 21

    def test_fallback_plan_shape(self):
        simple = fallback_sub_questions("What is Rust?", QueryComplexity.SIMPLE)
        assert [sq.id for sq in simple] == ["sq-1"]
        assert simple[0].question == "What is Rust?"
        assert simple[0].priority == Priority.HIGH

        moderate = fallback_sub_questions("Rust vs Go", QueryComplexity.MODERATE)
        assert [sq.id for sq in moderate] == ["sq-1", "sq-2"]
        assert moderate[1].question == "What are the key considerations and implications of Rust vs Go?"


class TestResearchPlanner:
    @pytest.mark.asyncio
    async def test_create_plan(self):
        output = json.dumps(
            {
                "subQuestions": [
                    {"question": "What is the history of the topic?", "priority": "high"},
                    {"question": "How is it used today in industry?", "dependsOn": [1]},
                ]
            }
        )
        planner, providers = _planner(output)

        plan = await planner.create_plan("The topic", "research-abc", QueryComplexity.MODERATE)

        assert plan.id == "plan-research-abc"
        assert plan.session_id == "research-abc"
        assert plan.original_query == "The topic"
        assert [sq.id for sq in plan.sub_questions] == ["sq-1", "sq-2"]
        assert plan.sub_questions[1].depends_on == ("sq-1",)
        assert plan.used_fallback is False
        assert plan.shortfall == 0
        providers.generate_sub_questions.assert_awaited_once_with("The topic", QueryComplexity.MODERATE)

    @pytest.mark.asyncio
    async def test_bracketed_prose_does_not_force_fallback(self):
        questions = [
            {"question": "What is the history of the topic?"},
            {"question": "How is the topic used in industry today?"},
            {"question": "What are the open research problems?"},
        ]
        output = "Following guideline [1], here is the plan:\n" + json.dumps({"subQuestions": questions})
        planner, _ = _planner(output)

        plan = await planner.create_plan("The topic", "research-abc", QueryComplexity.COMPLEX)

        assert plan.used_fallback is False
        assert [sq.question for sq in plan.sub_questions] == [q["question"] for q in questions]

    @pytest.mark.asyncio
    async def test_shortfall_is_recorded_not_padded(self):
        output = json.dumps([{"question": "Only one usable sub-question here?"}])
        planner, _ = _planner(output)

        plan = await planner.create_plan("Big topic", "research-abc", QueryComplexity.COMPLEX)

        assert len(plan.sub_questions) == 1
        assert plan.shortfall == 2
        assert plan.used_fallback is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "output,side_effect",
        [
            ("not json at all", None),
            ('{"subQuestions": [{"question": "short"}]}', None),
            (None, RuntimeError("provider exploded")),
        ],
    )
    async def test_failures_use_fallback(self, output, side_effect):
        planner, _ = _planner(output, side_effect)

        plan = await planner.create_plan("Rust vs Go", "research-abc", QueryComplexity.MODERATE)

        assert plan.used_fallback is True
        assert [sq.question for sq in plan.sub_questions][0] == "Rust vs Go"
        assert len(plan.sub_questions) == 2

    @pytest.mark.asyncio
    async def test_cancellation_is_not_absorbed(self):
        planner, _ = _planner("[]")
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(ResearchCancelledError):
            await planner.create_plan("q", "research-abc", QueryComplexity.SIMPLE, cancel_token=token)
