"""Shared fakes for pipeline tests."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from researchflow.config import Settings
from researchflow.models.research import QueryComplexity, ResearchNote, SubQuestion
from researchflow.services.retry import RetryPolicy
from researchflow.services.session_store import InMemorySessionStore
from researchflow.tools.perplexity_search import calculate_note_confidence, transform_citations


def synthesis_text(answer: str, *, gaps: Optional[list[dict]] = None, confidence: float = 0.9) -> str:
    analysis = json.dumps({"gaps": gaps or [], "confidence": confidence})
    return f"{answer}\n\n```json\n{analysis}\n```"


class FakeProviders:
    """In-memory stand-in for the OpenRouter + Perplexity providers.

    ``answers`` maps a sub-question id to either a list of citation URLs, an
    exception instance to raise, or the string ``"block"`` to hang until
    cancelled.
    """

    def __init__(
        self,
        *,
        sub_questions: Any = None,
        answers: Optional[dict[str, Any]] = None,
        syntheses: Optional[list[Any]] = None,
        classification: Optional[str] = None,
        llm_configured: bool = True,
        search_configured: bool = True,
    ):
        self.sub_questions = sub_questions
        self.answers = answers or {}
        self.syntheses = list(syntheses or [synthesis_text("Default answer [1].")])
        self.classification = classification
        self._llm = llm_configured
        self._search = search_configured

        self.answer_calls: list[dict[str, Any]] = []
        self.synthesis_prompts: list[str] = []
        self.classify_calls = 0
        self.plan_calls = 0
        self.started = asyncio.Event()

    @property
    def llm_configured(self) -> bool:
        return self._llm

    @property
    def search_configured(self) -> bool:
        return self._search

    async def classify_complexity(self, query: str) -> str:
        self.classify_calls += 1
        if self.classification is None:
            raise RuntimeError("no classifier configured")
        return self.classification

    async def generate_sub_questions(self, query: str, complexity: QueryComplexity) -> str:
        self.plan_calls += 1
        if isinstance(self.sub_questions, str):
            return self.sub_questions
        if self.sub_questions is None:
            return json.dumps({"subQuestions": [{"question": f"What is known about {query}?"}]})
        return json.dumps({"subQuestions": self.sub_questions})

    async def answer_sub_question(
        self,
        sub_question: SubQuestion,
        *,
        session_id: str,
        model: str,
        context: Optional[str] = None,
        on_progress: Optional[Callable[[int], Any]] = None,
    ) -> ResearchNote:
        self.answer_calls.append(
            {"id": sub_question.id, "model": model, "context": context, "question": sub_question.question}
        )
        self.started.set()
        behaviour = self.answers.get(sub_question.id, [f"https://example.com/{sub_question.id}"])
        if isinstance(behaviour, BaseException):
            raise behaviour
        if behaviour == "block":
            await asyncio.Event().wait()

        citations = transform_citations(list(behaviour))
        if on_progress is not None:
            on_progress(len(citations))
        content = f"Findings for {sub_question.question}"
        return ResearchNote(
            id=f"note-{session_id}-{sub_question.id}",
            session_id=session_id,
            sub_question_id=sub_question.id,
            content=content,
            citations=citations,
            confidence=calculate_note_confidence(content, citations),
        )

    async def synthesize(self, system: str, prompt: str, on_text=None) -> str:
        self.synthesis_prompts.append(prompt)
        result = self.syntheses.pop(0) if len(self.syntheses) > 1 else self.syntheses[0]
        if isinstance(result, BaseException):
            raise result
        if on_text is not None:
            on_text(result)
        return result


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        openrouter_api_key="test",
        perplexity_api_key="test",
        research_max_total_cost=0.5,
        research_timeout_ms=60000,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=0.001, max_delay=0.005, jitter_factor=0.0)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


async def collect(events, timeout: float = 5.0) -> list:
    async def _drain():
        return [event async for event in events]

    return await asyncio.wait_for(_drain(), timeout=timeout)
