from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from researchflow import llm_client
from researchflow.config import Settings, settings as default_settings
from researchflow.models.research import QueryComplexity, ResearchNote, SubQuestion
from researchflow.services.prompt_store import get_prompt, render_prompt
from researchflow.tools import perplexity_search


@runtime_checkable
class ResearchProviders(Protocol):
    """External capabilities the research pipeline depends on."""

    @property
    def llm_configured(self) -> bool: ...

    @property
    def search_configured(self) -> bool: ...

    async def classify_complexity(self, query: str) -> str: ...

    async def generate_sub_questions(self, query: str, complexity: QueryComplexity) -> str: ...

    async def answer_sub_question(
        self,
        sub_question: SubQuestion,
        *,
        session_id: str,
        model: str,
        context: Optional[str] = None,
        on_progress: Optional[Callable[[int], Any]] = None,
    ) -> ResearchNote: ...

    async def synthesize(
        self,
        system: str,
        prompt: str,
        on_text: Optional[Callable[[str], Any]] = None,
    ) -> str: ...


class OpenRouterPerplexityProviders:
    """LLM work through OpenRouter, sub-question answers through Perplexity."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    @property
    def llm_configured(self) -> bool:
        return self.settings.llm_configured

    @property
    def search_configured(self) -> bool:
        return self.settings.search_configured

    def search_model(self, tier: str) -> str:
        """Provider model id for a cost tier (``sonar`` / ``sonar-pro``)."""
        if tier == "sonar-pro":
            return self.settings.perplexity_pro_model
        return self.settings.perplexity_model

    async def classify_complexity(self, query: str) -> str:
        return await llm_client.complete(
            get_prompt("classifier.system_prompt"),
            query,
            max_tokens=200,
            caller="classifier",
        )

    async def generate_sub_questions(self, query: str, complexity: QueryComplexity) -> str:
        prompt = render_prompt(
            "planner.user_prompt",
            query=query,
            complexity=complexity.value,
            guidance=get_prompt(f"planner.guidance.{complexity.value}"),
        )
        return await llm_client.complete(
            get_prompt("planner.system_prompt"),
            prompt,
            model=llm_client.get_planner_model(),
            max_tokens=1000,
            caller="planner",
        )

    async def answer_sub_question(
        self,
        sub_question: SubQuestion,
        *,
        session_id: str,
        model: str,
        context: Optional[str] = None,
        on_progress: Optional[Callable[[int], Any]] = None,
    ) -> ResearchNote:
        return await perplexity_search.answer_question(
            sub_question.question,
            session_id=session_id,
            sub_question_id=sub_question.id,
            model=self.search_model(model),
            context=context,
            on_progress=on_progress,
        )

    async def synthesize(
        self,
        system: str,
        prompt: str,
        on_text: Optional[Callable[[str], Any]] = None,
    ) -> str:
        return await llm_client.stream_text(
            system,
            prompt,
            on_text,
            max_tokens=self.settings.synthesis_max_tokens,
            caller="synthesizer",
        )
