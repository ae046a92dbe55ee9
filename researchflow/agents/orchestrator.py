from __future__ import annotations

import asyncio
import functools
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from researchflow import constants as c
from researchflow.config import Settings, settings as default_settings
from researchflow.errors import (
    ErrorCode,
    InvalidQueryError,
    NotConfiguredError,
    ResearchCancelledError,
    ResearchError,
    RetryAbortedError,
)
from researchflow.models.events import ResearchStreamEvent
from researchflow.models.research import (
    ClassificationResult,
    Priority,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    ResearchSession,
    SessionMetrics,
    SessionStatus,
    SubQuestion,
    SynthesisOutput,
)
from researchflow.models.schemas import ResearchOptions
from researchflow.services import streaming
from researchflow.services.cancellation import CancellationToken
from researchflow.services.classifier import QueryClassifier
from researchflow.services.executor import ExecutionEngine
from researchflow.services.logger import log_event, log_research_step, logger
from researchflow.services.planner import ResearchPlanner, estimate_total_time
from researchflow.services.retry import RetryPolicy
from researchflow.services.scheduler import DependencyScheduler
from researchflow.services.session_store import InMemorySessionStore, get_session_store
from researchflow.services.streaming import StreamEmitter
from researchflow.services.synthesizer import (
    Synthesizer,
    merge_citations,
    renumber_citations,
    round2_queries,
    should_proceed_to_round2,
)
from researchflow.tools.research_provider import OpenRouterPerplexityProviders, ResearchProviders

# How long a stopped consumer waits for the pipeline task to wind down.
CANCEL_GRACE_S = 5.0


def new_session_id() -> str:
    return f"research-{uuid4().hex[:12]}"


def _ms_since(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ResearchOrchestrator:
    """Coordinates one research session per ``research()`` call.

    Flow:
      1. Classify the query into a complexity tier
      2. Plan dependency-linked sub-questions
      3. Dispatch ready waves through the execution engine under the budget
      4. Synthesize the answers and look for gaps
      5. Optionally run a second round of searches for the top gaps
      6. Emit ``research_complete`` (or ``error`` / ``research_cancelled``)

    Every stage reports through a ``StreamEmitter``; the caller iterates it.
    """

    def __init__(
        self,
        providers: Optional[ResearchProviders] = None,
        *,
        settings: Optional[Settings] = None,
        session_store: Optional[InMemorySessionStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or default_settings
        self.providers = providers or OpenRouterPerplexityProviders(self.settings)
        self.session_store = session_store if session_store is not None else get_session_store()
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.retry_max_retries,
            base_delay=self.settings.retry_base_delay_ms / 1000,
            max_delay=self.settings.retry_max_delay_ms / 1000,
            jitter_factor=self.settings.retry_jitter_factor,
        )
        self.classifier = QueryClassifier(self.providers)
        self.planner = ResearchPlanner(self.providers)
        self.synthesizer = Synthesizer(self.providers)

    def readiness(self) -> dict[str, bool]:
        llm = bool(self.providers.llm_configured)
        search = bool(self.providers.search_configured)
        return {"llm_configured": llm, "search_configured": search, "ready": llm and search}

    def check_ready(self) -> None:
        status = self.readiness()
        missing = []
        if not status["llm_configured"]:
            missing.append("OPENROUTER_API_KEY")
        if not status["search_configured"]:
            missing.append("PERPLEXITY_API_KEY")
        if missing:
            raise NotConfiguredError(missing)

    @staticmethod
    def validate_query(query: Any) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError()
        cleaned = query.strip()
        if len(cleaned) > c.MAX_QUERY_LENGTH:
            raise InvalidQueryError(
                f"Query is too long ({len(cleaned)} characters, maximum {c.MAX_QUERY_LENGTH})"
            )
        return cleaned

    def research(
        self,
        query: Any,
        options: Optional[ResearchOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        *,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[ResearchStreamEvent]:
        """Validate, check readiness, then return the session's event stream.

        Input and configuration errors raise here, before any stream exists.
        """
        cleaned = self.validate_query(query)
        self.check_ready()
        run = _ResearchRun(
            self,
            ResearchSession(id=session_id or new_session_id(), query=cleaned),
            options or ResearchOptions(),
            cancel_token or CancellationToken(),
        )
        return run.stream()


class _ResearchRun:
    """State for a single session; owned by one coordinating task."""

    def __init__(
        self,
        orchestrator: ResearchOrchestrator,
        session: ResearchSession,
        options: ResearchOptions,
        token: CancellationToken,
    ):
        self.o = orchestrator
        self.settings = orchestrator.settings
        self.session = session
        self.options = options
        self.token = token
        self.emitter = StreamEmitter(session.id)
        self.metrics = SessionMetrics(session_id=session.id)
        self.started = time.monotonic()
        self.max_cost = options.max_cost if options.max_cost is not None else self.settings.research_max_total_cost
        self.spent = 0.0

    @property
    def session_id(self) -> str:
        return self.session.id

    def _update(self, **changes: Any) -> None:
        self.session = self.session.update(**changes)
        self.o.session_store.save(self.session)

    def _time_left_s(self) -> float:
        budget = self.settings.research_timeout_ms / 1000
        return max(budget - (time.monotonic() - self.started), 0.0)

    async def stream(self) -> AsyncIterator[ResearchStreamEvent]:
        task = asyncio.create_task(self._run(), name=f"research:{self.session_id}")
        try:
            async for event in self.emitter:
                yield event
        finally:
            if not task.done():
                self.token.cancel("consumer stopped")
                await asyncio.wait({task}, timeout=CANCEL_GRACE_S)
                if not task.done():
                    task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        log_event(
            event_type="research_started",
            message="Research started",
            session_id=self.session_id,
            query=self.session.query[:100],
        )
        self._update(status=SessionStatus.INITIALIZING)
        try:
            await self._pipeline()
        except (ResearchCancelledError, RetryAbortedError, asyncio.CancelledError) as exc:
            reason = self.token.reason or str(exc) or "cancelled"
            self._update(status=SessionStatus.CANCELLED, error=reason, completed_at=datetime.now(timezone.utc))
            self.emitter.emit(*streaming.research_cancelled(reason))
            log_research_step(self.session_id, "session", "cancelled", {"reason": reason})
            if isinstance(exc, asyncio.CancelledError):
                raise
        except ResearchError as exc:
            self._fail(exc.code, str(exc))
        except Exception as exc:
            logger.exception(f"Research {self.session_id} failed unexpectedly")
            self._fail(ErrorCode.UNKNOWN, str(exc))
        finally:
            self.emitter.close()
            self.o.session_store.save(self.session)

    def _fail(self, code: ErrorCode, detail: str) -> None:
        self._update(status=SessionStatus.FAILED, error=detail, completed_at=datetime.now(timezone.utc))
        self.emitter.emit(*streaming.error(code, detail=detail))
        log_research_step(self.session_id, "session", "failed", {"code": code.value, "detail": detail})

    async def _pipeline(self) -> None:
        self.emitter.emit(*streaming.research_start(self.session.query, session_id=self.session_id))

        classification = await self._classify()
        plan = await self._plan(classification)

        tier = classification.suggested_model
        cost_per_query = c.COST_PER_QUERY[tier]

        # Round 1
        search_started = time.monotonic()
        self._update(status=SessionStatus.SEARCHING)
        scheduler = DependencyScheduler(
            plan,
            max_batches=1 if self.options.skip_round2 else self.settings.research_max_batches,
            max_cost=self.max_cost,
            cost_per_query=cost_per_query,
            time_budget_s=self._time_left_s(),
        )
        notes, efficiency = await self._search(scheduler, tier, round=1)
        self.spent += scheduler.spent
        self.metrics.search_duration_ms = _ms_since(search_started)
        self.metrics.parallelization_efficiency = efficiency
        self._update(plan=scheduler.plan, notes=notes)

        if not notes:
            detail = "No sub-question produced an answer"
            if scheduler.stop_reason:
                detail = f"{detail} ({scheduler.stop_reason})"
            raise ResearchError(detail, code=ErrorCode.SEARCH_FAILED)

        first = await self._synthesize(notes, round=1)
        self._update(gaps=first.gaps, final_answer=first.answer, citations=first.citations)
        self.metrics.gaps_found = len(first.gaps)

        answer, citations, confidence = first.answer, first.citations, first.confidence
        if self._round2_allowed(first):
            second = await self._round2(first, notes, tier, cost_per_query)
            if second is not None:
                answer = second.answer
                citations = merge_citations(first.citations, second.citations)
                confidence = second.confidence

        answer, citations = renumber_citations(answer, citations)
        self.metrics.total_citations = len(citations)
        self.metrics.estimated_cost_usd = round(self.spent, 4)
        self.metrics.total_duration_ms = _ms_since(self.started)
        self._update(
            status=SessionStatus.COMPLETED,
            final_answer=answer,
            citations=citations,
            completed_at=datetime.now(timezone.utc),
        )
        self.emitter.emit(
            *streaming.research_complete(
                answer,
                citations,
                self.metrics.total_duration_ms,
                self.metrics,
                confidence=confidence,
            )
        )
        log_event(
            event_type="research_complete",
            message="Research completed",
            session_id=self.session_id,
            citations=len(citations),
            duration_ms=self.metrics.total_duration_ms,
            cost_usd=self.metrics.estimated_cost_usd,
        )

    async def _classify(self) -> ClassificationResult:
        started = time.monotonic()
        self._update(status=SessionStatus.CLASSIFYING)
        use_llm = self.options.use_llm_classification
        if use_llm is None:
            use_llm = self.settings.use_llm_classification
        result = await self.o.classifier.classify(
            self.session.query,
            force_complexity=self.options.force_complexity,
            use_llm=use_llm,
            cancel_token=self.token,
        )
        self.token.raise_if_cancelled()
        self.metrics.classification_duration_ms = _ms_since(started)
        self._update(complexity=result.complexity)
        self.emitter.emit(*streaming.classified(result))
        log_research_step(
            self.session_id,
            "classify",
            "completed",
            {"complexity": result.complexity.value, "confidence": result.confidence},
        )
        return result

    async def _plan(self, classification: ClassificationResult) -> ResearchPlan:
        started = time.monotonic()
        self._update(status=SessionStatus.PLANNING)
        plan = await self.o.planner.create_plan(
            self.session.query,
            self.session_id,
            classification.complexity,
            cancel_token=self.token,
        )
        self.token.raise_if_cancelled()
        self.metrics.planning_duration_ms = _ms_since(started)
        self._update(plan=plan)
        self.emitter.emit(*streaming.plan_created(plan))
        return plan

    def _answer_fn(self, tier: str):
        return functools.partial(self._answer, tier=tier)

    async def _answer(self, sub_question: SubQuestion, *, tier: str, context, on_progress) -> ResearchNote:
        return await self.o.providers.answer_sub_question(
            sub_question,
            session_id=self.session_id,
            model=tier,
            context=context,
            on_progress=on_progress,
        )

    async def _search(
        self,
        scheduler: DependencyScheduler,
        tier: str,
        *,
        round: int,
        context: Optional[str] = None,
    ) -> tuple[list[ResearchNote], float]:
        engine = ExecutionEngine(
            scheduler,
            self.emitter,
            self._answer_fn(tier),
            retry_policy=self.o.retry_policy,
            max_concurrency=self.settings.research_parallel_searches,
            session_id=self.session_id,
            context=context,
            round=round,
        )
        notes: list[ResearchNote] = []
        efficiencies: list[float] = []
        try:
            while True:
                self.token.raise_if_cancelled()
                batch = scheduler.next_batch()
                for stopped in scheduler.stopped:
                    self.emitter.emit(
                        *streaming.search_failed(
                            stopped.id,
                            f"Not dispatched: {stopped.failure_reason}",
                            reason=stopped.failure_reason,
                            round=round,
                        )
                    )
                if not batch:
                    break
                outcomes = await engine.execute_batch(batch, self.token)
                self.metrics.total_queries += len(batch)
                efficiencies.append(engine.last_efficiency)
                notes.extend(o.note for o in outcomes if o.success and o.note is not None)
                self._save_plan(scheduler, round)
        finally:
            if self.token.cancelled and scheduler.pending:
                for stopped in scheduler.stop(c.FAILURE_CANCELLED):
                    self.emitter.emit(
                        *streaming.search_failed(
                            stopped.id,
                            f"Not dispatched: {c.FAILURE_CANCELLED}",
                            reason=c.FAILURE_CANCELLED,
                            round=round,
                        )
                    )
            self._save_plan(scheduler, round)

        efficiency = sum(efficiencies) / len(efficiencies) if efficiencies else 0.0
        return notes, efficiency

    def _save_plan(self, scheduler: DependencyScheduler, round: int) -> None:
        if round == 1:
            self._update(plan=scheduler.plan)
        else:
            self._update(round2_plan=scheduler.plan)

    async def _synthesize(
        self,
        notes: list[ResearchNote],
        *,
        round: int,
        previous_answer: Optional[str] = None,
        gaps: Optional[list[ResearchGap]] = None,
    ) -> SynthesisOutput:
        started = time.monotonic()
        self._update(status=SessionStatus.SYNTHESIZING if round == 1 else SessionStatus.ROUND2_SYNTHESIZING)
        self.emitter.emit(*streaming.synthesize_start(len(notes), round))

        def on_progress(progress: float, partial: str) -> None:
            self.emitter.emit(*streaming.synthesize_progress(progress, partial, round))

        output = await self.o.synthesizer.synthesize(
            self.session.query,
            notes,
            session_id=self.session_id,
            round=round,
            previous_answer=previous_answer,
            gaps=gaps,
            on_progress=on_progress,
            cancel_token=self.token,
        )
        self.token.raise_if_cancelled()
        self.metrics.synthesis_duration_ms += _ms_since(started)
        log_research_step(
            self.session_id,
            f"synthesis_round_{round}",
            "completed",
            {"confidence": output.confidence, "gaps": len(output.gaps)},
        )
        return output

    def _round2_allowed(self, first: SynthesisOutput) -> bool:
        if self.options.skip_round2 or self.settings.research_max_rounds < 2:
            return False
        return should_proceed_to_round2(first)

    async def _round2(
        self,
        first: SynthesisOutput,
        round1_notes: list[ResearchNote],
        tier: str,
        cost_per_query: float,
    ) -> Optional[SynthesisOutput]:
        for gap in first.gaps:
            if gap.priority != Priority.LOW:
                self.emitter.emit(*streaming.gap_found(gap))

        queries = round2_queries(first.gaps)
        remaining = self.max_cost - self.spent
        if not queries or len(queries) * cost_per_query > remaining + 1e-9:
            logger.info(
                f"Skipping round 2 for {self.session_id}: {len(queries)} queries, "
                f"${remaining:.3f} budget left"
            )
            return None

        started = time.monotonic()
        self._update(status=SessionStatus.ROUND2_SEARCHING, current_round=2)
        self.emitter.emit(*streaming.round2_start(first.gaps, queries))

        ranked = sorted(first.gaps, key=lambda g: c.GAP_PRIORITY_WEIGHTS[g.priority], reverse=True)
        sub_questions = [
            SubQuestion(
                id=f"sq-r2-{index}",
                question=query,
                reasoning=f"Addressing gap: {gap.description}",
                priority=gap.priority,
            )
            for index, (query, gap) in enumerate(zip(queries, ranked), start=1)
        ]
        plan = ResearchPlan(
            id=f"plan-{self.session_id}-r2",
            session_id=self.session_id,
            original_query=self.session.query,
            sub_questions=tuple(sub_questions),
            total_estimated_time=estimate_total_time(sub_questions),
        )
        self._update(round2_plan=plan)
        scheduler = DependencyScheduler(
            plan,
            max_batches=1,
            max_cost=remaining,
            cost_per_query=cost_per_query,
            time_budget_s=self._time_left_s(),
        )
        notes, _ = await self._search(scheduler, tier, round=2, context=first.answer)
        self.spent += scheduler.spent

        second: Optional[SynthesisOutput] = None
        if notes:
            all_notes = round1_notes + notes
            self._update(notes=all_notes)
            try:
                second = await self._synthesize(
                    all_notes,
                    round=2,
                    previous_answer=first.answer,
                    gaps=first.gaps,
                )
            except ResearchError as exc:
                if exc.code == ErrorCode.CANCELLED:
                    raise
                logger.warning(f"Round 2 synthesis failed, keeping round 1 answer: {exc}")
            else:
                self.metrics.gaps_resolved = len(first.gaps)
                self._update(gaps=[gap.model_copy(update={"resolved": True}) for gap in first.gaps])

        self.metrics.round2_duration_ms = _ms_since(started)
        return second
