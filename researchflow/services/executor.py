from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from researchflow import constants as c
from researchflow.errors import ResearchCancelledError, RetryAbortedError
from researchflow.models.research import (
    ExecutionOutcome,
    ResearchNote,
    SubQuestion,
    SubQuestionStatus,
)
from researchflow.services import streaming
from researchflow.services.cancellation import CancellationToken
from researchflow.services.logger import log_llm_call, logger
from researchflow.services.retry import RetryPolicy, is_auth_error, is_retryable_error
from researchflow.services.scheduler import DependencyScheduler
from researchflow.services.streaming import StreamEmitter


class AnswerFn(Protocol):
    def __call__(
        self,
        sub_question: SubQuestion,
        *,
        context: Optional[str],
        on_progress: Callable[[int], Any],
    ) -> Awaitable[ResearchNote]: ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ExecutionEngine:
    """Runs ready sub-questions against the answer capability with retries."""

    def __init__(
        self,
        scheduler: DependencyScheduler,
        emitter: StreamEmitter,
        answer_fn: AnswerFn,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 3,
        session_id: Optional[str] = None,
        context: Optional[str] = None,
        round: int = 1,
    ):
        self.scheduler = scheduler
        self.emitter = emitter
        self.answer_fn = answer_fn
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max(int(max_concurrency), 1)
        self.session_id = session_id or scheduler.session_id
        self.context = context
        self.round = round
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self.last_efficiency = 0.0
        self.total_duration_ms = 0

    async def execute(
        self,
        sub_question: SubQuestion,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionOutcome:
        """Answer one sub-question. Provider failures become a failed outcome."""
        async with self._semaphore:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            started = time.monotonic()
            self.scheduler.transition(sub_question.id, SubQuestionStatus.RUNNING)
            self.scheduler.record_spend(1)
            self.emitter.emit(*streaming.search_start(sub_question, self.round))

            attempts = 0

            def on_progress(sources_found: int) -> None:
                self.emitter.emit(*streaming.search_progress(sub_question.id, sources_found))

            async def attempt() -> ResearchNote:
                nonlocal attempts
                attempts += 1
                call = self.answer_fn(sub_question, context=self.context, on_progress=on_progress)
                if cancel_token is not None:
                    return await cancel_token.race(call)
                return await call

            try:
                note = await self.retry_policy.run(attempt, cancel_token=cancel_token)
            except (ResearchCancelledError, RetryAbortedError, asyncio.CancelledError):
                self.scheduler.transition(sub_question.id, SubQuestionStatus.FAILED, c.FAILURE_CANCELLED)
                self.emitter.emit(
                    *streaming.search_failed(
                        sub_question.id,
                        c.FAILURE_CANCELLED,
                        attempts=attempts,
                        reason=c.FAILURE_CANCELLED,
                        round=self.round,
                    )
                )
                raise
            except Exception as exc:
                duration_ms = _elapsed_ms(started)
                retryable = is_retryable_error(exc) and not is_auth_error(exc)
                message = str(exc) or exc.__class__.__name__
                self.scheduler.transition(sub_question.id, SubQuestionStatus.FAILED, message)
                self.emitter.emit(
                    *streaming.search_failed(
                        sub_question.id,
                        message,
                        retryable=retryable,
                        attempts=attempts,
                        round=self.round,
                    )
                )
                log_llm_call(
                    model="search",
                    caller=f"execute:{sub_question.id}",
                    duration_ms=duration_ms,
                    status="failed",
                    error=message,
                )
                return ExecutionOutcome(
                    sub_question_id=sub_question.id,
                    success=False,
                    error=message,
                    retryable=retryable,
                    attempts=attempts,
                    duration_ms=duration_ms,
                )

            duration_ms = _elapsed_ms(started)
            self.scheduler.transition(sub_question.id, SubQuestionStatus.COMPLETED)
            self.emitter.emit(*streaming.search_complete(note, self.round, duration_ms))
            return ExecutionOutcome(
                sub_question_id=sub_question.id,
                success=True,
                note=note,
                attempts=attempts,
                duration_ms=duration_ms,
            )

    async def execute_batch(
        self,
        batch: list[SubQuestion],
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[ExecutionOutcome]:
        """Run a wave concurrently and wait until every call has settled."""
        if not batch:
            return []
        started = time.monotonic()
        results = await asyncio.gather(
            *(self.execute(sq, cancel_token) for sq in batch),
            return_exceptions=True,
        )
        wall_ms = _elapsed_ms(started)

        outcomes: list[ExecutionOutcome] = []
        first_error: BaseException | None = None
        for result in results:
            if isinstance(result, BaseException):
                first_error = first_error or result
            else:
                outcomes.append(result)

        individual_ms = sum(o.duration_ms for o in outcomes)
        self.total_duration_ms += wall_ms
        theoretical_ms = wall_ms * self.max_concurrency
        self.last_efficiency = min(1.0, individual_ms / theoretical_ms) if theoretical_ms > 0 else 0.0

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(
            f"Batch of {len(batch)} settled in {wall_ms}ms: {succeeded} completed, "
            f"{len(outcomes) - succeeded} failed ({self.last_efficiency:.0%} efficient)"
        )

        if first_error is not None:
            raise first_error
        return outcomes
