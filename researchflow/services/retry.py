"""Exponential backoff with jitter for provider calls."""

from __future__ import annotations

import asyncio
import random
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import openai

from researchflow.config import settings
from researchflow.errors import ResearchCancelledError, RetryAbortedError
from researchflow.services.cancellation import CancellationToken
from researchflow.services.logger import logger

T = TypeVar("T")

_AUTH_MARKERS = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "authentication",
    "api key",
    "api-key",
    "invalid key",
    "permission denied",
)

_NETWORK_MARKERS = (
    "network",
    "fetch failed",
    "connection",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
)
_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests", "quota exceeded")
_SERVER_MARKERS = (
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_TRANSIENT_MARKERS = ("temporary", "transient", "overloaded", "try again")


def _marker_pattern(markers: tuple[str, ...]) -> re.Pattern[str]:
    # Status codes must stand alone so "4010 tokens" or "5000ms" do not match.
    parts = [rf"\b{re.escape(m)}\b" if m.isdigit() else re.escape(m) for m in markers]
    return re.compile("|".join(parts))


_AUTH_RE = _marker_pattern(_AUTH_MARKERS)
_RETRYABLE_RES = tuple(
    _marker_pattern(markers)
    for markers in (_NETWORK_MARKERS, _RATE_LIMIT_MARKERS, _SERVER_MARKERS, _TRANSIENT_MARKERS)
)

_RETRY_AFTER_RE = re.compile(r"retry[ _-]?after[^0-9]{0,10}(\d+(?:\.\d+)?)", re.IGNORECASE)


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, openai.APIStatusError):
        return error.status_code
    return None


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return True
    if _status_code(error) in (401, 403):
        return True
    return _AUTH_RE.search(str(error).lower()) is not None


def is_retryable_error(error: BaseException) -> bool:
    """Network, rate limit, 5xx and transient failures are worth another try."""
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(error, (httpx.TransportError, openai.APIConnectionError)):
        return True
    status = _status_code(error)
    if status is not None and (status == 429 or status >= 500):
        return True

    message = str(error).lower()
    return any(pattern.search(message) for pattern in _RETRYABLE_RES)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter_factor: float = 0.2,
) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
    capped = min(base_delay * (2**attempt), max_delay)
    jitter = capped * jitter_factor
    return random.uniform(capped - jitter, capped + jitter)


def extract_retry_after(error: BaseException) -> float | None:
    """Server-provided wait hint in seconds, if the error carries one."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        raw = headers.get("retry-after")
        if raw:
            try:
                return max(float(raw), 0.0)
            except ValueError:
                pass

    attr = getattr(error, "retry_after", None)
    if isinstance(attr, (int, float)) and not isinstance(attr, bool):
        return max(float(attr), 0.0)

    match = _RETRY_AFTER_RE.search(str(error))
    if match:
        return float(match.group(1))
    return None


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_factor: float = 0.2,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
    ):
        self.max_retries = max(int(max_retries), 0)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self.should_retry = should_retry

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_ms / 1000,
            max_delay=settings.retry_max_delay_ms / 1000,
            jitter_factor=settings.retry_jitter_factor,
        )

    def calculate_backoff(self, attempt: int) -> float:
        return calculate_backoff(attempt, self.base_delay, self.max_delay, self.jitter_factor)

    def delay_for(self, attempt: int, error: BaseException) -> float:
        delay = self.calculate_backoff(attempt)
        hint = extract_retry_after(error)
        if hint is not None and hint > delay:
            delay = min(hint, self.max_delay)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
    ) -> T:
        """Run ``operation`` with up to ``max_retries`` retries.

        Authentication errors and non-retryable errors are raised immediately.
        A cancel before an attempt or during a backoff wait raises
        ``RetryAbortedError``. ``on_retry(error, attempt, delay)`` is called
        before each wait with the 1-based number of the failed attempt.
        """
        attempt = 0
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                raise RetryAbortedError()
            try:
                return await operation()
            except (RetryAbortedError, ResearchCancelledError, asyncio.CancelledError):
                raise
            except Exception as exc:
                if is_auth_error(exc):
                    raise
                if attempt >= self.max_retries or not self.should_retry(exc):
                    raise

                delay = self.delay_for(attempt, exc)
                attempt += 1
                logger.debug(f"Retry {attempt}/{self.max_retries} in {delay:.2f}s: {exc}")
                if on_retry is not None:
                    on_retry(exc, attempt, delay)
                await self._sleep(delay, cancel_token)

    @staticmethod
    async def _sleep(delay: float, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is None:
            await asyncio.sleep(delay)
            return
        if cancel_token.cancelled:
            raise RetryAbortedError()
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RetryAbortedError()
