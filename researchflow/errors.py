"""Research pipeline error classes and user-facing error messages."""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    CLASSIFICATION_FAILED = "CLASSIFICATION_FAILED"
    PLANNING_FAILED = "PLANNING_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    TIMEOUT = "TIMEOUT"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    INVALID_QUERY = "INVALID_QUERY"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CLASSIFICATION_FAILED: "Unable to analyze the complexity of your query. Please try again.",
    ErrorCode.PLANNING_FAILED: "Unable to plan the research approach. Please try rephrasing your question.",
    ErrorCode.SEARCH_FAILED: "Some searches failed. Continuing with available results.",
    ErrorCode.SYNTHESIS_FAILED: "Unable to synthesize the research results. Please try again.",
    ErrorCode.TIMEOUT: "Research took too long. Returning partial results.",
    ErrorCode.COST_LIMIT_EXCEEDED: "Research cost limit reached. Returning available results.",
    ErrorCode.RATE_LIMITED: "API rate limit reached. Please try again in a moment.",
    ErrorCode.NOT_CONFIGURED: "Research providers are not configured.",
    ErrorCode.INVALID_QUERY: "Query is required and must be a non-empty string.",
    ErrorCode.CANCELLED: "Research was cancelled.",
    ErrorCode.UNKNOWN: "An unexpected error occurred during research.",
}

RECOVERABLE_CODES = frozenset(
    {
        ErrorCode.SEARCH_FAILED,
        ErrorCode.SYNTHESIS_FAILED,
        ErrorCode.TIMEOUT,
        ErrorCode.COST_LIMIT_EXCEEDED,
        ErrorCode.RATE_LIMITED,
    }
)


class ResearchError(Exception):
    """Base exception for research pipeline errors."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str | None = None, *, code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        super().__init__(message or ERROR_MESSAGES[self.code])

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES[self.code]

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE_CODES


class InvalidQueryError(ResearchError):
    """Raised before the pipeline starts when the query is empty or too long."""

    code = ErrorCode.INVALID_QUERY


class NotConfiguredError(ResearchError):
    """Raised when a required external capability has no credentials."""

    code = ErrorCode.NOT_CONFIGURED

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"{', '.join(self.missing)} is not configured")


class PlanningError(ResearchError):
    """Generator output could not be turned into sub-questions."""

    code = ErrorCode.PLANNING_FAILED


class ExecutionError(ResearchError):
    """Terminal failure of one sub-question after retries."""

    code = ErrorCode.SEARCH_FAILED

    def __init__(self, message: str, *, attempts: int = 1, retryable: bool = False):
        self.attempts = attempts
        self.retryable = retryable
        super().__init__(message)


class SynthesisError(ResearchError):
    code = ErrorCode.SYNTHESIS_FAILED


class RetryAbortedError(ResearchError):
    """Cancellation observed before an attempt or during a backoff wait."""

    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Retry aborted"):
        super().__init__(message)


class ResearchCancelledError(ResearchError):
    code = ErrorCode.CANCELLED


class InvalidTransitionError(ResearchError):
    """A sub-question status change that would move backwards."""

    def __init__(self, sub_question_id: str, current: str, target: str):
        self.sub_question_id = sub_question_id
        super().__init__(f"Cannot move {sub_question_id} from {current} to {target}")
