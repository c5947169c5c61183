"""Structured error handling — error codes, categories, retry policy, tool error model."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from .models.analysis import RateLimitInfo


class ErrorCode(str, Enum):
    """Machine-readable failure codes returned by the analysis endpoint."""

    MISSING_API_KEY = "MISSING_API_KEY"
    MISSING_VIDEO_FILE = "MISSING_VIDEO_FILE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_OPTIONS = "INVALID_OPTIONS"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CONTENT_BLOCKED = "CONTENT_BLOCKED"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    """Failure classes that decide how the queue reacts."""

    VALIDATION = "VALIDATION"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    API = "API"
    INTERNAL = "INTERNAL"


_CODE_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.MISSING_API_KEY: ErrorCategory.VALIDATION,
    ErrorCode.MISSING_VIDEO_FILE: ErrorCategory.VALIDATION,
    ErrorCode.FILE_TOO_LARGE: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_OPTIONS: ErrorCategory.VALIDATION,
    ErrorCode.UNSUPPORTED_FORMAT: ErrorCategory.VALIDATION,
    ErrorCode.RATE_LIMIT_EXCEEDED: ErrorCategory.RATE_LIMIT,
    ErrorCode.NETWORK_ERROR: ErrorCategory.NETWORK,
    ErrorCode.QUOTA_EXCEEDED: ErrorCategory.API,
    ErrorCode.CONTENT_BLOCKED: ErrorCategory.API,
    ErrorCode.ANALYSIS_FAILED: ErrorCategory.API,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}

_HINTS: dict[ErrorCode, str] = {
    ErrorCode.MISSING_API_KEY: "Set GEMINI_API_KEY in the environment or ~/.config/video-hook-mcp/.env",
    ErrorCode.MISSING_VIDEO_FILE: "The video is no longer available — add the file again",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Rate limit hit — the queue waits and retries automatically",
    ErrorCode.FILE_TOO_LARGE: "Video exceeds the size limit — trim or compress it first",
    ErrorCode.INVALID_OPTIONS: "Enable at least one extraction field",
    ErrorCode.QUOTA_EXCEEDED: "Gemini quota exhausted — try again later or use another key",
    ErrorCode.CONTENT_BLOCKED: "Video content was blocked by safety filters",
    ErrorCode.UNSUPPORTED_FORMAT: "Use mp4, mov, avi, mkv, webm, or m4v",
    ErrorCode.ANALYSIS_FAILED: "Gemini could not analyze the video",
    ErrorCode.NETWORK_ERROR: "Request failed or timed out — check connectivity",
    ErrorCode.INTERNAL_ERROR: "Unexpected failure — see server logs",
}


class AnalysisError(Exception):
    """Typed failure from a RemoteAnalysisClient.

    Carries the machine-readable ``code``, an optional server-provided
    ``retry_after_seconds`` and the quota snapshot the server reported
    alongside the failure.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.ANALYSIS_FAILED,
        *,
        status: int | None = None,
        retry_after_seconds: float | None = None,
        rate_limit: RateLimitInfo | None = None,
        details: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code)
        self.status = status
        self.retry_after_seconds = retry_after_seconds
        self.rate_limit = rate_limit
        self.details = details

    @property
    def category(self) -> ErrorCategory:
        return _CODE_CATEGORIES[self.code]

    def __repr__(self) -> str:
        return f"AnalysisError({self.code.value}: {self.message!r})"


class QueueClosedError(RuntimeError):
    """Raised when work is enqueued while the queue is draining."""


def code_for_status(status: int, *, fallback: ErrorCode | None = None) -> ErrorCode:
    """Map an HTTP status to an error code when the body did not carry one."""
    if status == 429:
        return ErrorCode.RATE_LIMIT_EXCEEDED
    if status == 413:
        return ErrorCode.FILE_TOO_LARGE
    if 400 <= status < 500:
        return fallback or ErrorCode.INVALID_OPTIONS
    if status >= 500:
        return fallback or ErrorCode.INTERNAL_ERROR
    return fallback or ErrorCode.ANALYSIS_FAILED


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds. Dates are not supported."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if math.isnan(seconds):
        return None
    return max(0.0, seconds)


def code_from_gemini_message(message: str) -> ErrorCode:
    """Classify a Gemini SDK failure by its message text."""
    s = message.lower()
    if "quota" in s or "resource_exhausted" in s:
        return ErrorCode.QUOTA_EXCEEDED
    if "safety" in s or "blocked" in s:
        return ErrorCode.CONTENT_BLOCKED
    if "unsupported" in s:
        return ErrorCode.UNSUPPORTED_FORMAT
    return ErrorCode.ANALYSIS_FAILED


@dataclass(frozen=True)
class RetryPolicy:
    """Which failures the queue retries.

    Validation and internal failures are terminal, rate-limit and network
    failures are retried, and API failures are retried only when their
    message contains one of ``transient_keywords``.
    """

    retryable_categories: frozenset[ErrorCategory] = frozenset(
        {ErrorCategory.RATE_LIMIT, ErrorCategory.NETWORK}
    )
    transient_keywords: tuple[str, ...] = field(default=(
        "network",
        "timeout",
        "timed out",
        "rate limit",
        "temporary",
        "service unavailable",
        "internal server error",
        "503",
    ))

    def is_transient_message(self, message: str) -> bool:
        s = message.lower()
        return any(k in s for k in self.transient_keywords)

    def is_retryable(self, error: AnalysisError) -> bool:
        if error.category in self.retryable_categories:
            return True
        if error.category is ErrorCategory.API:
            return self.is_transient_message(f"{error.message} {error.details}")
        return False


DEFAULT_RETRY_POLICY = RetryPolicy()


def classify_exception(exc: BaseException) -> AnalysisError:
    """Convert any exception raised during dispatch into an AnalysisError."""
    if isinstance(exc, AnalysisError):
        return exc
    if isinstance(exc, TimeoutError):
        return AnalysisError("Analysis request timed out", ErrorCode.NETWORK_ERROR)
    # FileNotFoundError is an OSError; check it first
    if isinstance(exc, FileNotFoundError):
        return AnalysisError(str(exc), ErrorCode.MISSING_VIDEO_FILE)
    if isinstance(exc, (ConnectionError, OSError)):
        return AnalysisError(f"Network error: {exc}", ErrorCode.NETWORK_ERROR)
    return AnalysisError(str(exc) or type(exc).__name__, ErrorCode.INTERNAL_ERROR)


class ToolError(BaseModel):
    """Structured error returned from any tool."""

    error: str
    category: str
    code: str
    hint: str
    retryable: bool = False
    retry_after_seconds: float | None = None


def make_tool_error(error: Exception) -> dict:
    """Create a serialisable ToolError dict from an exception."""
    if isinstance(error, QueueClosedError):
        return ToolError(
            error=str(error),
            category=ErrorCategory.VALIDATION.value,
            code="QUEUE_CLOSED",
            hint="The queue is draining — wait for it to finish, then add more videos",
        ).model_dump(mode="json")
    if isinstance(error, ValueError):
        return ToolError(
            error=str(error),
            category=ErrorCategory.VALIDATION.value,
            code=ErrorCode.INVALID_OPTIONS.value,
            hint="Check the arguments and try again",
        ).model_dump(mode="json")
    classified = classify_exception(error)
    return ToolError(
        error=classified.message,
        category=classified.category.value,
        code=classified.code.value,
        hint=_HINTS[classified.code],
        retryable=DEFAULT_RETRY_POLICY.is_retryable(classified),
        retry_after_seconds=classified.retry_after_seconds,
    ).model_dump(mode="json")
