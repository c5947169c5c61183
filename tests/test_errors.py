"""Tests for error codes, retry classification and tool error payloads."""

from __future__ import annotations

import pytest

from video_hook_mcp.errors import (
    DEFAULT_RETRY_POLICY,
    AnalysisError,
    ErrorCategory,
    ErrorCode,
    QueueClosedError,
    RetryPolicy,
    classify_exception,
    code_for_status,
    code_from_gemini_message,
    make_tool_error,
    parse_retry_after,
)


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (429, ErrorCode.RATE_LIMIT_EXCEEDED),
            (413, ErrorCode.FILE_TOO_LARGE),
            (400, ErrorCode.INVALID_OPTIONS),
            (500, ErrorCode.INTERNAL_ERROR),
            (503, ErrorCode.INTERNAL_ERROR),
        ],
    )
    def test_code_for_status(self, status, expected):
        assert code_for_status(status) is expected

    def test_fallback_used_for_generic_statuses(self):
        assert code_for_status(502, fallback=ErrorCode.ANALYSIS_FAILED) is ErrorCode.ANALYSIS_FAILED
        assert code_for_status(429, fallback=ErrorCode.ANALYSIS_FAILED) is ErrorCode.RATE_LIMIT_EXCEEDED

    @pytest.mark.parametrize(
        "value,expected",
        [("30", 30.0), (" 1.5 ", 1.5), ("-4", 0.0), ("", None), (None, None), ("soon", None), ("nan", None)],
    )
    def test_parse_retry_after(self, value, expected):
        assert parse_retry_after(value) == expected

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("429 RESOURCE_EXHAUSTED: quota exceeded", ErrorCode.QUOTA_EXCEEDED),
            ("Response blocked by SAFETY settings", ErrorCode.CONTENT_BLOCKED),
            ("Unsupported MIME type video/x-foo", ErrorCode.UNSUPPORTED_FORMAT),
            ("something odd happened", ErrorCode.ANALYSIS_FAILED),
        ],
    )
    def test_code_from_gemini_message(self, message, expected):
        assert code_from_gemini_message(message) is expected


class TestRetryPolicy:
    @pytest.mark.parametrize(
        "code,message,retryable",
        [
            (ErrorCode.RATE_LIMIT_EXCEEDED, "Rate limit exceeded", True),
            (ErrorCode.NETWORK_ERROR, "connection reset", True),
            (ErrorCode.ANALYSIS_FAILED, "Gemini 503 Service Unavailable", True),
            (ErrorCode.ANALYSIS_FAILED, "Temporary failure, try again", True),
            (ErrorCode.ANALYSIS_FAILED, "Failed to analyze video", False),
            (ErrorCode.QUOTA_EXCEEDED, "API quota exceeded", False),
            (ErrorCode.INVALID_OPTIONS, "network timeout", False),
            (ErrorCode.MISSING_API_KEY, "missing", False),
            (ErrorCode.INTERNAL_ERROR, "internal server error", False),
        ],
    )
    def test_default_policy(self, code, message, retryable):
        assert DEFAULT_RETRY_POLICY.is_retryable(AnalysisError(message, code)) is retryable

    def test_details_are_searched_for_keywords(self):
        err = AnalysisError("Failed to analyze video", ErrorCode.ANALYSIS_FAILED, details="upstream timeout")
        assert DEFAULT_RETRY_POLICY.is_retryable(err)

    def test_policy_is_configurable(self):
        policy = RetryPolicy(retryable_categories=frozenset(), transient_keywords=("flaky",))
        assert not policy.is_retryable(AnalysisError("x", ErrorCode.NETWORK_ERROR))
        assert policy.is_retryable(AnalysisError("flaky backend", ErrorCode.ANALYSIS_FAILED))

    def test_category_follows_code(self):
        assert AnalysisError("x", ErrorCode.FILE_TOO_LARGE).category is ErrorCategory.VALIDATION
        assert AnalysisError("x", "RATE_LIMIT_EXCEEDED").category is ErrorCategory.RATE_LIMIT


class TestClassifyException:
    def test_analysis_error_passes_through(self):
        err = AnalysisError("x", ErrorCode.CONTENT_BLOCKED)
        assert classify_exception(err) is err

    def test_timeout(self):
        assert classify_exception(TimeoutError()).code is ErrorCode.NETWORK_ERROR

    def test_missing_file_before_generic_os_error(self):
        assert classify_exception(FileNotFoundError("gone.mp4")).code is ErrorCode.MISSING_VIDEO_FILE
        assert classify_exception(ConnectionResetError("reset")).code is ErrorCode.NETWORK_ERROR

    def test_anything_else_is_internal(self):
        err = classify_exception(KeyError("k"))
        assert err.code is ErrorCode.INTERNAL_ERROR
        assert not DEFAULT_RETRY_POLICY.is_retryable(err)


class TestMakeToolError:
    def test_queue_closed(self):
        out = make_tool_error(QueueClosedError("draining"))
        assert out["code"] == "QUEUE_CLOSED"
        assert out["category"] == "VALIDATION"
        assert out["retryable"] is False

    def test_value_error_is_validation(self):
        out = make_tool_error(ValueError("Enable at least one extraction field"))
        assert out["code"] == "INVALID_OPTIONS"
        assert out["error"] == "Enable at least one extraction field"

    def test_rate_limit_carries_retry_after(self):
        out = make_tool_error(AnalysisError(
            "Rate limit exceeded", ErrorCode.RATE_LIMIT_EXCEEDED, retry_after_seconds=12.0,
        ))
        assert out["category"] == "RATE_LIMIT"
        assert out["retryable"] is True
        assert out["retry_after_seconds"] == 12.0
        assert out["hint"]

    def test_missing_file(self):
        out = make_tool_error(FileNotFoundError("Video file not found: /x.mp4"))
        assert out["code"] == "MISSING_VIDEO_FILE"
        assert out["category"] == "VALIDATION"

    def test_timeout_is_retryable_network(self):
        out = make_tool_error(TimeoutError())
        assert out["category"] == "NETWORK"
        assert out["retryable"] is True
