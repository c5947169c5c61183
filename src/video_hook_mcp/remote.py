"""Remote analysis clients — the only I/O boundary the queue talks to.

Both implementations satisfy :class:`RemoteAnalysisClient`:

- ``GeminiAnalysisClient`` calls Gemini directly and enforces the
  endpoint-side checks itself (API key, per-caller sliding window, size,
  format, options), returning its own counters as the authoritative
  quota snapshot.
- ``HttpAnalysisClient`` posts to an ``/api/gemini/analyze-video`` style
  HTTP endpoint and decodes its JSON envelope.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

import httpx
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from .client import GeminiClient
from .config import LARGE_FILE_THRESHOLD, get_config
from .errors import (
    AnalysisError,
    ErrorCode,
    code_for_status,
    code_from_gemini_message,
    parse_retry_after,
)
from .models.analysis import (
    SUPPORTED_VIDEO_EXTENSIONS,
    AnalysisOptions,
    AnalysisResponse,
    HookAnalysis,
    RateLimitInfo,
    VideoPayload,
)
from .prompts.analysis import build_prompt
from .rate_limit import SlidingWindowRegistry

logger = logging.getLogger(__name__)

ANALYZE_VIDEO_PATH = "/api/gemini/analyze-video"


@runtime_checkable
class RemoteAnalysisClient(Protocol):
    """Submit one video and resolve with a response or raise AnalysisError."""

    async def analyze(
        self, payload: VideoPayload | None, options: AnalysisOptions,
    ) -> AnalysisResponse: ...


class GeminiAnalysisClient:
    """Analyze videos with Gemini structured output.

    Args:
        api_key: Gemini key; defaults to the configured ``GEMINI_API_KEY``.
        model: Model ID; defaults to the configured ``default_model``.
        max_requests_per_minute: Endpoint-side ceiling per caller.
        window_seconds: Sliding window length.
        max_video_size_bytes: Upload size limit.
        caller_id: Identity used to key the sliding window.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        max_requests_per_minute: int | None = None,
        window_seconds: float | None = None,
        max_video_size_bytes: int | None = None,
        caller_id: str = "local",
        limits: SlidingWindowRegistry | None = None,
    ) -> None:
        cfg = get_config()
        self._api_key = api_key if api_key is not None else cfg.gemini_api_key
        self._model = model or cfg.default_model
        self._ceiling = max_requests_per_minute or cfg.rate_limit_per_minute
        self._max_size = max_video_size_bytes or cfg.max_video_size_bytes
        self._caller_id = caller_id
        self._limits = limits or SlidingWindowRegistry(
            self._ceiling,
            window_seconds=window_seconds or cfg.rate_limit_window_seconds,
        )

    def _validate(self, payload: VideoPayload | None, options: AnalysisOptions) -> VideoPayload:
        if payload is None or not payload.exists():
            raise AnalysisError("No video file provided", ErrorCode.MISSING_VIDEO_FILE, status=400)
        if payload.size > self._max_size:
            limit_mb = self._max_size // (1024 * 1024)
            raise AnalysisError(
                f"Video file too large. Maximum size is {limit_mb}MB",
                ErrorCode.FILE_TOO_LARGE,
                status=400,
                details=f"maxSize={self._max_size} actualSize={payload.size}",
            )
        if payload.path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
            raise AnalysisError(
                f"Video format not supported for analysis: {payload.filename}",
                ErrorCode.UNSUPPORTED_FORMAT,
                status=400,
            )
        if not options.requested_fields():
            raise AnalysisError(
                "Invalid analysis options: no fields requested",
                ErrorCode.INVALID_OPTIONS,
                status=400,
            )
        return payload

    async def analyze(
        self, payload: VideoPayload | None, options: AnalysisOptions,
    ) -> AnalysisResponse:
        started = time.monotonic()
        limiter = self._limits.get(self._caller_id)

        if not self._api_key:
            raise AnalysisError(
                "Gemini API key is not configured",
                ErrorCode.MISSING_API_KEY,
                status=500,
                rate_limit=limiter.info,
            )

        decision = limiter.check_and_reserve()
        if not decision.allowed:
            retry_after = decision.retry_after_seconds or limiter.window_seconds
            raise AnalysisError(
                f"Rate limit exceeded. Please wait {retry_after:.0f} seconds "
                "before making another request.",
                ErrorCode.RATE_LIMIT_EXCEEDED,
                status=429,
                retry_after_seconds=retry_after,
                rate_limit=limiter.info.model_copy(
                    update={"remaining": 0, "reset_time": time.time() + retry_after}
                ),
            )

        try:
            video = self._validate(payload, options)
            analysis = await self._generate(video, options)
        except AnalysisError as exc:
            exc.rate_limit = limiter.info
            raise

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("Analyzed %s in %.0fms", video.filename, elapsed_ms)
        return AnalysisResponse.from_analysis(
            analysis, options, processing_time=elapsed_ms, rate_limit=limiter.info,
        )

    async def _generate(self, video: VideoPayload, options: AnalysisOptions) -> HookAnalysis:
        prompt = build_prompt(options.requested_fields())
        uploaded_name = ""
        try:
            if video.size >= LARGE_FILE_THRESHOLD:
                uploaded = await GeminiClient.upload_file(
                    video.path, video.mime_type, api_key=self._api_key,
                )
                uploaded_name = uploaded.name or ""
                video_part = types.Part(
                    file_data=types.FileData(file_uri=uploaded.uri, mime_type=video.mime_type)
                )
            else:
                data = await asyncio.to_thread(video.read_bytes)
                video_part = types.Part.from_bytes(data=data, mime_type=video.mime_type)

            contents = types.Content(role="user", parts=[types.Part(text=prompt), video_part])
            result = await GeminiClient.generate_structured(
                contents, schema=HookAnalysis, model=self._model, api_key=self._api_key,
            )
        except genai_errors.APIError as exc:
            logger.warning("Gemini API error for %s: %s", video.filename, exc)
            raise _gemini_error(str(exc), status=exc.code) from exc
        except (ValidationError, json.JSONDecodeError) as exc:
            raise AnalysisError(
                "Failed to parse structured output response",
                ErrorCode.ANALYSIS_FAILED,
                status=500,
                details=str(exc)[:500],
            ) from exc
        except RuntimeError as exc:
            raise _gemini_error(str(exc), status=500) from exc
        finally:
            if uploaded_name:
                await GeminiClient.delete_file(uploaded_name, api_key=self._api_key)
        return result  # type: ignore[return-value]


def _gemini_error(message: str, *, status: int | None) -> AnalysisError:
    code = code_from_gemini_message(message)
    friendly = {
        ErrorCode.QUOTA_EXCEEDED: "API quota exceeded. Please try again later.",
        ErrorCode.CONTENT_BLOCKED: "Video content was blocked by safety filters.",
        ErrorCode.UNSUPPORTED_FORMAT: "Video format not supported for analysis.",
    }.get(code, "Failed to analyze video")
    return AnalysisError(friendly, code, status=status or 500, details=message)


def _wire_rate_limit(raw: Any) -> RateLimitInfo | None:
    """Decode a camelCase ``rateLimitInfo`` block; millisecond epochs are converted."""
    if not isinstance(raw, dict):
        return None
    try:
        reset = float(raw["resetTime"])
        if reset > 1e11:
            reset /= 1000.0
        return RateLimitInfo(
            remaining=max(0, int(raw.get("remaining", 0))),
            reset_time=reset,
            requests_in_last_minute=max(0, int(raw.get("requestsInLastMinute", 0))),
            max_requests_per_minute=max(1, int(raw.get("maxRequestsPerMinute", 1))),
        )
    except (KeyError, TypeError, ValueError, ValidationError):
        logger.debug("Ignoring malformed rateLimitInfo: %r", raw)
        return None


_WIRE_FIELDS = {
    "visualHook": "visual_hook",
    "textHook": "text_hook",
    "voiceHook": "voice_hook",
    "videoScript": "video_script",
    "painPoint": "pain_point",
}


class HttpAnalysisClient:
    """Analyze videos through an HTTP analysis endpoint.

    Args:
        base_url: Endpoint origin, e.g. ``http://localhost:3000``.
        http_client: Optional pre-built ``httpx.AsyncClient`` (not closed by us).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        path: str = ANALYZE_VIDEO_PATH,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def analyze(
        self, payload: VideoPayload | None, options: AnalysisOptions,
    ) -> AnalysisResponse:
        if payload is None or not payload.exists():
            raise AnalysisError("No video file provided", ErrorCode.MISSING_VIDEO_FILE)

        data = await asyncio.to_thread(payload.read_bytes)
        try:
            response = await self._http.post(
                self._url,
                files={"video": (payload.filename, data, payload.mime_type)},
                data={"options": json.dumps(options.to_wire())},
            )
        except httpx.TimeoutException as exc:
            raise AnalysisError("Request timeout", ErrorCode.NETWORK_ERROR, details=str(exc)) from exc
        except httpx.TransportError as exc:
            raise AnalysisError(
                f"Network error: {exc}", ErrorCode.NETWORK_ERROR, details=str(exc),
            ) from exc

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("analysis endpoint did not return an object")
        except ValueError as exc:
            code = code_for_status(response.status_code, fallback=ErrorCode.ANALYSIS_FAILED)
            raise AnalysisError(
                f"Invalid response from analysis endpoint (HTTP {response.status_code})",
                code,
                status=response.status_code,
                retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            ) from exc

        rate_limit = _wire_rate_limit(body.get("rateLimitInfo"))
        data_block = body.get("data")
        if body.get("success") and isinstance(data_block, dict):
            fields = {
                attr: data_block.get(wire)
                for wire, attr in _WIRE_FIELDS.items()
                if attr in options.requested_fields()
            }
            return AnalysisResponse(
                **fields,
                processing_time=float(data_block.get("processingTime") or 0.0),
                rate_limit=rate_limit,
            )

        raise self._error_from_body(response, body.get("error"), rate_limit)

    @staticmethod
    def _error_from_body(
        response: httpx.Response, error: object, rate_limit: RateLimitInfo | None,
    ) -> AnalysisError:
        if isinstance(error, str) and error:
            error = {"message": error}
        elif not isinstance(error, dict):
            error = {}
        try:
            code = ErrorCode(error.get("code", ""))
        except ValueError:
            code = code_for_status(response.status_code, fallback=ErrorCode.ANALYSIS_FAILED)

        details = error.get("details")
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if retry_after is None and isinstance(details, dict):
            retry_after = parse_retry_after(str(details.get("retryAfter", "")))

        return AnalysisError(
            error.get("message") or f"Analysis failed (HTTP {response.status_code})",
            code,
            status=response.status_code,
            retry_after_seconds=retry_after,
            rate_limit=rate_limit,
            details=details if isinstance(details, str) else (json.dumps(details) if details else ""),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
