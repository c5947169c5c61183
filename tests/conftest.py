"""Shared test fixtures for video-hook-mcp."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from video_hook_mcp.models.analysis import (
    AnalysisOptions,
    AnalysisResponse,
    VideoPayload,
    WorkItem,
)
from video_hook_mcp.queue import AnalysisQueue
from video_hook_mcp.rate_limit import RateLimitState


def unwrap_tool(tool: Any) -> Any:
    """Return the coroutine behind a FastMCP FunctionTool (2.x) or the function itself (3.x)."""
    return getattr(tool, "fn", tool)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAnalysisClient:
    """Scripted RemoteAnalysisClient.

    Each call consumes the next entry of ``outcomes``: exceptions are
    raised, responses returned. When the script runs out every call
    succeeds. Set ``gate`` to hold calls until the event is set.
    """

    def __init__(self, outcomes: list | None = None, *, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: list[tuple[str | None, float]] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    @property
    def filenames(self) -> list[str | None]:
        return [name for name, _ in self.calls]

    @property
    def call_times(self) -> list[float]:
        return [t for _, t in self.calls]

    async def analyze(self, payload: VideoPayload | None, options: AnalysisOptions) -> AnalysisResponse:
        self.calls.append((payload.filename if payload else None, time.time()))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return AnalysisResponse(
                visual_hook=f"hook for {payload.filename}", pain_point="slow edits", processing_time=12.0,
            )
        return outcome


def make_item(name: str, *, max_retries: int = 3, **kwargs: Any) -> WorkItem:
    """WorkItem with an in-memory payload handle; nothing is read from disk."""
    payload = VideoPayload(path=Path("/videos") / name, filename=name, size=1024, mime_type="video/mp4")
    return WorkItem(filename=name, size=payload.size, payload=payload, max_retries=max_retries, **kwargs)


@pytest.fixture(autouse=True)
def _set_dummy_api_key(monkeypatch):
    """Ensure tests never hit real Gemini API."""
    monkeypatch.setenv("GEMINI_API_KEY", "test-key-not-real")


@pytest.fixture(autouse=True)
def _disable_tracing(monkeypatch):
    monkeypatch.setenv("VIDEO_HOOK_TRACING_ENABLED", "false")


@pytest.fixture(autouse=True)
def _isolate_dotenv(tmp_path, monkeypatch):
    """Prevent tests from loading the user's real ~/.config/video-hook-mcp/.env."""
    monkeypatch.setattr(
        "video_hook_mcp.dotenv.DEFAULT_ENV_PATH",
        tmp_path / "nonexistent.env",
    )


@pytest.fixture(autouse=True)
def _isolate_state(tmp_path, monkeypatch):
    """Fresh config singleton, runtime and state DB location for every test."""
    import video_hook_mcp.config as cfg_mod
    import video_hook_mcp.runtime as runtime_mod

    monkeypatch.setenv("VIDEO_HOOK_STATE_DB", str(tmp_path / "state" / "queue.db"))
    monkeypatch.delenv("VIDEO_HOOK_REMOTE_URL", raising=False)
    cfg_mod._config = None
    runtime_mod._runtime = None
    yield
    cfg_mod._config = None
    runtime_mod._runtime = None


@pytest.fixture()
def fake_client():
    return FakeAnalysisClient()


@pytest.fixture()
async def make_queue():
    """Factory for fast AnalysisQueues (tiny backoff, no pacing floor); closed on teardown."""
    created: list[AnalysisQueue] = []

    def _make(client, **kwargs) -> AnalysisQueue:
        kwargs.setdefault("rate_limit", RateLimitState(100, window_seconds=1.0))
        kwargs.setdefault("min_pacing_seconds", 0.0)
        kwargs.setdefault("retry_base_delay", 0.01)
        kwargs.setdefault("request_timeout", 5.0)
        queue = AnalysisQueue(client, **kwargs)
        created.append(queue)
        return queue

    yield _make
    for queue in created:
        await queue.aclose()


@pytest.fixture()
def mock_gemini_client():
    """Patch GeminiClient.get(), .generate_structured() and the File API helpers."""
    with (
        patch("video_hook_mcp.client.GeminiClient.get") as mock_get,
        patch(
            "video_hook_mcp.client.GeminiClient.generate_structured", new_callable=AsyncMock,
        ) as mock_structured,
        patch(
            "video_hook_mcp.client.GeminiClient.upload_file", new_callable=AsyncMock,
        ) as mock_upload,
        patch(
            "video_hook_mcp.client.GeminiClient.delete_file", new_callable=AsyncMock,
        ) as mock_delete,
    ):
        client = MagicMock()
        mock_get.return_value = client
        yield {
            "get": mock_get,
            "generate_structured": mock_structured,
            "upload_file": mock_upload,
            "delete_file": mock_delete,
            "client": client,
        }


@pytest.fixture()
def video_file(tmp_path) -> Path:
    """Small fake mp4 on disk."""
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)
    return path
