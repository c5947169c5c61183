"""Queue and analysis models — work items, quota snapshots, status and results.

``HookAnalysis`` is the structured-output schema sent to Gemini. The other
models describe the queue's bookkeeping: ``WorkItem`` is the only mutable
record (owned by the scheduler); everything handed to subscribers is a
fresh pydantic snapshot.
"""

from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

SUPPORTED_VIDEO_EXTENSIONS: dict[str, str] = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".m4v": "video/mp4",
}

HOOK_FIELDS: tuple[str, ...] = (
    "visual_hook",
    "text_hook",
    "voice_hook",
    "video_script",
    "pain_point",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_item_id() -> str:
    return uuid.uuid4().hex[:12]


class AnalysisStatus(str, Enum):
    """Per-video lifecycle as shown to the user."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class QueueState(str, Enum):
    """Scheduler states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    DRAINING = "draining"
    STOPPED = "stopped"


class AnalysisOptions(BaseModel):
    """Which fields to extract from a video. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    include_visual_hook: bool = True
    include_text_hook: bool = True
    include_voice_hook: bool = True
    include_video_script: bool = True
    include_pain_point: bool = True

    def requested_fields(self) -> list[str]:
        """Names of the HookAnalysis fields this option set asks for."""
        return [name for name in HOOK_FIELDS if getattr(self, f"include_{name}")]

    def to_wire(self) -> dict[str, bool]:
        """camelCase form used by the HTTP analysis endpoint."""
        return {
            "includeVisualHook": self.include_visual_hook,
            "includeTextHook": self.include_text_hook,
            "includeVoiceHook": self.include_voice_hook,
            "includeVideoScript": self.include_video_script,
            "includePainPoint": self.include_pain_point,
        }


class HookAnalysis(BaseModel):
    """Structured Gemini output for one video."""

    visual_hook: str = Field(
        default="",
        description="The most compelling visual element that grabs attention in the first 3 seconds",
    )
    text_hook: str = Field(
        default="", description="Suggested engaging on-screen text or caption for the video",
    )
    voice_hook: str = Field(
        default="", description="Compelling verbal hook, tagline, or opening line",
    )
    video_script: str = Field(
        default="", description="Complete transcript of all spoken content with [MM:SS] timestamps",
    )
    pain_point: str = Field(
        default="", description="Problem the video addresses and how it positions the solution",
    )


class RateLimitInfo(BaseModel):
    """Point-in-time quota snapshot. ``reset_time`` is epoch seconds."""

    remaining: int = Field(ge=0)
    reset_time: float
    requests_in_last_minute: int = Field(default=0, ge=0)
    max_requests_per_minute: int = Field(ge=1)


class AnalysisResponse(BaseModel):
    """Successful remote analysis, filtered to the requested fields."""

    visual_hook: str | None = None
    text_hook: str | None = None
    voice_hook: str | None = None
    video_script: str | None = None
    pain_point: str | None = None
    processing_time: float = 0.0
    rate_limit: RateLimitInfo | None = None

    @classmethod
    def from_analysis(
        cls,
        analysis: HookAnalysis,
        options: AnalysisOptions,
        *,
        processing_time: float,
        rate_limit: RateLimitInfo | None = None,
    ) -> AnalysisResponse:
        fields = {name: getattr(analysis, name) for name in options.requested_fields()}
        return cls(**fields, processing_time=processing_time, rate_limit=rate_limit)


@dataclass(frozen=True)
class VideoPayload:
    """Handle to a video on local disk. The queue never reads the bytes."""

    path: Path
    filename: str
    size: int
    mime_type: str

    @classmethod
    def from_path(cls, path: str | Path) -> VideoPayload:
        p = Path(path).expanduser().resolve()
        mime = SUPPORTED_VIDEO_EXTENSIONS.get(p.suffix.lower())
        if mime is None:
            mime = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
        return cls(path=p, filename=p.name, size=p.stat().st_size, mime_type=mime)

    def exists(self) -> bool:
        return self.path.is_file()

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class WorkItem:
    """One video's pending analysis, mutated in place by the scheduler."""

    id: str = field(default_factory=new_item_id)
    filename: str = ""
    size: int = 0
    payload: VideoPayload | None = None
    options: AnalysisOptions = field(default_factory=AnalysisOptions)
    retry_count: int = 0
    max_retries: int = 3
    last_attempt_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    not_before: float = 0.0

    @classmethod
    def for_payload(
        cls,
        payload: VideoPayload,
        options: AnalysisOptions | None = None,
        *,
        max_retries: int = 3,
        item_id: str | None = None,
    ) -> WorkItem:
        return cls(
            id=item_id or new_item_id(),
            filename=payload.filename,
            size=payload.size,
            payload=payload,
            options=options or AnalysisOptions(),
            max_retries=max_retries,
        )

    def validate(self) -> None:
        """Raise ValueError when the item breaks the enqueue contract."""
        if not self.id:
            raise ValueError("WorkItem.id must be non-empty")
        if not self.filename:
            raise ValueError(f"WorkItem {self.id} has no filename")
        if self.retry_count < 0 or self.max_retries < 0:
            raise ValueError(f"WorkItem {self.id} has negative retry counters")
        if not isinstance(self.options, AnalysisOptions):
            raise ValueError(f"WorkItem {self.id} options must be AnalysisOptions")

    def reset_retries(self) -> None:
        self.retry_count = 0
        self.last_attempt_at = None
        self.not_before = 0.0


class QueueStatus(BaseModel):
    """Derived, read-only view of the scheduler."""

    state: QueueState
    position: int
    estimated_wait_time: float
    is_processing: bool
    is_paused: bool
    total_in_queue: int
    completed_count: int
    error_count: int


class QueueStatistics(BaseModel):
    """Running counters across the lifetime of the queue."""

    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    average_processing_time_ms: float = 0.0
    success_rate: float = 0.0
    started_at: datetime | None = None

    def record_success(self, processing_time_ms: float) -> None:
        total_time = self.average_processing_time_ms * self.success_count
        self.success_count += 1
        self.total_processed += 1
        self.average_processing_time_ms = (total_time + processing_time_ms) / self.success_count
        self._update_rate()

    def record_error(self) -> None:
        self.error_count += 1
        self.total_processed += 1
        self._update_rate()

    def _update_rate(self) -> None:
        self.success_rate = self.success_count / self.total_processed if self.total_processed else 0.0


class AnalysisResult(BaseModel):
    """Outcome for one WorkItem as emitted to subscribers."""

    id: str
    filename: str
    status: AnalysisStatus
    visual_hook: str | None = None
    text_hook: str | None = None
    voice_hook: str | None = None
    video_script: str | None = None
    pain_point: str | None = None
    processing_time: float | None = None
    error: str | None = None
    error_code: str | None = None
    created_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AnalysisStatus.COMPLETED, AnalysisStatus.ERROR)


class PersistedItem(BaseModel):
    """Metadata kept for a queued item across restarts. Never the payload."""

    id: str
    filename: str
    size: int = 0
    retry_count: int = 0


class PersistedQueueState(BaseModel):
    """Record written by QueueStateDB."""

    items: list[PersistedItem] = Field(default_factory=list)
    rate_limit_info: RateLimitInfo | None = None
    statistics: QueueStatistics = Field(default_factory=QueueStatistics)
    saved_at: datetime = Field(default_factory=_now)


class PersistedResults(BaseModel):
    """Terminal results kept so completed analyses survive a restart."""

    results: list[AnalysisResult] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=_now)
