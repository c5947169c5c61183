"""Server configuration via environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator

DEFAULT_RATE_LIMIT_PER_MINUTE = 10
LARGE_FILE_THRESHOLD = 20 * 1024 * 1024  # 20 MB


def _is_env_placeholder(value: str) -> bool:
    """Return True when *value* looks like an unresolved shell placeholder."""
    if value.startswith("${") and value.endswith("}"):
        inner = value[2:-1].strip()
        if ":-" in inner:
            inner = inner.split(":-", 1)[0].strip()
        return bool(inner) and all(ch.isalnum() or ch == "_" for ch in inner)
    if value.startswith("$"):
        inner = value[1:].strip()
        return bool(inner) and all(ch.isalnum() or ch == "_" for ch in inner)
    return False


def _normalize_remote_url(raw: str) -> str:
    """Normalize VIDEO_HOOK_REMOTE_URL from env.

    Unresolved placeholders and blanks mean "call Gemini directly".
    A trailing slash is dropped so paths can be joined safely.
    """
    value = raw.strip()
    if not value or _is_env_placeholder(value):
        return ""
    return value.rstrip("/")


def _resolve_tracing_enabled(flag_value: str, tracking_uri: str) -> bool:
    """Derive tracing_enabled from env vars.

    - ``VIDEO_HOOK_TRACING_ENABLED=false`` → always disabled (explicit opt-out).
    - Otherwise enabled when ``MLFLOW_TRACKING_URI`` is non-empty.
    """
    if flag_value.lower() == "false":
        return False
    return bool(tracking_uri)


class ServerConfig(BaseModel):
    """Runtime configuration resolved from environment."""

    gemini_api_key: str = Field(default="")
    default_model: str = Field(default="gemini-2.5-flash")
    rate_limit_per_minute: int = Field(default=DEFAULT_RATE_LIMIT_PER_MINUTE)
    rate_limit_window_seconds: float = Field(default=60.0)
    max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=2.0)
    min_pacing_seconds: float = Field(default=1.0)
    request_timeout: float = Field(default=120.0)
    max_video_size_mb: int = Field(default=100)
    state_db_path: str = Field(default="")
    queue_name: str = Field(default="video-analysis-queue")
    remote_url: str = Field(default="")
    tracing_enabled: bool = Field(default=False)
    mlflow_tracking_uri: str = Field(default="")
    mlflow_experiment_name: str = Field(default="video-hook-mcp")

    @field_validator("rate_limit_per_minute", "max_video_size_mb")
    @classmethod
    def validate_positive_ints(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Configuration values must be >= 1")
        return value

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_retries must be >= 0")
        return value

    @field_validator("rate_limit_window_seconds", "retry_base_delay", "request_timeout")
    @classmethod
    def validate_positive_durations(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Durations must be > 0")
        return value

    @field_validator("min_pacing_seconds")
    @classmethod
    def validate_min_pacing(cls, value: float) -> float:
        if value < 0:
            raise ValueError("min_pacing_seconds must be >= 0")
        return value

    @property
    def max_video_size_bytes(self) -> int:
        return self.max_video_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build config from environment variables."""
        from pathlib import Path

        state_default = str(Path.home() / ".cache" / "video-hook-mcp" / "queue.db")
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", ""),
            default_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            rate_limit_per_minute=int(
                os.getenv("VIDEO_HOOK_RATE_LIMIT_PER_MINUTE", str(DEFAULT_RATE_LIMIT_PER_MINUTE))
            ),
            rate_limit_window_seconds=float(os.getenv("VIDEO_HOOK_RATE_LIMIT_WINDOW", "60")),
            max_retries=int(os.getenv("VIDEO_HOOK_MAX_RETRIES", "3")),
            retry_base_delay=float(os.getenv("VIDEO_HOOK_RETRY_BASE_DELAY", "2.0")),
            min_pacing_seconds=float(os.getenv("VIDEO_HOOK_MIN_PACING", "1.0")),
            request_timeout=float(os.getenv("VIDEO_HOOK_REQUEST_TIMEOUT", "120")),
            max_video_size_mb=int(os.getenv("VIDEO_HOOK_MAX_VIDEO_SIZE_MB", "100")),
            state_db_path=os.getenv("VIDEO_HOOK_STATE_DB", state_default),
            queue_name=os.getenv("VIDEO_HOOK_QUEUE_NAME", "video-analysis-queue"),
            remote_url=_normalize_remote_url(os.getenv("VIDEO_HOOK_REMOTE_URL", "")),
            tracing_enabled=_resolve_tracing_enabled(
                os.getenv("VIDEO_HOOK_TRACING_ENABLED", ""),
                os.getenv("MLFLOW_TRACKING_URI", ""),
            ),
            mlflow_tracking_uri=os.getenv("MLFLOW_TRACKING_URI", ""),
            mlflow_experiment_name=os.getenv("MLFLOW_EXPERIMENT_NAME", "video-hook-mcp"),
        )


_config: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Return the global config, creating it on first access.

    Loads ``~/.config/video-hook-mcp/.env`` before reading env vars.
    Process environment always takes precedence over the config file.
    """
    global _config
    if _config is None:
        import logging

        from .dotenv import load_dotenv

        injected = load_dotenv()
        if injected:
            logger = logging.getLogger(__name__)
            logger.info(
                "Loaded %d var(s) from config: %s",
                len(injected),
                ", ".join(injected.keys()),
            )
        _config = ServerConfig.from_env()
    return _config


def update_config(**overrides: object) -> ServerConfig:
    """Patch the live config (used by the ``queue_configure`` tool)."""
    global _config
    cfg = get_config()
    data = cfg.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    _config = ServerConfig(**data)
    return _config
