"""Shared type aliases and helpers for tool parameters."""

from __future__ import annotations

import json
from typing import Annotated, Literal

from pydantic import Field


def coerce_json_param(value: str | dict | list | None, expected_type: type) -> dict | list | None:
    """Parse list/dict params that arrived as JSON strings.

    Some MCP hosts serialize structured arguments as strings; pydantic would
    reject them, so tools coerce them back before use. Anything that does
    not parse to *expected_type* is returned unchanged.
    """
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value
    return parsed if isinstance(parsed, expected_type) else value


# ── Literal enums ────────────────────────────────────────────────────────────

ExportFormat = Literal["csv", "json"]
ResultStatus = Literal["pending", "processing", "completed", "error"]
ExportField = Literal[
    "visual_hook", "text_hook", "voice_hook", "video_script", "pain_point",
    "processing_time", "created_at", "completed_at",
]

# ── Annotated aliases ────────────────────────────────────────────────────────

VideoPaths = Annotated[list[str] | None, Field(
    description="Paths to local video files (mp4, mov, avi, mkv, webm, m4v)",
)]
VideoDirectoryPath = Annotated[str | None, Field(
    description="Directory whose supported video files are all added",
)]
ItemIds = Annotated[list[str] | None, Field(
    description="Queue item IDs as returned by queue_add_videos",
)]
