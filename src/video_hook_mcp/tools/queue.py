"""Queue tools — 13 tools on a FastMCP sub-server.

The tools drive the process-wide AnalysisQueue through its public
methods only. Every tool returns a plain dict; failures come back as
``ToolError`` dicts from :func:`make_tool_error`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from ..config import get_config, update_config
from ..errors import make_tool_error
from ..models.analysis import (
    SUPPORTED_VIDEO_EXTENSIONS,
    AnalysisOptions,
    AnalysisResult,
    AnalysisStatus,
    QueueState,
    VideoPayload,
)
from ..results import export_csv, export_json, write_export
from ..runtime import QueueRuntime, get_runtime, rebuild_runtime
from ..tracing import trace
from ..types import (
    ExportField,
    ExportFormat,
    ItemIds,
    ResultStatus,
    VideoDirectoryPath,
    VideoPaths,
    coerce_json_param,
)

queue_server = FastMCP("queue")

_SENSITIVE_CONFIG_FIELDS = {"gemini_api_key"}


def _snapshot(runtime: QueueRuntime) -> dict:
    """Status, statistics, quota and orphaned items in one payload."""
    queue = runtime.queue
    return {
        "status": queue.status().model_dump(mode="json"),
        "statistics": queue.statistics.model_dump(mode="json"),
        "rate_limit": queue.rate_limit_info.model_dump(mode="json"),
        "orphaned_items": [item.model_dump(mode="json") for item in queue.orphaned_items],
    }


def _collect_paths(paths: list[str] | None, directory: str | None, glob_pattern: str) -> list[Path]:
    found = [Path(p).expanduser().resolve() for p in paths or []]
    if directory:
        dir_path = Path(directory).expanduser().resolve()
        if not dir_path.is_dir():
            raise ValueError(f"Not a directory: {directory}")
        found.extend(sorted(
            f for f in dir_path.glob(glob_pattern)
            if f.is_file() and f.suffix.lower() in SUPPORTED_VIDEO_EXTENSIONS
        ))
    if not found:
        raise ValueError("Provide at least one video path or a directory")
    return found


def _payload_for(path: Path, max_bytes: int) -> VideoPayload:
    """Validate a local file the way the upload form does before queueing it."""
    if not path.is_file():
        raise FileNotFoundError(f"Video file not found: {path}")
    if path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
        raise ValueError(f"Unsupported video format: {path.suffix or path.name}")
    payload = VideoPayload.from_path(path)
    if payload.size > max_bytes:
        raise ValueError(
            f"{payload.filename} is {payload.size // (1024 * 1024)}MB; "
            f"the limit is {max_bytes // (1024 * 1024)}MB"
        )
    return payload


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
@trace(name="queue_add_videos", span_type="TOOL")
async def queue_add_videos(
    paths: VideoPaths = None,
    directory: VideoDirectoryPath = None,
    glob_pattern: Annotated[str, Field(description="Glob applied inside directory")] = "*",
    include_visual_hook: bool = True,
    include_text_hook: bool = True,
    include_voice_hook: bool = True,
    include_video_script: bool = True,
    include_pain_point: bool = True,
    start: Annotated[bool, Field(description="Start processing right away")] = False,
) -> dict:
    """Add local video files to the analysis queue.

    Files that are missing, too large, or in an unsupported format are
    skipped and reported; the rest are queued with the chosen fields.

    Args:
        paths: Individual video files.
        directory: Directory to scan for supported videos.
        glob_pattern: Filter for files within directory.
        include_visual_hook: Extract the opening visual hook.
        include_text_hook: Suggest an on-screen text hook.
        include_voice_hook: Extract the verbal hook.
        include_video_script: Transcribe the full script.
        include_pain_point: Identify the pain point addressed.
        start: Start the queue after adding.

    Returns:
        Dict with added items, skipped files, and the queue snapshot.
    """
    paths = coerce_json_param(paths, list)
    try:
        options = AnalysisOptions(
            include_visual_hook=include_visual_hook,
            include_text_hook=include_text_hook,
            include_voice_hook=include_voice_hook,
            include_video_script=include_video_script,
            include_pain_point=include_pain_point,
        )
        if not options.requested_fields():
            raise ValueError("Enable at least one extraction field")
        candidates = _collect_paths(paths, directory, glob_pattern)
    except Exception as exc:
        return make_tool_error(exc)

    max_bytes = get_config().max_video_size_bytes
    payloads: list[VideoPayload] = []
    skipped: list[dict] = []
    for path in candidates:
        try:
            payloads.append(_payload_for(path, max_bytes))
        except (OSError, ValueError) as exc:
            skipped.append({"path": str(path), "error": str(exc)})

    runtime = get_runtime()
    try:
        ids = runtime.queue.add_videos(payloads, options)
        for item_id, payload in zip(ids, payloads):
            runtime.results.add(AnalysisResult(
                id=item_id, filename=payload.filename, status=AnalysisStatus.PENDING,
            ))
        if start and ids:
            runtime.queue.start()
    except Exception as exc:
        return make_tool_error(exc)

    return {
        "added": [{"id": i, "filename": p.filename} for i, p in zip(ids, payloads)],
        "skipped": skipped,
        **_snapshot(runtime),
    }


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
@trace(name="queue_start", span_type="TOOL")
async def queue_start() -> dict:
    """Start (or resume) processing the queued videos.

    Returns:
        Dict with ``started`` and the queue snapshot.
    """
    runtime = get_runtime()
    try:
        started = runtime.queue.start()
    except Exception as exc:
        return make_tool_error(exc)
    return {"started": started, **_snapshot(runtime)}


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_pause", span_type="TOOL")
async def queue_pause() -> dict:
    """Pause dispatching. A call already in flight still completes."""
    runtime = get_runtime()
    runtime.queue.pause()
    return _snapshot(runtime)


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
@trace(name="queue_resume", span_type="TOOL")
async def queue_resume() -> dict:
    """Resume a paused queue."""
    runtime = get_runtime()
    resumed = runtime.queue.resume()
    return {"resumed": resumed, **_snapshot(runtime)}


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_stop", span_type="TOOL")
async def queue_stop() -> dict:
    """Stop the queue and drop all pending videos.

    Results already collected are kept; a late result from the call in
    flight is discarded.
    """
    runtime = get_runtime()
    dropped = len(runtime.queue.pending_ids)
    runtime.queue.stop()
    runtime.results.discard([r.id for r in runtime.results.results() if not r.is_terminal])
    return {"dropped": dropped, **_snapshot(runtime)}


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
@trace(name="queue_drain", span_type="TOOL")
async def queue_drain() -> dict:
    """Finish everything already queued, refusing new videos until idle."""
    runtime = get_runtime()
    runtime.queue.drain()
    return _snapshot(runtime)


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_status", span_type="TOOL")
async def queue_status() -> dict:
    """Current queue state, position, ETA, statistics and quota.

    Returns:
        Dict with status, statistics, rate_limit, orphaned_items, and
        pending/failed item IDs.
    """
    runtime = get_runtime()
    return {
        **_snapshot(runtime),
        "pending_ids": runtime.queue.pending_ids,
        "failed_ids": runtime.queue.failed_ids,
    }


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
    )
)
@trace(name="queue_retry", span_type="TOOL")
async def queue_retry(ids: ItemIds = None) -> dict:
    """Re-queue failed videos with a fresh retry budget.

    Args:
        ids: Failed item IDs to retry; omit to retry every failed item.

    Returns:
        Dict with ``retried`` count and the queue snapshot.
    """
    ids = coerce_json_param(ids, list)
    runtime = get_runtime()
    try:
        targets = runtime.queue.failed_ids if ids is None else list(ids)
        retried = runtime.queue.retry_failed(targets)
    except Exception as exc:
        return make_tool_error(exc)
    for item_id in targets:
        previous = runtime.results.get(item_id)
        if previous is not None and previous.status is AnalysisStatus.ERROR:
            runtime.results.add(AnalysisResult(
                id=item_id,
                filename=previous.filename,
                status=AnalysisStatus.PENDING,
                created_at=previous.created_at,
            ))
    return {"retried": retried, **_snapshot(runtime)}


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_remove", span_type="TOOL")
async def queue_remove(ids: Annotated[list[str], Field(description="Item IDs to delete")]) -> dict:
    """Delete videos from the queue and their results from the result table."""
    ids = coerce_json_param(ids, list)
    runtime = get_runtime()
    removed = runtime.queue.remove(ids)
    runtime.results.discard(ids)
    return {"removed": removed, **_snapshot(runtime)}


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_clear", span_type="TOOL")
async def queue_clear() -> dict:
    """Stop the queue, delete all items and results, and reset statistics."""
    runtime = get_runtime()
    runtime.queue.clear()
    runtime.results.clear()
    return _snapshot(runtime)


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_results", span_type="TOOL")
async def queue_results(
    status: ResultStatus | None = None,
    item_id: Annotated[str | None, Field(description="Return a single item's result")] = None,
) -> dict:
    """List analysis results, newest status per video.

    Args:
        status: Only results in this status.
        item_id: Only this item.

    Returns:
        Dict with count and results.
    """
    runtime = get_runtime()
    if item_id is not None:
        result = runtime.results.get(item_id)
        selected = [result] if result is not None else []
    else:
        selected = runtime.results.results(status)
    return {
        "count": len(selected),
        "results": [r.model_dump(mode="json") for r in selected],
    }


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_export", span_type="TOOL")
async def queue_export(
    format: ExportFormat = "csv",
    fields: Annotated[list[ExportField] | None, Field(
        description="Columns to include; filename and status are always exported",
    )] = None,
    status: ResultStatus | None = "completed",
    output_path: Annotated[str | None, Field(
        description="Write the export here instead of returning it inline",
    )] = None,
) -> dict:
    """Export results as CSV or JSON.

    Args:
        format: "csv" or "json".
        fields: Columns to include.
        status: Only export results in this status (default completed).
        output_path: Optional file to write.

    Returns:
        Dict with format, count, and either ``content`` or ``path``.
    """
    fields = coerce_json_param(fields, list)
    runtime = get_runtime()
    try:
        selected = runtime.results.results(status)
        render = export_csv if format == "csv" else export_json
        content = render(selected, fields=fields)
        out: dict = {"format": format, "count": len(selected)}
        if output_path:
            out["path"] = str(write_export(content, output_path))
        else:
            out["content"] = content
        return out
    except Exception as exc:
        return make_tool_error(exc)


@queue_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
@trace(name="queue_configure", span_type="TOOL")
async def queue_configure(
    rate_limit_per_minute: Annotated[int | None, Field(ge=1, description="Requests allowed per window")] = None,
    max_retries: Annotated[int | None, Field(ge=0, description="Retries per video")] = None,
    retry_base_delay: Annotated[float | None, Field(gt=0, description="Backoff base in seconds")] = None,
    min_pacing_seconds: Annotated[float | None, Field(ge=0, description="Minimum delay between calls")] = None,
    request_timeout: Annotated[float | None, Field(gt=0, description="Per-call timeout in seconds")] = None,
    model: Annotated[str | None, Field(description="Gemini model ID")] = None,
) -> dict:
    """Change queue settings. Only allowed while the queue is idle or stopped.

    Rebuilds the queue with the new settings; collected results and
    statistics are kept.

    Returns:
        Dict with the current config (secrets removed).
    """
    overrides = {
        "rate_limit_per_minute": rate_limit_per_minute,
        "max_retries": max_retries,
        "retry_base_delay": retry_base_delay,
        "min_pacing_seconds": min_pacing_seconds,
        "request_timeout": request_timeout,
        "default_model": model,
    }
    try:
        if any(v is not None for v in overrides.values()):
            state = get_runtime().queue.state
            if state not in (QueueState.IDLE, QueueState.STOPPED):
                raise ValueError(f"Queue is {state.value}; stop it or let it finish first")
            update_config(**overrides)
            await rebuild_runtime()
    except Exception as exc:
        return make_tool_error(exc)
    return {"current_config": get_config().model_dump(exclude=_SENSITIVE_CONFIG_FIELDS)}
