"""Main FastMCP server — mounts the queue sub-server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from . import tracing
from .client import GeminiClient
from .runtime import close_runtime
from .tools.queue import queue_server

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(server: FastMCP):
    """Startup/shutdown hook — disposes the queue and shared Gemini clients."""
    tracing.setup()
    yield {}
    await close_runtime()
    closed = await GeminiClient.close_all()
    tracing.shutdown()
    logger.info("Lifespan shutdown: closed %d client(s)", closed)


app = FastMCP(
    "video-hook",
    instructions=(
        "Rate-limited batch video analysis. Add local videos, start the queue, "
        "and collect marketing hooks (visual, text, voice), full scripts and "
        "pain points extracted by Gemini. The queue paces calls under a "
        "per-minute quota, retries transient failures, and exports CSV/JSON."
    ),
    lifespan=_lifespan,
)

app.mount(queue_server)


def main() -> None:
    """Entry-point for ``video-hook-mcp`` console script."""
    app.run()


if __name__ == "__main__":
    main()
