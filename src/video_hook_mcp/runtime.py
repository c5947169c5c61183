"""Process-wide queue runtime used by the MCP tools.

One ``QueueRuntime`` per server process, created lazily from the current
``ServerConfig`` on the first tool call and torn down by the server
lifespan. Tests swap it with :func:`set_runtime`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .config import ServerConfig, get_config
from .persistence import QueueStateDB
from .queue import AnalysisQueue
from .rate_limit import RateLimitState
from .remote import GeminiAnalysisClient, HttpAnalysisClient, RemoteAnalysisClient
from .results import ResultCollector

logger = logging.getLogger(__name__)


@dataclass
class QueueRuntime:
    """The queue together with the collaborators it was built from."""

    queue: AnalysisQueue
    results: ResultCollector
    client: RemoteAnalysisClient
    store: QueueStateDB | None
    unsubscribe: Callable[[], None]

    async def aclose(self) -> None:
        self.unsubscribe()
        await self.queue.aclose()
        if isinstance(self.client, HttpAnalysisClient):
            await self.client.aclose()
        if self.store is not None:
            self.store.close()


def build_client(cfg: ServerConfig | None = None) -> RemoteAnalysisClient:
    """HttpAnalysisClient when a remote endpoint is configured, else Gemini directly."""
    cfg = cfg or get_config()
    if cfg.remote_url:
        logger.info("Analyses go through %s", cfg.remote_url)
        return HttpAnalysisClient(cfg.remote_url, timeout=cfg.request_timeout)
    return GeminiAnalysisClient()


def build_runtime(
    client: RemoteAnalysisClient | None = None,
    *,
    results: ResultCollector | None = None,
    store: QueueStateDB | None = None,
) -> QueueRuntime:
    """Wire a queue to a client, a result collector and the configured store.

    A fresh collector is filled from the results saved in the store.
    """
    cfg = get_config()
    client = client or build_client(cfg)
    if results is None:
        results = ResultCollector()
    if store is None and cfg.state_db_path:
        store = QueueStateDB(cfg.state_db_path)
    if store is not None:
        results.bind(store, cfg.queue_name)

    queue = AnalysisQueue(
        client,
        rate_limit=RateLimitState(
            cfg.rate_limit_per_minute, window_seconds=cfg.rate_limit_window_seconds,
        ),
        store=store,
        store_key=cfg.queue_name,
    )
    unsubscribe = queue.subscribe(on_result=results.add, on_item_status=results.add)
    return QueueRuntime(queue, results, client, store, unsubscribe)


_runtime: QueueRuntime | None = None


def get_runtime() -> QueueRuntime:
    """Return the process runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: QueueRuntime | None) -> None:
    global _runtime
    _runtime = runtime


async def close_runtime() -> bool:
    """Dispose the current runtime. Returns True if one existed."""
    global _runtime
    runtime, _runtime = _runtime, None
    if runtime is None:
        return False
    await runtime.aclose()
    logger.info("Queue runtime closed")
    return True


async def rebuild_runtime() -> QueueRuntime:
    """Replace the runtime after a config change, keeping collected results."""
    results = _runtime.results if _runtime is not None else None
    await close_runtime()
    runtime = build_runtime(results=results)
    set_runtime(runtime)
    return runtime
