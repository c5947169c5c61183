"""Analysis queue — rate-limited, single-dispatch scheduler for video analysis.

The queue is an explicit state machine (idle, running, paused, draining,
stopped) driven by one-shot event-loop timers. Each timer fires a
synchronous ``_tick`` that either arms another timer (quota or backoff
wait) or starts exactly one dispatch task; the dispatch task re-arms the
next tick when it settles. Nothing calls itself recursively, so the stack
never grows with the number of items.

All mutations happen between awaits on the single event loop, so no
subscriber ever observes a half-applied update.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import get_config
from .errors import (
    DEFAULT_RETRY_POLICY,
    AnalysisError,
    ErrorCode,
    QueueClosedError,
    RetryPolicy,
    classify_exception,
)
from .models.analysis import (
    AnalysisOptions,
    AnalysisResponse,
    AnalysisResult,
    AnalysisStatus,
    PersistedItem,
    PersistedQueueState,
    QueueState,
    QueueStatistics,
    QueueStatus,
    RateLimitInfo,
    VideoPayload,
    WorkItem,
)
from .persistence import QueueStateDB
from .rate_limit import Clock, RateLimitState
from .remote import RemoteAnalysisClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[QueueStatus], None]
ResultCallback = Callable[[AnalysisResult], None]
RateLimitCallback = Callable[[RateLimitInfo], None]

_ACTIVE_STATES = (QueueState.RUNNING, QueueState.DRAINING)


@dataclass
class _Subscriber:
    on_progress: ProgressCallback | None = None
    on_result: ResultCallback | None = None
    on_rate_limit: RateLimitCallback | None = None
    on_item_status: ResultCallback | None = None


class AnalysisQueue:
    """Sequences video analyses under a per-minute request quota.

    Unset arguments fall back to :func:`~video_hook_mcp.config.get_config`.

    Args:
        client: The remote analysis boundary.
        rate_limit: Shared sliding-window state; built from config when omitted.
        max_retries: Retry ceiling for items created via :meth:`add_videos`.
        retry_base_delay: Backoff base in seconds (``base * 2**(n-1)``).
        min_pacing_seconds: Floor for the courtesy delay between dispatches.
        request_timeout: Seconds before an analysis call is abandoned.
        retry_policy: Which failures are retried.
        store: Optional metadata store; the queue never closes it.
        store_key: Row key used in *store*.
        clock: Epoch-seconds clock shared with *rate_limit*.
    """

    def __init__(
        self,
        client: RemoteAnalysisClient,
        *,
        rate_limit: RateLimitState | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        min_pacing_seconds: float | None = None,
        request_timeout: float | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        store: QueueStateDB | None = None,
        store_key: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        cfg = get_config()
        self._client = client
        self._clock = clock
        self._rate_limit = rate_limit or RateLimitState(
            cfg.rate_limit_per_minute,
            window_seconds=cfg.rate_limit_window_seconds,
            clock=clock,
        )
        self._max_retries = cfg.max_retries if max_retries is None else max_retries
        self._retry_base_delay = cfg.retry_base_delay if retry_base_delay is None else retry_base_delay
        self._min_pacing = cfg.min_pacing_seconds if min_pacing_seconds is None else min_pacing_seconds
        self._timeout = cfg.request_timeout if request_timeout is None else request_timeout
        self._retry_policy = retry_policy
        self._store = store
        self._store_key = store_key or cfg.queue_name

        self._state = QueueState.IDLE
        self._pending: list[WorkItem] = []
        self._inflight: WorkItem | None = None
        self._inflight_task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._run_id = 0
        self._run_processed = 0
        self._discarded: set[str] = set()
        self._stale_tasks: set[asyncio.Task] = set()
        self._failed: dict[str, WorkItem] = {}
        self._stats = QueueStatistics()
        self._orphans: list[PersistedItem] = []
        self._subscribers: list[_Subscriber] = []
        self._quiet = asyncio.Event()
        self._quiet.set()
        self._closed = False

        self._restore()

    # ── Read-only views ─────────────────────────────────────────────────────

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pacing_seconds(self) -> float:
        """Courtesy delay between dispatches: window / ceiling, floored."""
        per_request = self._rate_limit.window_seconds / self._rate_limit.max_requests_per_minute
        return max(self._min_pacing, per_request)

    @property
    def statistics(self) -> QueueStatistics:
        return self._stats.model_copy()

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        return self._rate_limit.info

    @property
    def pending_ids(self) -> list[str]:
        return [item.id for item in self._pending]

    @property
    def failed_ids(self) -> list[str]:
        return list(self._failed)

    @property
    def orphaned_items(self) -> list[PersistedItem]:
        """Items from a previous process whose video data could not be restored."""
        return [item.model_copy() for item in self._orphans]

    def status(self) -> QueueStatus:
        """Derive the current QueueStatus."""
        position = len(self._pending) + (1 if self._inflight is not None else 0)
        return QueueStatus(
            state=self._state,
            position=position,
            estimated_wait_time=round(position * self.pacing_seconds, 3),
            is_processing=self._state in (QueueState.RUNNING, QueueState.PAUSED, QueueState.DRAINING),
            is_paused=self._state is QueueState.PAUSED,
            total_in_queue=position + self._run_processed,
            completed_count=self._stats.success_count,
            error_count=self._stats.error_count,
        )

    # ── Subscriptions ───────────────────────────────────────────────────────

    def subscribe(
        self,
        *,
        on_progress: ProgressCallback | None = None,
        on_result: ResultCallback | None = None,
        on_rate_limit: RateLimitCallback | None = None,
        on_item_status: ResultCallback | None = None,
    ) -> Callable[[], None]:
        """Register callbacks; returns a function that removes them.

        ``on_result`` receives terminal results only (completed or error);
        ``on_item_status`` receives transient processing/pending changes.
        """
        sub = _Subscriber(on_progress, on_result, on_rate_limit, on_item_status)
        self._subscribers.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

        return unsubscribe

    def _notify(self, kind: str, payload: object) -> None:
        for sub in list(self._subscribers):
            callback = getattr(sub, kind)
            if callback is None:
                continue
            try:
                callback(payload)
            except Exception:
                logger.warning("Queue subscriber %s failed", kind, exc_info=True)

    def _emit_progress(self) -> None:
        self._persist()
        quiet = self._state in (QueueState.IDLE, QueueState.STOPPED) or (
            self._state is QueueState.PAUSED and self._inflight is None
        )
        if quiet:
            self._quiet.set()
        else:
            self._quiet.clear()
        self._notify("on_progress", self.status())

    def _emit_rate_limit(self) -> None:
        self._notify("on_rate_limit", self._rate_limit.info)

    # ── Enqueueing and bulk operations ──────────────────────────────────────

    def enqueue(self, items: WorkItem | Iterable[WorkItem]) -> list[str]:
        """Add work items to the tail of the pending list.

        Raises:
            QueueClosedError: While the queue is draining.
            ValueError: For malformed or duplicate items.
        """
        batch = [items] if isinstance(items, WorkItem) else list(items)
        if self._state is QueueState.DRAINING:
            raise QueueClosedError("Queue is draining; no new work accepted")
        known = set(self.pending_ids)
        if self._inflight is not None:
            known.add(self._inflight.id)
        for item in batch:
            item.validate()
            if item.id in known:
                raise ValueError(f"WorkItem {item.id} is already queued")
            known.add(item.id)

        for item in batch:
            self._failed.pop(item.id, None)
            self._pending.append(item)
        if batch:
            logger.info("Enqueued %d item(s); %d pending", len(batch), len(self._pending))
            self._emit_progress()
        return [item.id for item in batch]

    def add_videos(
        self, payloads: Iterable[VideoPayload], options: AnalysisOptions | None = None,
    ) -> list[str]:
        """Build WorkItems for *payloads* with this queue's retry ceiling and enqueue them."""
        items = [
            WorkItem.for_payload(p, options, max_retries=self._max_retries) for p in payloads
        ]
        return self.enqueue(items)

    def remove(self, ids: Iterable[str]) -> int:
        """Delete items from the pending list and the failed registry.

        An in-flight item cannot be aborted; its result is discarded instead.
        Returns the number of items affected.
        """
        targets = set(ids)
        before = len(self._pending)
        self._pending = [item for item in self._pending if item.id not in targets]
        removed = before - len(self._pending)
        for item_id in targets & set(self._failed):
            del self._failed[item_id]
            removed += 1
        if self._inflight is not None and self._inflight.id in targets:
            self._discarded.add(self._inflight.id)
            removed += 1
        if removed:
            self._emit_progress()
        return removed

    def retry_failed(self, ids: Iterable[str] | None = None) -> int:
        """Re-enqueue terminally failed items with a fresh retry budget.

        Starts the queue when it was idle or stopped. Returns the count re-enqueued.
        """
        if self._state is QueueState.DRAINING:
            raise QueueClosedError("Queue is draining; no new work accepted")
        wanted = list(self._failed) if ids is None else [i for i in ids if i in self._failed]
        for item_id in wanted:
            item = self._failed.pop(item_id)
            item.reset_retries()
            self._pending.append(item)
        if not wanted:
            return 0
        logger.info("Retrying %d failed item(s)", len(wanted))
        if self._state in (QueueState.IDLE, QueueState.STOPPED):
            self.start()
        else:
            self._emit_progress()
        return len(wanted)

    def clear(self) -> None:
        """Stop, drop all pending and failed items, and reset statistics."""
        self.stop()
        self._failed.clear()
        self._orphans.clear()
        self._stats = QueueStatistics()
        self._state = QueueState.IDLE
        self._emit_progress()

    # ── State transitions ───────────────────────────────────────────────────

    def start(self) -> bool:
        """Begin dispatching. Returns False when there is nothing to do."""
        if self._closed:
            raise RuntimeError("Queue has been closed")
        if self._state in _ACTIVE_STATES:
            return True
        if self._state is QueueState.PAUSED:
            return self.resume()
        if not self._pending:
            return False
        self._state = QueueState.RUNNING
        self._run_processed = 0
        if self._stats.started_at is None:
            self._stats.started_at = datetime.now(timezone.utc)
        logger.info("Queue started with %d item(s)", len(self._pending))
        self._emit_progress()
        self._arm(0.0)
        return True

    def pause(self) -> None:
        """Suppress future dispatch. An in-flight call still completes and is applied."""
        if self._state is not QueueState.RUNNING:
            return
        self._cancel_timer()
        self._state = QueueState.PAUSED
        logger.info("Queue paused")
        self._emit_progress()

    def resume(self) -> bool:
        if self._state is not QueueState.PAUSED:
            return False
        self._state = QueueState.RUNNING
        logger.info("Queue resumed")
        self._emit_progress()
        if self._inflight is None:
            self._arm(0.0)
        return True

    def drain(self) -> None:
        """Finish queued and in-flight work without accepting new items, then go idle."""
        if self._state not in (QueueState.RUNNING, QueueState.PAUSED):
            return
        was_paused = self._state is QueueState.PAUSED
        self._state = QueueState.DRAINING
        logger.info("Queue draining %d item(s)", len(self._pending))
        self._emit_progress()
        if was_paused and self._inflight is None:
            self._arm(0.0)

    def stop(self) -> None:
        """Clear pending work and cancel timers; late in-flight results are discarded."""
        if self._state is QueueState.STOPPED and not self._pending:
            return
        self._cancel_timer()
        self._run_id += 1
        dropped = len(self._pending)
        self._pending.clear()
        self._inflight = None
        task, self._inflight_task = self._inflight_task, None
        if task is not None and not task.done():
            self._stale_tasks.add(task)
            task.add_done_callback(self._reap_stale)
        self._discarded.clear()
        self._state = QueueState.STOPPED
        logger.info("Queue stopped (%d pending item(s) dropped)", dropped)
        self._emit_progress()

    def _reap_stale(self, task: asyncio.Task) -> None:
        self._stale_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Dispatch task from a stopped run failed", exc_info=task.exception())

    async def join(self) -> None:
        """Wait until the queue is idle, stopped, or paused with nothing in flight."""
        await self._quiet.wait()

    async def aclose(self) -> None:
        """Dispose: persist metadata, cancel timers and in-flight work, drop subscribers."""
        if self._closed:
            return
        self._cancel_timer()
        self._persist()
        self._run_id += 1
        tasks = [t for t in (self._inflight_task, *self._stale_tasks) if t is not None and not t.done()]
        self._inflight = None
        self._inflight_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._state = QueueState.STOPPED
        self._quiet.set()
        self._subscribers.clear()
        self._closed = True

    async def __aenter__(self) -> AnalysisQueue:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Dispatch loop ───────────────────────────────────────────────────────

    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, delay), self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._tick()

    def _next_eligible(self, now: float) -> int | None:
        for index, item in enumerate(self._pending):
            if item.not_before <= now:
                return index
        return None

    def _tick(self) -> None:
        """Decide the next step; never blocks and never raises."""
        if self._state not in _ACTIVE_STATES or self._inflight is not None:
            return
        if not self._pending:
            self._finish_run()
            return

        now = self._clock()
        index = self._next_eligible(now)
        if index is None:
            wake = min(item.not_before for item in self._pending)
            self._arm(wake - now)
            return

        if self._pending[index].payload is None:
            item = self._pending.pop(index)
            logger.warning("No video data for %s (%s); failing fast", item.id, item.filename)
            self._fail(item, AnalysisError(
                "Video data is not available — add the file again",
                ErrorCode.MISSING_VIDEO_FILE,
            ))
            self._arm(0.0)
            return

        decision = self._rate_limit.check_and_reserve()
        if not decision.allowed:
            wait = decision.retry_after_seconds
            if wait is None:
                wait = self._rate_limit.window_seconds
            logger.info("Rate limit reached; next dispatch in %.1fs", wait)
            self._emit_rate_limit()
            self._arm(wait)
            return

        item = self._pending.pop(index)
        item.last_attempt_at = datetime.now(timezone.utc)
        self._inflight = item
        self._inflight_task = asyncio.get_running_loop().create_task(
            self._dispatch(item, self._run_id)
        )
        self._notify("on_item_status", self._result_for(item, AnalysisStatus.PROCESSING))
        self._emit_progress()
        self._emit_rate_limit()

    async def _dispatch(self, item: WorkItem, run_id: int) -> None:
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.analyze(item.payload, item.options), timeout=self._timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            outcome: AnalysisResponse | AnalysisError = classify_exception(exc)
        else:
            if isinstance(response, AnalysisResponse):
                outcome = response
            else:
                outcome = AnalysisError(
                    f"Analysis client returned {type(response).__name__}, not an AnalysisResponse",
                    ErrorCode.INTERNAL_ERROR,
                )

        if run_id != self._run_id:
            logger.debug("Discarding late result for %s from a stopped run", item.id)
            return

        self._inflight = None
        self._inflight_task = None
        try:
            if item.id in self._discarded:
                self._discarded.discard(item.id)
                logger.info("Discarding result for removed item %s", item.id)
            elif isinstance(outcome, AnalysisError):
                self._handle_failure(item, outcome)
            else:
                elapsed_ms = (time.monotonic() - started) * 1000
                self._handle_success(item, outcome, elapsed_ms)
        except Exception as exc:
            logger.exception("Failed to apply the outcome for %s", item.id)
            self._fail(item, classify_exception(exc))
        finally:
            self._schedule_next()

    def _schedule_next(self) -> None:
        if self._state not in _ACTIVE_STATES:
            self._emit_progress()
            return
        if not self._pending:
            self._finish_run()
            return
        self._arm(self.pacing_seconds)

    def _finish_run(self) -> None:
        self._cancel_timer()
        self._state = QueueState.IDLE
        logger.info(
            "Queue complete: %d succeeded, %d failed",
            self._stats.success_count,
            self._stats.error_count,
        )
        self._emit_progress()

    # ── Outcome handling ────────────────────────────────────────────────────

    def _handle_success(self, item: WorkItem, response: AnalysisResponse, elapsed_ms: float) -> None:
        if response.rate_limit is not None:
            self._rate_limit.apply_authoritative_snapshot(response.rate_limit)
        else:
            self._rate_limit.refresh()

        processing_time = response.processing_time or elapsed_ms
        self._stats.record_success(processing_time)
        self._run_processed += 1
        result = self._result_for(
            item,
            AnalysisStatus.COMPLETED,
            visual_hook=response.visual_hook,
            text_hook=response.text_hook,
            voice_hook=response.voice_hook,
            video_script=response.video_script,
            pain_point=response.pain_point,
            processing_time=processing_time,
            completed_at=datetime.now(timezone.utc),
        )
        logger.info("Completed %s (%s) in %.0fms", item.id, item.filename, processing_time)
        self._emit_progress()
        self._emit_rate_limit()
        self._notify("on_result", result)

    def _handle_failure(self, item: WorkItem, error: AnalysisError) -> None:
        if error.rate_limit is not None:
            self._rate_limit.apply_authoritative_snapshot(error.rate_limit)

        if not (self._retry_policy.is_retryable(error) and item.retry_count < item.max_retries):
            self._fail(item, error)
            return

        item.retry_count += 1
        if error.code is ErrorCode.RATE_LIMIT_EXCEEDED and error.retry_after_seconds is not None:
            delay = error.retry_after_seconds
            self._rate_limit.block_for(delay)
        else:
            delay = self._retry_base_delay * 2 ** (item.retry_count - 1)
        item.not_before = self._clock() + delay
        self._pending.insert(0, item)
        logger.info(
            "Retrying %s in %.1fs (retry %d/%d): %s",
            item.id, delay, item.retry_count, item.max_retries, error.message,
        )
        self._notify("on_item_status", self._result_for(item, AnalysisStatus.PENDING))
        self._emit_progress()
        self._emit_rate_limit()

    def _fail(self, item: WorkItem, error: AnalysisError) -> None:
        self._stats.record_error()
        self._run_processed += 1
        self._failed[item.id] = item
        result = self._result_for(
            item,
            AnalysisStatus.ERROR,
            error=error.message,
            error_code=error.code.value,
            completed_at=datetime.now(timezone.utc),
        )
        logger.warning("Analysis failed for %s (%s): [%s] %s",
                       item.id, item.filename, error.code.value, error.message)
        self._emit_progress()
        self._notify("on_result", result)

    @staticmethod
    def _result_for(item: WorkItem, status: AnalysisStatus, **fields: object) -> AnalysisResult:
        return AnalysisResult(
            id=item.id,
            filename=item.filename,
            status=status,
            created_at=item.created_at,
            **fields,
        )

    # ── Persistence ─────────────────────────────────────────────────────────

    def _persist(self) -> None:
        if self._store is None:
            return
        items = list(self._pending)
        if self._inflight is not None:
            items.insert(0, self._inflight)
        state = PersistedQueueState(
            items=[
                PersistedItem(id=i.id, filename=i.filename, size=i.size, retry_count=i.retry_count)
                for i in items
            ],
            rate_limit_info=self._rate_limit.info,
            statistics=self._stats.model_copy(),
        )
        self._store.save(self._store_key, state)

    def _restore(self) -> None:
        if self._store is None:
            return
        saved = self._store.load(self._store_key)
        if saved is None:
            return
        self._stats = saved.statistics.model_copy()
        info = saved.rate_limit_info
        if info is not None and info.reset_time > self._clock():
            self._rate_limit.apply_authoritative_snapshot(info)
        self._orphans = list(saved.items)
        logger.info(
            "Restored queue statistics (%d processed); %d item(s) need their video re-added",
            self._stats.total_processed,
            len(self._orphans),
        )
