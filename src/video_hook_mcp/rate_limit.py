"""Sliding-window request accounting against a per-minute quota.

``RateLimitState`` is used on both sides of the analysis boundary: the
queue asks it for permission before every dispatch, and
``GeminiAnalysisClient`` keeps one per caller (``SlidingWindowRegistry``)
to produce the authoritative snapshot it returns with each response.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from .models.analysis import RateLimitInfo

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    """Answer to "may I issue a request now?"."""

    allowed: bool
    remaining: int
    reset_time: float
    retry_after_seconds: float | None = None


class RateLimitState:
    """Counts requests issued in the trailing window.

    Args:
        max_requests_per_minute: Ceiling of requests per window.
        window_seconds: Length of the sliding window.
        clock: Wall-clock source in epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        max_requests_per_minute: int,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        if max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._ceiling = max_requests_per_minute
        self._window = window_seconds
        self._clock = clock
        self._issued: deque[float] = deque()
        self._blocked_until = 0.0
        now = clock()
        self._info = RateLimitInfo(
            remaining=max_requests_per_minute,
            reset_time=now + window_seconds,
            requests_in_last_minute=0,
            max_requests_per_minute=max_requests_per_minute,
        )

    @property
    def max_requests_per_minute(self) -> int:
        return self._ceiling

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def info(self) -> RateLimitInfo:
        """Copy of the current snapshot."""
        return self._info.model_copy()

    @property
    def last_activity(self) -> float:
        """Epoch seconds of the most recent issued request, or 0 if none."""
        return self._issued[-1] if self._issued else 0.0

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._issued and self._issued[0] <= cutoff:
            self._issued.popleft()

    def _recompute(self, now: float) -> None:
        count = len(self._issued)
        reset_time = self._info.reset_time
        if now > reset_time:
            reset_time = now + self._window
        self._info = RateLimitInfo(
            remaining=max(0, self._ceiling - count),
            reset_time=reset_time,
            requests_in_last_minute=count,
            max_requests_per_minute=self._ceiling,
        )

    def check_and_reserve(self) -> RateLimitDecision:
        """Reserve a slot if the window has room, otherwise say how long to wait."""
        now = self._clock()
        self.reset_if_window_expired()
        self._prune(now)

        if self._blocked_until > now:
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_time=self._info.reset_time,
                retry_after_seconds=self._blocked_until - now,
            )

        if len(self._issued) >= self._ceiling:
            if self._issued:
                retry_after = max(0.0, self._issued[0] + self._window - now)
            else:
                retry_after = self._window
            self._recompute(now)
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_time=self._info.reset_time,
                retry_after_seconds=retry_after,
            )

        self._issued.append(now)
        self._recompute(now)
        return RateLimitDecision(
            allowed=True,
            remaining=self._info.remaining,
            reset_time=self._info.reset_time,
        )

    def apply_authoritative_snapshot(self, info: RateLimitInfo) -> None:
        """Trust the server's counters over the local estimate.

        A snapshot reporting no remaining capacity blocks further
        reservations until its ``reset_time``; a reset time already in the
        past (clock skew) blocks nothing.
        """
        now = self._clock()
        self._info = info.model_copy()
        if info.remaining <= 0 and info.reset_time > now:
            self._blocked_until = info.reset_time
        else:
            self._blocked_until = 0.0
        logger.debug(
            "Applied quota snapshot: remaining=%d reset_in=%.1fs",
            info.remaining,
            max(0.0, info.reset_time - now),
        )

    def block_for(self, seconds: float) -> None:
        """Deny reservations for *seconds* (server asked us to back off)."""
        now = self._clock()
        until = now + max(0.0, seconds)
        if until > self._blocked_until:
            self._blocked_until = until

    def reset_if_window_expired(self) -> bool:
        """Start a fresh window once ``reset_time`` has passed.

        Issued timestamps are left to age out on their own so a reset
        never lets more than the ceiling through any trailing window.

        Returns:
            True if the counters were reset.
        """
        now = self._clock()
        if now <= self._info.reset_time:
            return False
        self._info = RateLimitInfo(
            remaining=self._ceiling,
            reset_time=now + self._window,
            requests_in_last_minute=0,
            max_requests_per_minute=self._ceiling,
        )
        if self._blocked_until <= now:
            self._blocked_until = 0.0
        return True

    def refresh(self) -> RateLimitInfo:
        """Recompute the snapshot from the local window and return it."""
        now = self._clock()
        self._prune(now)
        if self._blocked_until <= now:
            self._recompute(now)
        return self.info

    def seconds_until_reset(self) -> float:
        """Time until ``reset_time``, never negative."""
        return max(0.0, self._info.reset_time - self._clock())


class SlidingWindowRegistry:
    """Per-caller RateLimitState map with idle-entry cleanup.

    Process-local only: counters do not survive a restart and are not
    shared between server instances.
    """

    def __init__(
        self,
        max_requests_per_minute: int,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        idle_ttl_seconds: float = 300.0,
        clock: Clock = time.time,
    ) -> None:
        self._ceiling = max_requests_per_minute
        self._window = window_seconds
        self._idle_ttl = idle_ttl_seconds
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}

    def get(self, key: str) -> RateLimitState:
        self.cleanup()
        state = self._states.get(key)
        if state is None:
            state = RateLimitState(
                self._ceiling, window_seconds=self._window, clock=self._clock,
            )
            self._states[key] = state
        return state

    def cleanup(self) -> int:
        """Drop callers idle for longer than the window plus TTL. Returns count removed."""
        now = self._clock()
        horizon = self._window + self._idle_ttl
        stale = [
            key for key, state in self._states.items()
            if now - max(state.last_activity, state.info.reset_time - self._window) > horizon
        ]
        for key in stale:
            del self._states[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._states)
