"""Tests for sliding-window rate limiting."""

from __future__ import annotations

import pytest

from video_hook_mcp.models.analysis import RateLimitInfo
from video_hook_mcp.rate_limit import RateLimitState, SlidingWindowRegistry
from tests.conftest import FakeClock


@pytest.fixture()
def clock():
    return FakeClock()


def _exhausted(clock, *, reset_in: float, ceiling: int = 5) -> RateLimitInfo:
    return RateLimitInfo(
        remaining=0,
        reset_time=clock.now + reset_in,
        requests_in_last_minute=ceiling,
        max_requests_per_minute=ceiling,
    )


class TestCheckAndReserve:
    def test_allows_up_to_ceiling_then_denies(self, clock):
        state = RateLimitState(2, window_seconds=60, clock=clock)

        first = state.check_and_reserve()
        assert first.allowed and first.remaining == 1
        clock.advance(10)
        second = state.check_and_reserve()
        assert second.allowed and second.remaining == 0

        clock.advance(5)
        denied = state.check_and_reserve()
        assert denied.allowed is False
        assert denied.retry_after_seconds == pytest.approx(45.0)

    def test_slot_frees_when_oldest_request_leaves_window(self, clock):
        state = RateLimitState(1, window_seconds=60, clock=clock)
        assert state.check_and_reserve().allowed
        clock.advance(59.5)
        assert not state.check_and_reserve().allowed
        clock.advance(1.0)
        assert state.check_and_reserve().allowed

    def test_never_exceeds_ceiling_in_any_trailing_window(self, clock):
        """GIVEN a request attempt every second for 5 minutes THEN no 60s window holds more than 3."""
        state = RateLimitState(3, window_seconds=60, clock=clock)
        allowed: list[float] = []
        for _ in range(300):
            if state.check_and_reserve().allowed:
                allowed.append(clock.now)
            clock.advance(1)

        assert len(allowed) == 15
        for t in allowed:
            assert len([u for u in allowed if t - 60 < u <= t]) <= 3

    def test_snapshot_tracks_counts(self, clock):
        state = RateLimitState(4, window_seconds=60, clock=clock)
        state.check_and_reserve()
        state.check_and_reserve()
        info = state.info
        assert info.remaining == 2
        assert info.requests_in_last_minute == 2
        assert info.max_requests_per_minute == 4
        assert info.reset_time == pytest.approx(clock.now + 60)

    @pytest.mark.parametrize("ceiling,window", [(0, 60), (5, 0), (5, -1)])
    def test_rejects_invalid_construction(self, ceiling, window):
        with pytest.raises(ValueError):
            RateLimitState(ceiling, window_seconds=window)


class TestAuthoritativeSnapshot:
    def test_exhausted_snapshot_blocks_until_reset(self, clock):
        state = RateLimitState(5, window_seconds=60, clock=clock)
        snapshot = _exhausted(clock, reset_in=30)
        state.apply_authoritative_snapshot(snapshot)

        assert state.info == snapshot
        denied = state.check_and_reserve()
        assert denied.allowed is False
        assert denied.retry_after_seconds == pytest.approx(30.0)

        clock.advance(31)
        assert state.check_and_reserve().allowed

    def test_reset_time_in_the_past_blocks_nothing(self, clock):
        """GIVEN a skewed server clock reporting an already-passed reset THEN nothing is blocked."""
        state = RateLimitState(5, window_seconds=60, clock=clock)
        state.apply_authoritative_snapshot(_exhausted(clock, reset_in=-1))
        assert state.check_and_reserve().allowed

    def test_snapshot_with_capacity_lifts_block(self, clock):
        state = RateLimitState(5, window_seconds=60, clock=clock)
        state.apply_authoritative_snapshot(_exhausted(clock, reset_in=30))
        state.apply_authoritative_snapshot(RateLimitInfo(
            remaining=3, reset_time=clock.now + 30, requests_in_last_minute=2, max_requests_per_minute=5,
        ))
        assert state.check_and_reserve().allowed


class TestResetAndBlock:
    def test_block_for_denies_until_elapsed(self, clock):
        state = RateLimitState(5, window_seconds=60, clock=clock)
        state.block_for(10)
        denied = state.check_and_reserve()
        assert not denied.allowed
        assert denied.retry_after_seconds == pytest.approx(10.0)
        clock.advance(10.1)
        assert state.check_and_reserve().allowed

    def test_reset_keeps_recent_requests_counted(self, clock):
        """GIVEN a reset right after a late request THEN that request still counts."""
        state = RateLimitState(2, window_seconds=60, clock=clock)
        state.check_and_reserve()
        clock.advance(59)
        state.check_and_reserve()
        assert state.reset_if_window_expired() is False

        clock.advance(2)
        assert state.reset_if_window_expired() is True
        assert state.info.remaining == 2
        assert state.check_and_reserve().allowed
        assert not state.check_and_reserve().allowed

    def test_refresh_recomputes_remaining(self, clock):
        state = RateLimitState(3, window_seconds=60, clock=clock)
        state.check_and_reserve()
        clock.advance(61)
        info = state.refresh()
        assert info.remaining == 3
        assert info.requests_in_last_minute == 0

    def test_seconds_until_reset_never_negative(self, clock):
        state = RateLimitState(3, window_seconds=60, clock=clock)
        assert state.seconds_until_reset() == pytest.approx(60.0)
        clock.advance(100)
        assert state.seconds_until_reset() == 0.0


class TestSlidingWindowRegistry:
    def test_one_state_per_key(self, clock):
        registry = SlidingWindowRegistry(2, window_seconds=60, clock=clock)
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert len(registry) == 2

    def test_keys_are_limited_independently(self, clock):
        registry = SlidingWindowRegistry(1, window_seconds=60, clock=clock)
        assert registry.get("a").check_and_reserve().allowed
        assert not registry.get("a").check_and_reserve().allowed
        assert registry.get("b").check_and_reserve().allowed

    def test_cleanup_drops_idle_callers(self, clock):
        registry = SlidingWindowRegistry(2, window_seconds=60, idle_ttl_seconds=300, clock=clock)
        registry.get("a").check_and_reserve()
        clock.advance(100)
        assert registry.cleanup() == 0
        clock.advance(300)
        assert registry.cleanup() == 1
        assert len(registry) == 0
