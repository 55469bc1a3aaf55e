"""Tests for the windowed rate limiter."""

from unittest.mock import patch

import pytest

from authshield.config import RateLimitConfig
from authshield.service.rate_limit import RateLimiter, RateLimitState


@pytest.fixture
def config():
    return RateLimitConfig(max_attempts=3, window_seconds=60, block_seconds=120)


@pytest.fixture
def limiter(memory_cache, config, clock):
    return RateLimiter(memory_cache, config, clock=clock)


class TestKeys:
    def test_key_layout(self, limiter):
        assert limiter.key_for("login", "alice", "1.2.3.4") == "ratelimit:login:alice:1.2.3.4"

    def test_missing_ip_uses_placeholder(self, limiter):
        assert limiter.key_for("reset", "bob", None) == "ratelimit:reset:bob:unknown"


class TestCheck:
    async def test_fresh_key_is_allowed(self, limiter):
        result = await limiter.check("login", "alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 3
        assert result.blocked_until is None

    async def test_attempts_reduce_remaining_budget(self, limiter):
        await limiter.record_attempt("login", "alice", "1.2.3.4")
        result = await limiter.check("login", "alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 2

    async def test_corrupted_state_is_treated_as_fresh(self, limiter, memory_cache):
        await memory_cache.set(limiter.key_for("login", "alice", "ip"), "garbage", 60)

        result = await limiter.check("login", "alice", "ip")

        assert result.allowed is True
        assert result.attempts_remaining == 3


class TestBlocking:
    async def test_reaching_max_attempts_blocks(self, limiter, clock):
        start = clock.now
        for _ in range(3):
            await limiter.record_attempt("login", "alice", "1.2.3.4")

        result = await limiter.check("login", "alice", "1.2.3.4")

        assert result.allowed is False
        assert result.attempts_remaining == 0
        assert result.blocked_until.timestamp() == pytest.approx(start + 120)
        assert result.retry_after == 120

    async def test_block_expiry_yields_fresh_counter(self, limiter, clock):
        for _ in range(3):
            await limiter.record_attempt("login", "alice", "1.2.3.4")

        clock.advance(121)
        result = await limiter.check("login", "alice", "1.2.3.4")
        recorded = await limiter.record_attempt("login", "alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 3
        assert recorded.attempts_remaining == 2

    async def test_active_block_is_not_extended(self, limiter, clock):
        start = clock.now
        for _ in range(3):
            await limiter.record_attempt("login", "alice", "1.2.3.4")

        clock.advance(60)
        result = await limiter.record_attempt("login", "alice", "1.2.3.4")
        state = await limiter.get_state("login", "alice", "1.2.3.4")

        assert result.allowed is False
        assert state.blocked_until == pytest.approx(start + 120)
        assert state.attempts == 3

    async def test_block_is_logged_once(self, limiter):
        with patch("authshield.service.rate_limit.logger") as mock_logger:
            for _ in range(4):
                await limiter.record_attempt("login", "alice", "1.2.3.4")

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_blocked"
        assert "alice" not in str(mock_logger.warning.call_args)


class TestWindow:
    async def test_window_expiry_resets_attempts(self, limiter, clock):
        await limiter.record_attempt("login", "alice", "1.2.3.4")
        await limiter.record_attempt("login", "alice", "1.2.3.4")

        clock.advance(61)
        result = await limiter.check("login", "alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 3

    async def test_ttl_tracks_window_then_block(self, limiter, memory_cache):
        key = limiter.key_for("login", "alice", "1.2.3.4")

        await limiter.record_attempt("login", "alice", "1.2.3.4")
        assert memory_cache.ttl(key) == pytest.approx(60)

        await limiter.record_attempt("login", "alice", "1.2.3.4")
        await limiter.record_attempt("login", "alice", "1.2.3.4")
        assert memory_cache.ttl(key) == pytest.approx(120)

    async def test_state_round_trips_through_cache(self, limiter, clock):
        await limiter.record_attempt("verify", "carol", "9.9.9.9")

        state = await limiter.get_state("verify", "carol", "9.9.9.9")

        assert state == RateLimitState(attempts=1, window_start=clock.now, blocked_until=None)


class TestIsolationAndClear:
    async def test_scopes_and_ips_are_independent(self, limiter):
        for _ in range(3):
            await limiter.record_attempt("login", "alice", "1.2.3.4")

        assert (await limiter.check("verify", "alice", "1.2.3.4")).allowed is True
        assert (await limiter.check("login", "alice", "5.6.7.8")).allowed is True

    async def test_clear_attempts_deletes_state(self, limiter):
        for _ in range(3):
            await limiter.record_attempt("login", "alice", "1.2.3.4")

        await limiter.clear_attempts("login", "alice", "1.2.3.4")

        assert await limiter.get_state("login", "alice", "1.2.3.4") is None
        assert (await limiter.check("login", "alice", "1.2.3.4")).allowed is True
