"""Tests for API key validation, caching and the attempt log."""

from unittest.mock import AsyncMock, patch

import pytest

from authshield.config import RateLimitConfig
from authshield.service.api_keys import ApiKeyGuard, AttemptLogEntry
from authshield.service.errors import (
    AccountBlockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
)
from authshield.storage.models import from_timestamp

DAY = 24 * 60 * 60


@pytest.fixture
def guard(memory_store, memory_cache, clock):
    return ApiKeyGuard(
        memory_store,
        memory_cache,
        RateLimitConfig(max_attempts=3, window_seconds=60, block_seconds=900),
        cache_ttl_seconds=600,
        log_key="auth:attempt_log",
        log_ttl_seconds=7 * DAY,
        clock=clock,
    )


class TestAdmin:
    async def test_create_generates_long_value_and_default_expiry(self, guard, clock):
        key = await guard.create(description="ci")

        assert len(key.value) == 96
        assert key.expires_at.timestamp() == pytest.approx(clock.now + 365 * DAY)
        assert key.is_active is True

    async def test_duplicate_value_is_conflict(self, guard):
        await guard.create(value="fixed-value")

        with pytest.raises(ConflictError):
            await guard.create(value="fixed-value")

    async def test_update_unknown_key(self, guard):
        with pytest.raises(NotFoundError):
            await guard.update(99, description="nope")

    async def test_mutations_drop_cached_lists(self, guard, memory_cache):
        key = await guard.create(value="k1")
        await guard.list_active()
        await guard.list_all()

        await guard.disable(key.id)

        assert await memory_cache.get(ApiKeyGuard.ACTIVE_CACHE_KEY) is None
        assert await memory_cache.get(ApiKeyGuard.ALL_CACHE_KEY) is None
        assert await guard.list_active() == []
        assert [k.is_active for k in await guard.list_all()] == [False]

    async def test_delete_reports_missing(self, guard):
        key = await guard.create(value="k1")

        assert await guard.delete(key.id) is True
        assert await guard.delete(key.id) is False
        assert await guard.list_all() == []


class TestValidate:
    async def test_valid_key_is_returned_and_not_logged(self, guard):
        key = await guard.create(value="good-key")

        validated = await guard.validate("good-key", "1.2.3.4")

        assert validated.id == key.id
        assert await guard.recent_attempts() == []

    async def test_missing_key(self, guard):
        with pytest.raises(InvalidCredentialsError):
            await guard.validate(None, "1.2.3.4")

        attempts = await guard.recent_attempts()
        assert attempts[0].event == "api_key_missing"
        assert attempts[0].success is False

    async def test_invalid_key_is_logged(self, guard):
        await guard.create(value="good-key")

        with pytest.raises(InvalidCredentialsError):
            await guard.validate("bad-key", "1.2.3.4")

        attempts = await guard.recent_attempts()
        assert len(attempts) == 1
        assert attempts[0].reason == "invalid_key"
        assert attempts[0].ip == "1.2.3.4"

    async def test_repeated_invalid_key_is_rate_limited(self, guard, clock):
        await guard.create(value="good-key")
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await guard.validate("bad-key", "1.2.3.4")
            clock.advance(1)

        with pytest.raises(RateLimitedError) as excinfo:
            await guard.validate("bad-key", "1.2.3.4")

        assert excinfo.value.retry_after > 0
        # a different presented key from the same ip is tracked separately
        with pytest.raises(InvalidCredentialsError):
            await guard.validate("other-bad-key", "1.2.3.4")

    async def test_expired_key_is_deactivated_on_reload(self, guard, memory_store, clock):
        key = await guard.create(value="short-lived", days_expires=1)

        clock.advance(DAY + 1)

        with pytest.raises(InvalidCredentialsError):
            await guard.validate("short-lived", "1.2.3.4")
        assert memory_store.get_api_key(key.id).is_active is False

    async def test_expired_key_in_cached_list_is_rejected(self, guard, clock):
        await guard.create(value="short-lived", days_expires=1)
        await guard.list_active()

        clock.advance(DAY - 10)
        await guard.validate("short-lived", "1.2.3.4")
        clock.advance(20)

        with pytest.raises(InvalidCredentialsError):
            await guard.validate("short-lived", "1.2.3.4")

    async def test_cached_dtos_are_rebuilt(self, guard, memory_cache):
        key = await guard.create(value="good-key", permissions=["read"])
        await guard.list_active()

        cached = await memory_cache.get(ApiKeyGuard.ACTIVE_CACHE_KEY)
        rebuilt = await guard.list_active()

        assert isinstance(cached[0]["expires_at"], float)
        assert rebuilt[0].id == key.id
        assert rebuilt[0].permissions == ["read"]
        assert rebuilt[0].expires_at == key.expires_at

    async def test_blocked_key_is_refused(self, guard, clock):
        key = await guard.create(value="good-key")

        blocked_until = await guard.block_key(key.id, 300)

        assert blocked_until.timestamp() == pytest.approx(clock.now + 300)
        with pytest.raises(AccountBlockedError):
            await guard.validate("good-key", "1.2.3.4")

        clock.advance(301)
        assert await guard.is_key_blocked(key.id) is False
        assert (await guard.validate("good-key", "1.2.3.4")).id == key.id


class TestAttemptLog:
    async def test_entries_older_than_retention_are_pruned(self, guard, clock):
        await guard.log_attempt(ip="1.1.1.1", key_id=None, event="old", success=False, reason="x")

        clock.advance(8 * DAY)
        await guard.log_attempt(ip="2.2.2.2", key_id=None, event="new", success=False, reason="x")

        assert [a.event for a in await guard.recent_attempts()] == ["new"]

    async def test_recent_attempts_newest_first_with_limit(self, guard, clock):
        for index in range(5):
            await guard.log_attempt(
                ip="1.1.1.1", key_id=None, event=f"e{index}", success=False, reason="x"
            )
            clock.advance(1)

        recent = await guard.recent_attempts(limit=2)

        assert [a.event for a in recent] == ["e4", "e3"]
        assert await guard.recent_attempts(limit=0) == []

    async def test_attempts_between_is_inclusive(self, guard, clock):
        start = clock.now
        for index in range(3):
            await guard.log_attempt(
                ip="1.1.1.1", key_id=None, event=f"e{index}", success=False, reason="x"
            )
            clock.advance(10)

        between = await guard.attempts_between(
            from_timestamp(start + 10), from_timestamp(start + 20)
        )

        assert [a.event for a in between] == ["e1", "e2"]

    async def test_successes_are_not_stored(self, guard):
        await guard.log_attempt(ip="1.1.1.1", key_id=1, event="ok", success=True, reason="ok")

        assert await guard.recent_attempts() == []

    async def test_log_write_failure_does_not_raise(self, guard, memory_cache):
        with patch.object(memory_cache, "zadd", AsyncMock(side_effect=ConnectionError("down"))):
            await guard.log_attempt(
                ip="1.1.1.1", key_id=None, event="e", success=False, reason="x"
            )

        assert await guard.recent_attempts() == []

    async def test_malformed_entries_are_skipped(self, guard, memory_cache, clock):
        await memory_cache.zadd("auth:attempt_log", clock.now * 1000, "not json")
        await guard.log_attempt(ip="1.1.1.1", key_id=None, event="e", success=False, reason="x")

        assert [a.event for a in await guard.recent_attempts()] == ["e"]

    def test_entry_json_round_trip(self):
        entry = AttemptLogEntry(
            timestamp="2024-01-01T00:00:00+00:00",
            ip="1.1.1.1",
            key_id=7,
            event="api_key_invalid",
            success=False,
            reason="invalid_key",
        )

        assert AttemptLogEntry.from_json(entry.to_json()) == entry
