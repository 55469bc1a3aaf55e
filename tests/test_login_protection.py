"""Tests for the login protection state machine."""

import pytest

from authshield.config import RateLimitConfig
from authshield.service.login_protection import LoginProtection


@pytest.fixture
def protection(memory_cache, notifier, clock):
    return LoginProtection(
        memory_cache,
        RateLimitConfig(max_attempts=5, window_seconds=900, block_seconds=1800),
        extended_block_seconds=7200,
        notifier=notifier,
        clock=clock,
    )


async def fail(protection, identifier, ip, times, **contact):
    for _ in range(times):
        await protection.record_login_attempt(identifier, ip, False, **contact)


class TestAccountBlock:
    async def test_five_failures_block_account_on_any_ip(self, protection, clock):
        start = clock.now
        await fail(protection, "alice", "1.2.3.4", 5)

        result = await protection.check_login_attempt("alice", "5.6.7.8")

        assert result.allowed is False
        assert result.is_blocked is True
        assert result.attempts_remaining == 0
        assert result.blocked_until.timestamp() == pytest.approx(start + 7200)

    async def test_account_block_outlives_short_rate_limit_block(self, protection, clock):
        await fail(protection, "alice", "1.2.3.4", 5)

        clock.advance(1801)
        result = await protection.check_login_attempt("alice", "1.2.3.4")

        assert result.is_blocked is True
        assert result.allowed is False

    async def test_account_block_expires_by_time(self, protection, clock):
        await fail(protection, "alice", "1.2.3.4", 5)

        clock.advance(7201)
        result = await protection.check_login_attempt("alice", "1.2.3.4")

        assert result.allowed is True
        assert result.is_blocked is False
        assert result.attempts_remaining == 5

    async def test_success_does_not_lift_account_block(self, protection):
        await fail(protection, "alice", "1.2.3.4", 5)

        await protection.record_login_attempt("alice", "1.2.3.4", True)

        assert await protection.is_account_blocked("alice") is True

    async def test_further_failures_do_not_extend_block(self, protection, memory_cache, clock):
        start = clock.now
        await fail(protection, "alice", "1.2.3.4", 5)

        clock.advance(100)
        await fail(protection, "alice", "1.2.3.4", 1)

        stored = await memory_cache.get(LoginProtection.account_block_key("alice"))
        assert stored == pytest.approx(start + 7200)

    def test_extended_block_defaults_to_four_times_short_block(self, memory_cache):
        protection = LoginProtection(memory_cache, RateLimitConfig(block_seconds=1800))

        assert protection.extended_block_seconds == 7200


class TestCounters:
    async def test_success_clears_failure_counters(self, protection):
        await fail(protection, "alice", "1.2.3.4", 4)
        await protection.record_login_attempt("alice", "1.2.3.4", True)
        await fail(protection, "alice", "1.2.3.4", 4)

        result = await protection.check_login_attempt("alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 1
        assert await protection.is_account_blocked("alice") is False

    async def test_failure_counter_ttl_is_login_window(self, protection, memory_cache):
        await fail(protection, "alice", "1.2.3.4", 1)

        key = LoginProtection.failure_key("alice", "1.2.3.4")
        assert await memory_cache.get(key) == 1
        assert memory_cache.ttl(key) == pytest.approx(900)

    async def test_identifier_is_normalized(self, protection):
        await fail(protection, "  Alice ", "1.2.3.4", 3)
        await fail(protection, "ALICE", "1.2.3.4", 2)

        assert await protection.is_account_blocked("alice") is True

    async def test_rate_limit_shown_before_threshold(self, protection):
        await fail(protection, "alice", "1.2.3.4", 2)

        result = await protection.check_login_attempt("alice", "1.2.3.4")

        assert result.allowed is True
        assert result.attempts_remaining == 3
        assert result.is_blocked is False


class TestNotification:
    async def test_blocked_email_sent_when_contact_known(self, protection, notifier):
        await fail(
            protection, "alice", "1.2.3.4", 5, user_name="Alice", user_email="alice@example.com"
        )

        assert len(notifier.sent) == 1
        message = notifier.sent[0]
        assert message.to == "alice@example.com"
        assert "blocked" in message.subject.lower()
        assert "1.2.3.4" in message.body
        assert "2 hours" in message.body

    async def test_no_email_without_contact(self, protection, notifier):
        await fail(protection, "alice", "1.2.3.4", 5, user_name="Alice")

        assert notifier.sent == []
        assert await protection.is_account_blocked("alice") is True

    async def test_notifier_failure_does_not_abort_block(self, protection, notifier):
        notifier.fail = True

        await fail(
            protection, "alice", "1.2.3.4", 5, user_name="Alice", user_email="alice@example.com"
        )

        assert await protection.is_account_blocked("alice") is True
