from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from authshield.config import RateLimitConfig
from authshield.logging import get_logger, identifier_hash
from authshield.service.email import Notifier, account_blocked_message, dispatch_notification
from authshield.service.rate_limit import RateLimiter
from authshield.storage.common import KeyValueCache
from authshield.storage.models import from_timestamp

logger = get_logger(__name__)


@dataclass
class LoginCheckResult:
    allowed: bool
    attempts_remaining: int
    blocked_until: Optional[datetime] = None
    is_blocked: bool = False


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


class LoginProtection:
    """Two-level brute force guard for sign-in.

    The per-``(identifier, ip)`` rate limiter gives a short block. An
    independent failure counter escalates to an account-level block keyed by
    identifier alone, so rotating IPs does not help once it is set. The
    account block only ends by expiry; a successful login does not lift it.
    """

    SCOPE = "login"

    def __init__(
        self,
        cache: KeyValueCache,
        config: RateLimitConfig,
        *,
        extended_block_seconds: Optional[int] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.cache = cache
        self.config = config
        self.extended_block_seconds = extended_block_seconds or config.block_seconds * 4
        self.notifier = notifier
        self._clock = clock
        self.limiter = limiter or RateLimiter(cache, config, clock=clock)

    @staticmethod
    def account_block_key(identifier: str) -> str:
        return f"account:blocked:{identifier}"

    @staticmethod
    def failure_key(identifier: str, ip: Optional[str]) -> str:
        return f"login:failures:{identifier}:{ip or 'unknown'}"

    async def _blocked_until(self, identifier: str) -> Optional[float]:
        raw = await self.cache.get(self.account_block_key(identifier))
        if raw is None:
            return None
        try:
            blocked_until = float(raw)
        except (TypeError, ValueError):
            return None
        return blocked_until if blocked_until > self._clock() else None

    async def is_account_blocked(self, identifier: str) -> bool:
        return await self._blocked_until(normalize_identifier(identifier)) is not None

    async def check_login_attempt(self, identifier: str, ip: Optional[str]) -> LoginCheckResult:
        identifier = normalize_identifier(identifier)
        blocked_until = await self._blocked_until(identifier)
        if blocked_until is not None:
            return LoginCheckResult(
                allowed=False,
                attempts_remaining=0,
                blocked_until=from_timestamp(blocked_until),
                is_blocked=True,
            )
        result = await self.limiter.check(self.SCOPE, identifier, ip)
        return LoginCheckResult(
            allowed=result.allowed,
            attempts_remaining=result.attempts_remaining,
            blocked_until=result.blocked_until,
            is_blocked=False,
        )

    async def record_login_attempt(
        self,
        identifier: str,
        ip: Optional[str],
        success: bool,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> None:
        identifier = normalize_identifier(identifier)
        if success:
            await self.clear_login_attempts(identifier, ip)
            return

        await self.limiter.record_attempt(self.SCOPE, identifier, ip)
        failures = await self.cache.incr(
            self.failure_key(identifier, ip), ttl_seconds=self.config.window_seconds
        )
        if failures < self.config.max_attempts:
            return
        if await self._blocked_until(identifier) is not None:
            return

        now = self._clock()
        await self.cache.set(
            self.account_block_key(identifier),
            now + self.extended_block_seconds,
            self.extended_block_seconds,
        )
        logger.warning(
            "login_account_blocked",
            identifier_hash=identifier_hash(identifier),
            ip=ip,
            failures=failures,
            block_seconds=self.extended_block_seconds,
        )
        if user_name and user_email:
            await dispatch_notification(
                self.notifier,
                account_blocked_message(
                    user_email,
                    user_name,
                    ip=ip or "unknown",
                    at=from_timestamp(now),
                    block_seconds=self.extended_block_seconds,
                ),
                event="account_blocked",
            )

    async def clear_login_attempts(self, identifier: str, ip: Optional[str]) -> None:
        identifier = normalize_identifier(identifier)
        await self.limiter.clear_attempts(self.SCOPE, identifier, ip)
        await self.cache.delete(self.failure_key(identifier, ip))
