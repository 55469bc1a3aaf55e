from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from authshield.config import RateLimitConfig
from authshield.logging import get_logger, identifier_hash
from authshield.storage.common import KeyValueCache
from authshield.storage.models import from_timestamp

logger = get_logger(__name__)


@dataclass
class RateLimitState:
    attempts: int
    window_start: float
    blocked_until: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "window_start": self.window_start,
            "blocked_until": self.blocked_until,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateLimitState":
        blocked_until = data.get("blocked_until")
        return cls(
            attempts=int(data.get("attempts", 0)),
            window_start=float(data.get("window_start", 0.0)),
            blocked_until=float(blocked_until) if blocked_until is not None else None,
        )


@dataclass
class RateLimitResult:
    allowed: bool
    attempts_remaining: int
    blocked_until: Optional[datetime] = None
    retry_after: int = 0


class RateLimiter:
    """Fixed-window attempt counter with a block timer.

    State lives in the cache under ``ratelimit:{scope}:{identifier}:{ip}``.
    Expiry is lazy: a window or block that has run out is treated as a fresh
    counter the next time it is read. Updates are get/set read-modify-write,
    so concurrent failures on one key may lose increments.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        cache: KeyValueCache,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.config = config
        self._clock = clock

    def key_for(self, scope: str, identifier: str, ip: Optional[str]) -> str:
        return f"{self.KEY_PREFIX}:{scope}:{identifier}:{ip or 'unknown'}"

    async def get_state(
        self, scope: str, identifier: str, ip: Optional[str]
    ) -> Optional[RateLimitState]:
        raw = await self.cache.get(self.key_for(scope, identifier, ip))
        if not isinstance(raw, dict):
            return None
        try:
            return RateLimitState.from_dict(raw)
        except (TypeError, ValueError):
            return None

    def _effective_state(
        self, state: Optional[RateLimitState], now: float
    ) -> Optional[RateLimitState]:
        if state is None:
            return None
        if state.blocked_until is not None:
            return state if state.blocked_until > now else None
        if now - state.window_start > self.config.window_seconds:
            return None
        return state

    def _result(self, state: Optional[RateLimitState], now: float) -> RateLimitResult:
        if state is None:
            return RateLimitResult(allowed=True, attempts_remaining=self.config.max_attempts)
        remaining = max(0, self.config.max_attempts - state.attempts)
        if state.blocked_until is not None:
            return RateLimitResult(
                allowed=False,
                attempts_remaining=0,
                blocked_until=from_timestamp(state.blocked_until),
                retry_after=max(1, math.ceil(state.blocked_until - now)),
            )
        if state.attempts >= self.config.max_attempts:
            window_end = state.window_start + self.config.window_seconds
            return RateLimitResult(
                allowed=False,
                attempts_remaining=0,
                retry_after=max(1, math.ceil(window_end - now)),
            )
        return RateLimitResult(allowed=True, attempts_remaining=remaining)

    async def check(self, scope: str, identifier: str, ip: Optional[str]) -> RateLimitResult:
        now = self._clock()
        state = self._effective_state(await self.get_state(scope, identifier, ip), now)
        return self._result(state, now)

    async def record_attempt(
        self, scope: str, identifier: str, ip: Optional[str]
    ) -> RateLimitResult:
        now = self._clock()
        state = self._effective_state(await self.get_state(scope, identifier, ip), now)
        if state is not None and state.blocked_until is not None:
            # active block is never extended by further attempts
            return self._result(state, now)
        if state is None:
            state = RateLimitState(attempts=0, window_start=now)
        state.attempts += 1
        ttl = self.config.window_seconds
        if state.attempts >= self.config.max_attempts:
            state.blocked_until = now + self.config.block_seconds
            ttl = self.config.block_seconds
            logger.warning(
                "rate_limit_blocked",
                scope=scope,
                identifier_hash=identifier_hash(identifier),
                ip=ip,
                attempts=state.attempts,
                block_seconds=self.config.block_seconds,
            )
        await self.cache.set(self.key_for(scope, identifier, ip), state.to_dict(), ttl)
        return self._result(state, now)

    async def clear_attempts(self, scope: str, identifier: str, ip: Optional[str]) -> None:
        await self.cache.delete(self.key_for(scope, identifier, ip))
