from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from authshield.logging import get_logger

logger = get_logger(__name__)


class MemoryCache:
    """In-process stand-in for ``RedisCache``.

    Used in tests and single-process development. Values are stored
    JSON-encoded so callers always get a detached copy, the same as reading
    back from Redis. Expired entries are dropped when read past their deadline,
    and writes sweep out every expired key at most once per
    ``sweep_interval_seconds`` so keys that are never read again do not pile up.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sorted: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return raw

    def _purge_expired(self, now: float) -> int:
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]
        return len(expired)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        purged = self._purge_expired(now)
        if purged:
            logger.debug("memory_cache_swept", purged=purged, remaining=len(self._values))

    def purge_expired(self) -> int:
        """Drop every expired entry now and return how many were removed."""
        with self._lock:
            return self._purge_expired(self._clock())

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + max(1, int(ttl_seconds))

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, None when absent or persistent."""
        with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._values[key][1]
            return None if expires_at is None else expires_at - self._clock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._live(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._maybe_sweep()
            self._values[key] = (encoded, self._deadline(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                if self._sorted.pop(key, None) is not None:
                    removed += 1
        return removed

    async def incr(self, key: str, *, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            self._maybe_sweep()
            raw = self._live(key)
            if raw is None:
                value = 1
                expires_at = self._deadline(ttl_seconds)
            else:
                value = int(json.loads(raw)) + 1
                expires_at = self._values[key][1]
            self._values[key] = (json.dumps(value), expires_at)
            return value

    async def compare_and_delete(self, key: str, expected: Any) -> bool:
        encoded = json.dumps(expected)
        with self._lock:
            if self._live(key) != encoded:
                return False
            self._values.pop(key, None)
            return True

    async def zadd(self, key: str, score: float, member: str) -> None:
        with self._lock:
            self._sorted.setdefault(key, {})[member] = float(score)

    def _ordered(self, key: str) -> List[Tuple[str, float]]:
        members = self._sorted.get(key, {})
        return sorted(members.items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> List[str]:
        with self._lock:
            return [
                member
                for member, score in self._ordered(key)
                if min_score <= score <= max_score
            ]

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            ordered = [member for member, _ in reversed(self._ordered(key))]
        # Redis semantics: stop is inclusive, negative counts from the end
        end = stop + 1 if stop >= 0 else len(ordered) + stop + 1
        return ordered[start:end]

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        with self._lock:
            members = self._sorted.get(key)
            if not members:
                return 0
            doomed = [m for m, score in members.items() if min_score <= score <= max_score]
            for member in doomed:
                members.pop(member, None)
            return len(doomed)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sorted.clear()
        logger.debug("memory_cache_closed")
