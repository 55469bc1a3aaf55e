from __future__ import annotations

import contextlib
import json
from typing import Any, Iterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authshield.logging import get_logger
from authshield.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper implementing the auth cache contract."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete only when the stored value still matches, so two requests
    # racing to consume the same token cannot both succeed.
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # INCR + EXPIRE on first increment, atomically
    _INCR_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if value == 1 and ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_delete = self.client.register_script(self._COMPARE_AND_DELETE_SCRIPT)
        self._incr = self.client.register_script(self._INCR_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.contextmanager
    def _command(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error(
                "redis_command_failed",
                operation=operation,
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailable(str(exc), operation=operation) from exc

    async def get(self, key: str) -> Optional[Any]:
        with self._command("get", key):
            cached = await self.client.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._command("set", key):
            await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._command("delete", ",".join(keys)):
            return int(await self.client.delete(*keys))

    async def incr(self, key: str, *, ttl_seconds: Optional[int] = None) -> int:
        with self._command("incr", key):
            value = await self._incr(keys=[key], args=[int(ttl_seconds or 0)])
        return int(value)

    async def compare_and_delete(self, key: str, expected: Any) -> bool:
        with self._command("compare_and_delete", key):
            removed = await self._compare_and_delete(keys=[key], args=[json.dumps(expected)])
        return bool(int(removed))

    async def zadd(self, key: str, score: float, member: str) -> None:
        with self._command("zadd", key):
            await self.client.zadd(key, {member: score})

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> List[str]:
        with self._command("zrangebyscore", key):
            return list(await self.client.zrangebyscore(key, min_score, max_score))

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._command("zrevrange", key):
            return list(await self.client.zrevrange(key, start, stop))

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        with self._command("zremrangebyscore", key):
            return int(await self.client.zremrangebyscore(key, min_score, max_score))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
