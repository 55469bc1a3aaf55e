from __future__ import annotations

import json
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from authshield.config import RateLimitConfig
from authshield.logging import get_logger
from authshield.service.errors import (
    AccountBlockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
)
from authshield.service.rate_limit import RateLimiter
from authshield.service.tokens import SecretTokenCodec
from authshield.storage.common import AuthStore, KeyValueCache
from authshield.storage.errors import ConstraintViolation
from authshield.storage.models import ApiKey, deserialize_api_key, from_timestamp, serialize_api_key

logger = get_logger(__name__)


@dataclass
class AttemptLogEntry:
    timestamp: str
    ip: Optional[str]
    key_id: Optional[int]
    event: str
    success: bool
    reason: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "AttemptLogEntry":
        data = json.loads(raw)
        return cls(
            timestamp=data["timestamp"],
            ip=data.get("ip"),
            key_id=data.get("key_id"),
            event=data.get("event", ""),
            success=bool(data.get("success", False)),
            reason=data.get("reason", ""),
        )


class ApiKeyGuard:
    """Validates presented API keys and keeps their admin surface cache-consistent.

    Active keys are cached as plain DTOs under ``api_keys:active`` (the full
    list under ``api_keys:all``); any key mutation drops both. Failed
    validations are throttled per ``(presented key digest, ip)`` and appended
    to a time-bounded sorted log.
    """

    ACTIVE_CACHE_KEY = "api_keys:active"
    ALL_CACHE_KEY = "api_keys:all"
    SCOPE = "api_key"

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        config: RateLimitConfig,
        *,
        cache_ttl_seconds: int = 10 * 60,
        log_key: str = "auth:attempt_log",
        log_ttl_seconds: int = 7 * 24 * 60 * 60,
        default_days: int = 365,
        codec: Optional[SecretTokenCodec] = None,
        clock: Callable[[], float] = time.time,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.config = config
        self.cache_ttl_seconds = cache_ttl_seconds
        self.log_key = log_key
        self.log_ttl_seconds = log_ttl_seconds
        self.default_days = default_days
        self.codec = codec or SecretTokenCodec()
        self._clock = clock
        self.limiter = limiter or RateLimiter(cache, config, clock=clock)

    def _now(self) -> datetime:
        return from_timestamp(self._clock())

    @staticmethod
    def block_key_for(key_id: int) -> str:
        return f"api_key:blocked:{key_id}"

    async def invalidate(self) -> None:
        await self.cache.delete(self.ACTIVE_CACHE_KEY, self.ALL_CACHE_KEY)

    # listing ---------------------------------------------------------------

    async def list_active(self) -> List[ApiKey]:
        cached = await self.cache.get(self.ACTIVE_CACHE_KEY)
        if isinstance(cached, list):
            return [deserialize_api_key(entry) for entry in cached]
        now = self._now()
        deactivated = self.store.deactivate_expired_api_keys(now)
        if deactivated:
            logger.info("api_keys_expired_deactivated", count=deactivated)
            await self.cache.delete(self.ALL_CACHE_KEY)
        keys = self.store.list_active_api_keys(now)
        await self.cache.set(
            self.ACTIVE_CACHE_KEY,
            [serialize_api_key(k) for k in keys],
            self.cache_ttl_seconds,
        )
        return keys

    async def list_all(self) -> List[ApiKey]:
        cached = await self.cache.get(self.ALL_CACHE_KEY)
        if isinstance(cached, list):
            return [deserialize_api_key(entry) for entry in cached]
        keys = self.store.list_api_keys()
        await self.cache.set(
            self.ALL_CACHE_KEY, [serialize_api_key(k) for k in keys], self.cache_ttl_seconds
        )
        return keys

    def find_valid_key(self, keys: List[ApiKey], provided: str) -> Optional[ApiKey]:
        now = self._now()
        for key in keys:
            if not key.is_active or key.is_expired(now):
                continue
            if self.codec.safe_compare(key.value, provided):
                return key
        return None

    # admin -----------------------------------------------------------------

    async def create(
        self,
        *,
        description: str = "",
        value: Optional[str] = None,
        is_active: bool = True,
        days_expires: Optional[int] = None,
        permissions: Optional[List[str]] = None,
    ) -> ApiKey:
        expires_at = self._now() + timedelta(days=days_expires or self.default_days)
        try:
            key = self.store.create_api_key(
                value or secrets.token_hex(48),
                description=description,
                is_active=is_active,
                expires_at=expires_at,
                permissions=permissions,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self.invalidate()
        logger.info("api_key_created", key_id=key.id, expires_at=expires_at.isoformat())
        return key

    async def update(
        self,
        key_id: int,
        *,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
        days_expires: Optional[int] = None,
        permissions: Optional[List[str]] = None,
    ) -> ApiKey:
        fields = {}
        if description is not None:
            fields["description"] = description
        if is_active is not None:
            fields["is_active"] = is_active
        if days_expires is not None:
            fields["expires_at"] = self._now() + timedelta(days=days_expires)
        if permissions is not None:
            fields["permissions"] = list(permissions)
        key = self.store.update_api_key(key_id, **fields) if fields else self.store.get_api_key(key_id)
        if not key:
            raise NotFoundError("api key not found", detail={"key_id": key_id})
        await self.invalidate()
        return key

    async def delete(self, key_id: int) -> bool:
        if not self.store.delete_api_key(key_id):
            return False
        await self.invalidate()
        logger.info("api_key_deleted", key_id=key_id)
        return True

    async def disable(self, key_id: int) -> ApiKey:
        return await self.update(key_id, is_active=False)

    async def block_key(self, key_id: int, seconds: Optional[int] = None) -> datetime:
        duration = seconds or self.config.block_seconds
        blocked_until = self._clock() + duration
        await self.cache.set(self.block_key_for(key_id), blocked_until, duration)
        logger.warning("api_key_blocked", key_id=key_id, block_seconds=duration)
        return from_timestamp(blocked_until)

    async def _blocked_until(self, key_id: int) -> Optional[float]:
        raw = await self.cache.get(self.block_key_for(key_id))
        if raw is None:
            return None
        try:
            blocked_until = float(raw)
        except (TypeError, ValueError):
            return None
        return blocked_until if blocked_until > self._clock() else None

    async def is_key_blocked(self, key_id: int) -> bool:
        return await self._blocked_until(key_id) is not None

    # attempt log -----------------------------------------------------------

    async def log_attempt(
        self,
        *,
        ip: Optional[str],
        key_id: Optional[int],
        event: str,
        success: bool,
        reason: str,
    ) -> None:
        now = self._clock()
        entry = AttemptLogEntry(
            timestamp=from_timestamp(now).isoformat(),
            ip=ip,
            key_id=key_id,
            event=event,
            success=success,
            reason=reason,
        )
        log = logger.info if success else logger.warning
        log("api_key_attempt", ip=ip, key_id=key_id, attempt_event=event, success=success, reason=reason)
        if success:
            return
        now_ms = int(now * 1000)
        try:
            await self.cache.zadd(self.log_key, now_ms, entry.to_json())
            await self.cache.zremrangebyscore(
                self.log_key, 0, now_ms - self.log_ttl_seconds * 1000
            )
        except Exception as exc:
            logger.error(
                "attempt_log_write_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @staticmethod
    def _parse_entries(raw_entries: List[str]) -> List[AttemptLogEntry]:
        entries = []
        for raw in raw_entries:
            try:
                entries.append(AttemptLogEntry.from_json(raw))
            except (json.JSONDecodeError, KeyError, TypeError):
                continue
        return entries

    async def recent_attempts(self, limit: int = 100) -> List[AttemptLogEntry]:
        if limit <= 0:
            return []
        return self._parse_entries(await self.cache.zrevrange(self.log_key, 0, limit - 1))

    async def attempts_between(self, start: datetime, end: datetime) -> List[AttemptLogEntry]:
        raw = await self.cache.zrangebyscore(
            self.log_key, start.timestamp() * 1000, end.timestamp() * 1000
        )
        return self._parse_entries(raw)

    # validation ------------------------------------------------------------

    async def validate(self, provided: Optional[str], ip: Optional[str]) -> ApiKey:
        if not provided:
            await self.log_attempt(
                ip=ip, key_id=None, event="api_key_missing", success=False, reason="missing"
            )
            raise InvalidCredentialsError("api key missing")

        identifier = self.codec.digest(provided)
        check = await self.limiter.check(self.SCOPE, identifier, ip)
        if not check.allowed:
            await self.log_attempt(
                ip=ip, key_id=None, event="api_key_throttled", success=False, reason="rate_limited"
            )
            raise RateLimitedError(
                "too many invalid api key attempts",
                retry_after=check.retry_after,
                attempts_remaining=check.attempts_remaining,
            )

        key = self.find_valid_key(await self.list_active(), provided)
        if key is None:
            await self.limiter.record_attempt(self.SCOPE, identifier, ip)
            await self.log_attempt(
                ip=ip, key_id=None, event="api_key_invalid", success=False, reason="invalid_key"
            )
            raise InvalidCredentialsError("invalid api key")

        blocked_until = await self._blocked_until(key.id)
        if blocked_until is not None:
            await self.log_attempt(
                ip=ip, key_id=key.id, event="api_key_blocked", success=False, reason="key_blocked"
            )
            raise AccountBlockedError(
                "api key temporarily blocked", blocked_until=from_timestamp(blocked_until)
            )

        await self.limiter.clear_attempts(self.SCOPE, identifier, ip)
        await self.log_attempt(
            ip=ip, key_id=key.id, event="api_key_validated", success=True, reason="ok"
        )
        return key
