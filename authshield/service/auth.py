from __future__ import annotations

import contextlib
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, List, Optional

from argon2 import PasswordHasher

from authshield.config import Settings
from authshield.logging import get_logger, identifier_hash
from authshield.service.api_keys import ApiKeyGuard, AttemptLogEntry
from authshield.service.blacklist import BlacklistService
from authshield.service.email import Notifier
from authshield.service.errors import (
    AccountBlockedError,
    DependencyFailureError,
    InactiveAccountError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    RateLimitedError,
)
from authshield.service.login_protection import (
    LoginCheckResult,
    LoginProtection,
    normalize_identifier,
)
from authshield.service.rate_limit import RateLimiter
from authshield.service.token_flow import EmailVerificationFlow, PasswordResetFlow
from authshield.service.tokens import SecretTokenCodec
from authshield.service.users import UserCacheGateway
from authshield.storage.common import AuthStore, KeyValueCache
from authshield.storage.errors import CacheUnavailable
from authshield.storage.models import ApiKey, User, from_timestamp

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: User
    access_token: str
    expires_at: datetime


class AuthService:
    """Caller-facing entry point that wires the auth components together.

    Every operation runs under ``_dependency_guard`` so an unreachable cache
    surfaces as ``DependencyFailureError`` instead of a backend exception.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        codec: Optional[SecretTokenCodec] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self._clock = clock
        self.codec = codec or SecretTokenCodec()
        self._access_codec = SecretTokenCodec(num_bytes=32)
        self.blacklist = BlacklistService(store)
        self.users = UserCacheGateway(
            store,
            cache,
            blacklist=self.blacklist,
            ttl_seconds=settings.user_cache_ttl_seconds,
            list_ttl_seconds=settings.user_list_cache_ttl_seconds,
            clock=clock,
            password_hasher=password_hasher,
        )
        token_limiter = RateLimiter(cache, settings.token_rate_limit(), clock=clock)
        self.verification = EmailVerificationFlow(
            cache,
            self.users,
            token_limiter,
            ttl_seconds=settings.verification_ttl_seconds,
            codec=self.codec,
            notifier=notifier,
            base_url=settings.app_base_url,
            clock=clock,
        )
        self.password_reset = PasswordResetFlow(
            cache,
            self.users,
            token_limiter,
            ttl_seconds=settings.reset_ttl_seconds,
            codec=self.codec,
            notifier=notifier,
            base_url=settings.app_base_url,
            clock=clock,
        )
        self.login_protection = LoginProtection(
            cache,
            settings.login_rate_limit(),
            extended_block_seconds=settings.login_extended_block_seconds,
            notifier=notifier,
            clock=clock,
        )
        self.api_keys = ApiKeyGuard(
            store,
            cache,
            settings.api_key_rate_limit(),
            cache_ttl_seconds=settings.api_key_cache_ttl_seconds,
            log_key=settings.attempt_log_key,
            log_ttl_seconds=settings.attempt_log_ttl_seconds,
            default_days=settings.api_key_default_days,
            codec=self.codec,
            clock=clock,
        )

    @contextlib.contextmanager
    def _dependency_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except CacheUnavailable as exc:
            logger.error(
                "auth_dependency_unavailable",
                operation=operation,
                cache_operation=exc.operation,
                error=str(exc),
            )
            raise DependencyFailureError(
                "cache unavailable", detail={"operation": operation}
            ) from exc

    # tokens ----------------------------------------------------------------

    async def request_verification(self, user_id: int, ip: str = "unknown") -> bool:
        with self._dependency_guard("request_verification"):
            user = await self.users.get(user_id)
            return await self.verification.request(user, ip)

    async def confirm_verification(self, email: str, token: str, ip: str = "unknown") -> User:
        with self._dependency_guard("confirm_verification"):
            return await self.verification.complete(email, token, ip)

    async def request_password_reset(self, email: str, ip: str = "unknown") -> bool:
        with self._dependency_guard("request_password_reset"):
            return await self.password_reset.request(email, ip)

    async def confirm_password_reset(
        self, email: str, token: str, new_password: str, ip: str = "unknown"
    ) -> User:
        with self._dependency_guard("confirm_password_reset"):
            return await self.password_reset.complete(email, token, new_password, ip)

    # login -----------------------------------------------------------------

    async def check_login_attempt(self, identifier: str, ip: str = "unknown") -> LoginCheckResult:
        with self._dependency_guard("check_login_attempt"):
            return await self.login_protection.check_login_attempt(identifier, ip)

    async def record_login_attempt(
        self,
        identifier: str,
        ip: str,
        success: bool,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> None:
        with self._dependency_guard("record_login_attempt"):
            await self.login_protection.record_login_attempt(
                identifier, ip, success, user_name=user_name, user_email=user_email
            )

    def _retry_after(self, blocked_until: Optional[datetime]) -> int:
        if blocked_until is None:
            return 0
        return max(1, math.ceil(blocked_until.timestamp() - self._clock()))

    async def login(self, identifier: str, password: str, ip: str = "unknown") -> LoginResult:
        if not identifier or not password:
            raise InvalidCredentialsError("invalid credentials")
        normalized = normalize_identifier(identifier)
        with self._dependency_guard("login"):
            check = await self.login_protection.check_login_attempt(normalized, ip)
            if not check.allowed:
                if check.is_blocked:
                    raise AccountBlockedError(blocked_until=check.blocked_until)
                raise RateLimitedError(
                    "too many login attempts",
                    retry_after=self._retry_after(check.blocked_until),
                    attempts_remaining=check.attempts_remaining,
                )

            user = self.store.get_user_by_login(normalized)
            if not user or not self.users.is_active(user):
                await self.login_protection.record_login_attempt(normalized, ip, False)
                logger.info("login_failed", identifier_hash=identifier_hash(normalized), ip=ip)
                raise InvalidCredentialsError("invalid credentials")

            if not self.users.verify_password(user.id, password):
                await self.login_protection.record_login_attempt(
                    normalized, ip, False, user_name=user.name, user_email=user.email
                )
                logger.info("login_failed", user_id=user.id, ip=ip)
                raise InvalidCredentialsError("invalid credentials")

            await self.login_protection.record_login_attempt(normalized, ip, True)
            # one live access token per user
            self.store.revoke_access_tokens(user.id)
            token = self._access_codec.generate()
            expires_at = from_timestamp(self._clock()) + timedelta(
                seconds=self.settings.access_token_ttl_seconds
            )
            self.store.create_access_token(user.id, token.digest, expires_at)
            fresh = await self.users.record_login(user.id, ip)
            logger.info("login_succeeded", user_id=user.id, ip=ip)
            return LoginResult(user=fresh, access_token=token.plaintext, expires_at=expires_at)

    async def authenticate_access_token(self, token: str) -> User:
        if not token or not isinstance(token, str):
            raise InvalidOrExpiredTokenError()
        record = self.store.get_access_token(self._access_codec.digest(token))
        if not record or record.expires_at <= from_timestamp(self._clock()):
            raise InvalidOrExpiredTokenError()
        with self._dependency_guard("authenticate_access_token"):
            user = await self.users.get(record.user_id)
        if not self.users.is_active(user):
            raise InactiveAccountError("account is inactive", detail={"user_id": user.id})
        return user

    async def logout(self, user_id: int) -> int:
        with self._dependency_guard("logout"):
            return await self.users.revoke_tokens(user_id)

    # api keys --------------------------------------------------------------

    async def validate_api_key(self, provided: Optional[str], ip: str = "unknown") -> ApiKey:
        with self._dependency_guard("validate_api_key"):
            return await self.api_keys.validate(provided, ip)

    async def create_api_key(self, **kwargs: Any) -> ApiKey:
        with self._dependency_guard("create_api_key"):
            return await self.api_keys.create(**kwargs)

    async def update_api_key(self, key_id: int, **kwargs: Any) -> ApiKey:
        with self._dependency_guard("update_api_key"):
            return await self.api_keys.update(key_id, **kwargs)

    async def delete_api_key(self, key_id: int) -> bool:
        with self._dependency_guard("delete_api_key"):
            return await self.api_keys.delete(key_id)

    async def list_api_keys(self) -> List[ApiKey]:
        with self._dependency_guard("list_api_keys"):
            return await self.api_keys.list_all()

    async def recent_api_key_attempts(self, limit: int = 100) -> List[AttemptLogEntry]:
        with self._dependency_guard("recent_api_key_attempts"):
            return await self.api_keys.recent_attempts(limit)

    # users -----------------------------------------------------------------

    async def invalidate_user_cache(self, user_id: Optional[int] = None) -> None:
        with self._dependency_guard("invalidate_user_cache"):
            await self.users.invalidate(user_id)

    async def get_me(self, user_id: int) -> User:
        with self._dependency_guard("get_me"):
            user = await self.users.get(user_id)
        if not self.users.is_active(user):
            raise InactiveAccountError("account is inactive", detail={"user_id": user_id})
        return user

    async def create_user(
        self,
        email: Optional[str],
        username: str,
        password: Optional[str] = None,
        **kwargs: Any,
    ) -> User:
        with self._dependency_guard("create_user"):
            return await self.users.create(email, username, password, **kwargs)

    async def update_user(self, user_id: int, **fields: Any) -> User:
        with self._dependency_guard("update_user"):
            return await self.users.update(user_id, **fields)

    async def delete_user(self, user_id: int) -> bool:
        with self._dependency_guard("delete_user"):
            return await self.users.delete(user_id)

    async def list_users(self) -> List[User]:
        with self._dependency_guard("list_users"):
            return await self.users.list()

    async def update_password(
        self, user_id: int, new_password: str, current_password: str
    ) -> None:
        with self._dependency_guard("update_password"):
            await self.users.change_password(user_id, new_password, current_password)

    async def anonymize_user(self, user_id: int) -> User:
        with self._dependency_guard("anonymize_user"):
            return await self.users.anonymize(user_id)

    def needs_initial_setup(self) -> bool:
        return self.users.needs_initial_setup()

    async def create_super_admin(
        self, email: Optional[str], username: str, password: str, *, name: str = ""
    ) -> User:
        with self._dependency_guard("create_super_admin"):
            return await self.users.create_super_admin(email, username, password, name=name)
