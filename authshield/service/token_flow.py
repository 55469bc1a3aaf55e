from __future__ import annotations

import time
from typing import Callable, Optional

from authshield.logging import get_logger, identifier_hash
from authshield.service.email import (
    Notifier,
    dispatch_notification,
    password_changed_message,
    password_reset_message,
    reset_throttled_message,
    verification_message,
)
from authshield.service.errors import (
    InactiveAccountError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from authshield.service.rate_limit import RateLimiter
from authshield.service.tokens import SecretToken, SecretTokenCodec
from authshield.service.users import UserCacheGateway
from authshield.storage.common import KeyValueCache
from authshield.storage.models import User, from_timestamp

logger = get_logger(__name__)


class TokenFlow:
    """Single-use emailed token bound to ``{key_prefix}:{identifier}``.

    Only the digest is stored, with a TTL. Issuing again for the same
    identifier overwrites the pending digest, so only the newest token is
    accepted. Consumption is a compare-and-delete: of two requests presenting
    the same token, exactly one wins.
    """

    key_prefix: str = ""
    scope: str = ""

    def __init__(
        self,
        cache: KeyValueCache,
        users: UserCacheGateway,
        limiter: RateLimiter,
        *,
        ttl_seconds: int,
        codec: Optional[SecretTokenCodec] = None,
        notifier: Optional[Notifier] = None,
        base_url: str = "http://localhost:8000",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.users = users
        self.limiter = limiter
        self.ttl_seconds = ttl_seconds
        self.codec = codec or SecretTokenCodec()
        self.notifier = notifier
        self.base_url = base_url
        self._clock = clock

    @staticmethod
    def normalize_identifier(identifier: str) -> str:
        return (identifier or "").strip().lower()

    def token_key(self, identifier: str) -> str:
        return f"{self.key_prefix}:{identifier}"

    async def _admit(self, identifier: str, ip: str) -> bool:
        check = await self.limiter.check(self.scope, identifier, ip)
        if not check.allowed:
            logger.info(
                "token_request_throttled",
                scope=self.scope,
                identifier_hash=identifier_hash(identifier),
                ip=ip,
                retry_after=check.retry_after,
            )
            return False
        await self.limiter.record_attempt(self.scope, identifier, ip)
        return True

    async def _issue(self, identifier: str) -> SecretToken:
        token = self.codec.generate()
        await self.cache.set(self.token_key(identifier), token.digest, self.ttl_seconds)
        logger.info(
            "token_issued",
            scope=self.scope,
            identifier_hash=identifier_hash(identifier),
            ttl_seconds=self.ttl_seconds,
        )
        return token

    async def _stored_digest(self, identifier: str, candidate: str) -> str:
        stored = await self.cache.get(self.token_key(identifier))
        if not self.codec.verify(candidate, stored):
            logger.warning(
                "token_rejected",
                scope=self.scope,
                identifier_hash=identifier_hash(identifier),
            )
            raise InvalidOrExpiredTokenError()
        return stored

    async def _claim(self, identifier: str, stored_digest: str) -> None:
        if not await self.cache.compare_and_delete(self.token_key(identifier), stored_digest):
            # consumed or superseded between verification and claim
            logger.warning(
                "token_claim_lost",
                scope=self.scope,
                identifier_hash=identifier_hash(identifier),
            )
            raise InvalidOrExpiredTokenError()

    def _load_user(self, identifier: str) -> User:
        user = self.users.store.get_user_by_login(identifier)
        if not user:
            raise NotFoundError("user not found")
        return user


class EmailVerificationFlow(TokenFlow):
    key_prefix = "verify_email"
    scope = "verify"

    async def request(self, user: User, ip: str = "unknown") -> bool:
        """Issue a verification code; returns False when throttled.

        The result does not depend on anything but the limiter, so it never
        reveals whether an address is registered.
        """
        identifier = self.normalize_identifier(user.contact)
        if not await self._admit(identifier, ip):
            return False
        token = await self._issue(identifier)
        await dispatch_notification(
            self.notifier,
            verification_message(
                user.contact,
                user.name or user.username,
                token.plaintext,
                base_url=self.base_url,
                ttl_seconds=self.ttl_seconds,
            ),
            event="email_verification",
        )
        return True

    async def complete(self, email: str, token: str, ip: str = "unknown") -> User:
        identifier = self.normalize_identifier(email)
        stored = await self._stored_digest(identifier, token)
        user = self._load_user(identifier)
        await self._claim(identifier, stored)
        verified = await self.users.mark_email_verified(user.id)
        await self.limiter.clear_attempts(self.scope, identifier, ip)
        logger.info("email_verified", user_id=user.id)
        return verified


class PasswordResetFlow(TokenFlow):
    key_prefix = "reset"
    scope = "reset"

    def _load_active_user(self, identifier: str) -> User:
        user = self.users.store.get_user_by_email(identifier)
        if not user:
            raise NotFoundError("user not found")
        if not self.users.is_active(user):
            raise InactiveAccountError("account is inactive", detail={"user_id": user.id})
        return user

    async def request(self, email: str, ip: str = "unknown") -> bool:
        """Issue a reset code for an active account; returns False when throttled.

        Unknown and inactive accounts are reported to the caller.
        """
        identifier = self.normalize_identifier(email)
        user = self._load_active_user(identifier)
        if not await self._admit(identifier, ip):
            await dispatch_notification(
                self.notifier,
                reset_throttled_message(
                    user.contact,
                    user.name or user.username,
                    ip=ip,
                    at=from_timestamp(self._clock()),
                ),
                event="password_reset_throttled",
            )
            return False
        token = await self._issue(identifier)
        await dispatch_notification(
            self.notifier,
            password_reset_message(
                user.contact,
                user.name or user.username,
                token.plaintext,
                base_url=self.base_url,
                ttl_seconds=self.ttl_seconds,
            ),
            event="password_reset",
        )
        return True

    async def complete(
        self, email: str, token: str, new_password: str, ip: str = "unknown"
    ) -> User:
        if not new_password:
            raise ValidationError("new password is required")
        identifier = self.normalize_identifier(email)
        stored = await self._stored_digest(identifier, token)
        user = self._load_active_user(identifier)
        await self._claim(identifier, stored)
        await self.users.set_password(user.id, new_password, revoke_tokens=True)
        await self.limiter.clear_attempts(self.scope, identifier, ip)
        logger.info("password_reset_completed", user_id=user.id)
        await dispatch_notification(
            self.notifier,
            password_changed_message(
                user.contact,
                user.name or user.username,
                ip=ip,
                at=from_timestamp(self._clock()),
            ),
            event="password_reset_success",
        )
        return self.users.store.get_user(user.id) or user
