from __future__ import annotations

import secrets
import time
from typing import Any, Callable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authshield.logging import get_logger
from authshield.service.blacklist import BlacklistService
from authshield.service.errors import ConflictError, InvalidCredentialsError, NotFoundError
from authshield.storage.common import AuthStore, KeyValueCache
from authshield.storage.errors import ConstraintViolation
from authshield.storage.models import User, deserialize_user, from_timestamp, serialize_user

logger = get_logger(__name__)

ROLE_SUPER = "super"
ROLE_DELETED = "deleted"


class UserCacheGateway:
    """Read-through user cache bound to the store.

    Reads go ``user:{id}`` / ``users:list`` first. Every mutation goes to the
    store and then deletes both entries before returning, so the caller that
    performed a write always reads it back.
    """

    LIST_KEY = "users:list"

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        *,
        blacklist: Optional[BlacklistService] = None,
        ttl_seconds: int = 60 * 60,
        list_ttl_seconds: int = 10 * 60,
        clock: Callable[[], float] = time.time,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.blacklist = blacklist or BlacklistService(store)
        self.ttl_seconds = ttl_seconds
        self.list_ttl_seconds = list_ttl_seconds
        self._clock = clock
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def _snapshot(user: User) -> User:
        """Detached copy without the password digest, the shape a cache hit returns."""
        return deserialize_user(serialize_user(user))

    @staticmethod
    def user_key(user_id: int) -> str:
        return f"user:{user_id}"

    # reads -----------------------------------------------------------------

    async def get(self, user_id: int) -> User:
        cached = await self.cache.get(self.user_key(user_id))
        if isinstance(cached, dict):
            return deserialize_user(cached)
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self.cache.set(self.user_key(user_id), serialize_user(user), self.ttl_seconds)
        return self._snapshot(user)

    async def list(self) -> List[User]:
        cached = await self.cache.get(self.LIST_KEY)
        if isinstance(cached, list):
            return [deserialize_user(entry) for entry in cached]
        users = self.store.list_users()
        await self.cache.set(
            self.LIST_KEY, [serialize_user(u) for u in users], self.list_ttl_seconds
        )
        return [self._snapshot(u) for u in users]

    async def invalidate(self, user_id: Optional[int] = None) -> None:
        keys = [self.LIST_KEY]
        if user_id is not None:
            keys.insert(0, self.user_key(user_id))
        await self.cache.delete(*keys)
        logger.debug("user_cache_invalidated", user_id=user_id)

    @staticmethod
    def is_active(user: Optional[User]) -> bool:
        if user is None:
            raise NotFoundError("user not found")
        return user.is_active and not user.is_deleted

    def needs_initial_setup(self) -> bool:
        return not self.store.has_role(ROLE_SUPER)

    # passwords -------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify against the store record; cached snapshots carry no digest."""
        user = self.store.get_user(user_id)
        if not user or not user.password_digest:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_digest, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    async def set_password(
        self, user_id: int, password: str, *, revoke_tokens: bool = True
    ) -> None:
        try:
            self.store.save_password(user_id, self.hash_password(password))
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
        if revoke_tokens:
            self.store.revoke_access_tokens(user_id)
        await self.invalidate(user_id)

    async def change_password(
        self, user_id: int, new_password: str, current_password: str
    ) -> None:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.verify_password(user_id, current_password):
            raise InvalidCredentialsError("current password is invalid")
        await self.set_password(user_id, new_password, revoke_tokens=False)
        logger.info("password_changed", user_id=user_id)

    # mutations -------------------------------------------------------------

    def _ensure_not_blacklisted(self, email: Optional[str], username: Optional[str]) -> None:
        if self.blacklist.is_blacklisted(email=email, username=username):
            raise ConflictError("identity belongs to a deleted account")

    async def create(
        self,
        email: Optional[str],
        username: str,
        password: Optional[str] = None,
        *,
        name: str = "",
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        self._ensure_not_blacklisted(email, username)
        try:
            user = self.store.create_user(
                email,
                username,
                name=name,
                password_digest=self.hash_password(password) if password else None,
                role=role,
                is_active=is_active,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self.invalidate(user.id)
        logger.info("user_created", user_id=user.id, role=role)
        return self._snapshot(user)

    async def create_super_admin(
        self, email: Optional[str], username: str, password: str, *, name: str = ""
    ) -> User:
        if not self.needs_initial_setup():
            raise ConflictError("a super administrator already exists")
        return await self.create(
            email, username, password, name=name, role=ROLE_SUPER, is_active=True
        )

    async def update(self, user_id: int, **fields: Any) -> User:
        password = fields.pop("password", None)
        if fields.get("email") or fields.get("username"):
            self._ensure_not_blacklisted(fields.get("email"), fields.get("username"))
        try:
            user = self.store.update_user(user_id, **fields) if fields else self.store.get_user(user_id)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if password:
            self.store.save_password(user_id, self.hash_password(password))
        await self.invalidate(user_id)
        return self._snapshot(user)

    async def delete(self, user_id: int) -> bool:
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self.invalidate(user_id)
        logger.info("user_deleted", user_id=user_id)
        return True

    async def mark_email_verified(self, user_id: int) -> User:
        return await self.update(user_id, email_verified_at=from_timestamp(self._clock()))

    async def record_login(self, user_id: int, ip: Optional[str]) -> User:
        return await self.update(
            user_id, last_login_at=from_timestamp(self._clock()), last_ip=ip
        )

    async def revoke_tokens(self, user_id: int) -> int:
        revoked = self.store.revoke_access_tokens(user_id)
        await self.invalidate(user_id)
        return revoked

    async def anonymize(self, user_id: int) -> User:
        """Scrub personal data, lock the account and blacklist its identity."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        # digests are taken from the real identity, so this precedes the scrub
        self.blacklist.add(user)
        scrubbed = self.store.update_user(
            user_id,
            email=f"deleted_{user_id}@internal.system",
            name="User Deleted",
            username=f"deleted_user_{user_id}",
            role=ROLE_DELETED,
            settings=None,
            last_login_at=None,
            last_ip=None,
            email_verified_at=None,
            deleted_at=from_timestamp(self._clock()),
            is_active=False,
            is_deleted=True,
        )
        self.store.save_password(user_id, self.hash_password(secrets.token_urlsafe(32)))
        self.store.revoke_access_tokens(user_id)
        await self.invalidate(user_id)
        logger.info("user_anonymized", user_id=user_id)
        return self._snapshot(scrubbed)
