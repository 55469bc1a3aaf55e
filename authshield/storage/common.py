"""Contracts shared by the cache and store implementations.

The service layer only talks to these protocols, so ``RedisCache`` and
``MemoryCache`` (and any durable store providing ``AuthStore``) are
interchangeable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol

from authshield.storage.models import AccessToken, ApiKey, DeletedIdentity, User


class KeyValueCache(Protocol):
    """TTL key-value cache with an atomic counter and a sorted log.

    Values are JSON-serializable; ``get`` returns the decoded value or None
    when the key is absent or expired.
    """

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, *, ttl_seconds: Optional[int] = None) -> int: ...

    async def compare_and_delete(self, key: str, expected: Any) -> bool: ...

    async def zadd(self, key: str, score: float, member: str) -> None: ...

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> List[str]: ...

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def zremrangebyscore(
        self, key: str, min_score: float, max_score: float
    ) -> int: ...

    async def close(self) -> None: ...


class AuthStore(Protocol):
    def create_user(
        self,
        email: Optional[str],
        username: str,
        *,
        name: str = "",
        password_digest: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def list_users(self, *, include_deleted: bool = False) -> List[User]: ...

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def save_password(self, user_id: int, password_digest: str) -> None: ...

    def has_role(self, role: str) -> bool: ...

    def create_access_token(
        self, user_id: int, token_digest: str, expires_at: datetime
    ) -> AccessToken: ...

    def get_access_token(self, token_digest: str) -> Optional[AccessToken]: ...

    def revoke_access_tokens(self, user_id: int) -> int: ...

    def add_deleted_identity(
        self, user_id: int, email_digest: str, username_digest: Optional[str]
    ) -> DeletedIdentity: ...

    def find_deleted_identity(
        self, *, email_digest: Optional[str] = None, username_digest: Optional[str] = None
    ) -> Optional[DeletedIdentity]: ...

    def create_api_key(
        self,
        value: str,
        *,
        description: str = "",
        is_active: bool = True,
        expires_at: Optional[datetime] = None,
        permissions: Optional[List[str]] = None,
    ) -> ApiKey: ...

    def get_api_key(self, key_id: int) -> Optional[ApiKey]: ...

    def list_api_keys(self) -> List[ApiKey]: ...

    def list_active_api_keys(self, now: datetime) -> List[ApiKey]: ...

    def update_api_key(self, key_id: int, **fields: Any) -> Optional[ApiKey]: ...

    def delete_api_key(self, key_id: int) -> bool: ...

    def deactivate_expired_api_keys(self, now: datetime) -> int: ...
