from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authshield.logging import get_logger
from authshield.storage.errors import ConstraintViolation
from authshield.storage.models import (
    AccessToken,
    ApiKey,
    DeletedIdentity,
    User,
    deserialize_access_token,
    deserialize_api_key,
    deserialize_deleted_identity,
    deserialize_user,
    serialize_access_token,
    serialize_api_key,
    serialize_deleted_identity,
    serialize_user,
    utcnow,
)

_USER_FIELDS = frozenset(
    {
        "email",
        "username",
        "name",
        "role",
        "is_active",
        "is_deleted",
        "last_login_at",
        "last_ip",
        "email_verified_at",
        "deleted_at",
        "settings",
    }
)
_API_KEY_FIELDS = frozenset({"value", "description", "is_active", "expires_at", "permissions"})


class MemoryStore:
    """In-process source of truth for users, access tokens, blacklist and API keys.

    When ``state_path`` is given every mutation is flushed to a JSON file and
    reloaded on start, so a single-node deployment survives restarts.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.access_tokens: Dict[str, AccessToken] = {}
        self.deleted_identities: List[DeletedIdentity] = []
        self.api_keys: Dict[int, ApiKey] = {}
        self._seq: Dict[str, int] = {"users": 0, "access_tokens": 0, "deleted": 0, "api_keys": 0}
        # RLock: helpers that persist are called while the lock is already held
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _next_id(self, table: str) -> int:
        self._seq[table] += 1
        return self._seq[table]

    @staticmethod
    def _same(left: Optional[str], right: Optional[str]) -> bool:
        if not left or not right:
            return False
        return left.strip().lower() == right.strip().lower()

    # users -----------------------------------------------------------------

    def create_user(
        self,
        email: Optional[str],
        username: str,
        *,
        name: str = "",
        password_digest: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if email and self._same(existing.email, email):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if self._same(existing.username, username):
                    raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=self._next_id("users"),
                email=email.strip().lower() if email else None,
                username=username.strip(),
                name=name,
                role=role,
                is_active=is_active,
                password_digest=password_digest,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if self._same(u.email, email)), None)

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier that may be either an email or a username."""
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if self._same(u.email, identifier) or self._same(u.username, identifier)
                ),
                None,
            )

    def list_users(self, *, include_deleted: bool = False) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if include_deleted or not u.is_deleted]
            return sorted(results, key=lambda u: (u.created_at, u.id), reverse=True)

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for other in self.users.values():
                if other.id == user_id:
                    continue
                if fields.get("email") and self._same(other.email, fields["email"]):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if fields.get("username") and self._same(other.username, fields["username"]):
                    raise ConstraintViolation("username already exists", {"field": "username"})
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            stale = [d for d, tok in self.access_tokens.items() if tok.user_id == user_id]
            for digest in stale:
                self.access_tokens.pop(digest, None)
            self._persist_state()
            return True

    def save_password(self, user_id: int, password_digest: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            user.password_digest = password_digest
            user.updated_at = utcnow()
            self._persist_state()

    def has_role(self, role: str) -> bool:
        with self._data_lock:
            return any(u.role == role and not u.is_deleted for u in self.users.values())

    # access tokens ---------------------------------------------------------

    def create_access_token(
        self, user_id: int, token_digest: str, expires_at: datetime
    ) -> AccessToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for token", {"user_id": user_id})
            token = AccessToken(
                id=self._next_id("access_tokens"),
                user_id=user_id,
                token_digest=token_digest,
                expires_at=expires_at,
            )
            self.access_tokens[token_digest] = token
            self._persist_state()
            return token

    def get_access_token(self, token_digest: str) -> Optional[AccessToken]:
        with self._data_lock:
            return self.access_tokens.get(token_digest)

    def revoke_access_tokens(self, user_id: int) -> int:
        with self._data_lock:
            stale = [d for d, tok in self.access_tokens.items() if tok.user_id == user_id]
            for digest in stale:
                self.access_tokens.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # blacklist -------------------------------------------------------------

    def add_deleted_identity(
        self, user_id: int, email_digest: str, username_digest: Optional[str]
    ) -> DeletedIdentity:
        with self._data_lock:
            entry = DeletedIdentity(
                id=self._next_id("deleted"),
                user_id=user_id,
                email_digest=email_digest,
                username_digest=username_digest,
            )
            self.deleted_identities.append(entry)
            self._persist_state()
            return entry

    def find_deleted_identity(
        self, *, email_digest: Optional[str] = None, username_digest: Optional[str] = None
    ) -> Optional[DeletedIdentity]:
        with self._data_lock:
            for entry in self.deleted_identities:
                if email_digest and entry.email_digest == email_digest:
                    return entry
                if username_digest and entry.username_digest == username_digest:
                    return entry
            return None

    # api keys --------------------------------------------------------------

    def create_api_key(
        self,
        value: str,
        *,
        description: str = "",
        is_active: bool = True,
        expires_at: Optional[datetime] = None,
        permissions: Optional[List[str]] = None,
    ) -> ApiKey:
        with self._data_lock:
            if any(k.value == value for k in self.api_keys.values()):
                raise ConstraintViolation("api key already exists", {"field": "value"})
            key = ApiKey(
                id=self._next_id("api_keys"),
                value=value,
                description=description,
                is_active=is_active,
                expires_at=expires_at,
                permissions=list(permissions or []),
            )
            self.api_keys[key.id] = key
            self._persist_state()
            return key

    def get_api_key(self, key_id: int) -> Optional[ApiKey]:
        with self._data_lock:
            return self.api_keys.get(key_id)

    def list_api_keys(self) -> List[ApiKey]:
        with self._data_lock:
            return sorted(self.api_keys.values(), key=lambda k: k.id)

    def list_active_api_keys(self, now: datetime) -> List[ApiKey]:
        with self._data_lock:
            return [
                k
                for k in sorted(self.api_keys.values(), key=lambda k: k.id)
                if k.is_active and not k.is_expired(now)
            ]

    def update_api_key(self, key_id: int, **fields: Any) -> Optional[ApiKey]:
        unknown = set(fields) - _API_KEY_FIELDS
        if unknown:
            raise ValueError(f"unsupported api key fields: {sorted(unknown)}")
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if not key:
                return None
            for name, value in fields.items():
                setattr(key, name, value)
            key.updated_at = utcnow()
            self._persist_state()
            return key

    def delete_api_key(self, key_id: int) -> bool:
        with self._data_lock:
            if self.api_keys.pop(key_id, None) is None:
                return False
            self._persist_state()
            return True

    def deactivate_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k in self.api_keys.values() if k.is_active and k.is_expired(now)]
            for key in expired:
                key.is_active = False
                key.updated_at = now
            if expired:
                self._persist_state()
            return len(expired)

    # persistence -----------------------------------------------------------

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "sequences": dict(self._seq),
            "users": [serialize_user(u, include_secrets=True) for u in self.users.values()],
            "access_tokens": [serialize_access_token(t) for t in self.access_tokens.values()],
            "deleted_identities": [
                serialize_deleted_identity(d) for d in self.deleted_identities
            ],
            "api_keys": [serialize_api_key(k) for k in self.api_keys.values()],
        }
        try:
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        self.access_tokens = {
            t["token_digest"]: deserialize_access_token(t) for t in data.get("access_tokens", [])
        }
        self.deleted_identities = [
            deserialize_deleted_identity(d) for d in data.get("deleted_identities", [])
        ]
        self.api_keys = {k["id"]: deserialize_api_key(k) for k in data.get("api_keys", [])}
        sequences = data.get("sequences", {})
        self._seq = {
            "users": max([sequences.get("users", 0), *self.users.keys()]),
            "access_tokens": max(
                [sequences.get("access_tokens", 0), *(t.id for t in self.access_tokens.values())]
            ),
            "deleted": max(
                [sequences.get("deleted", 0), *(d.id for d in self.deleted_identities)]
            ),
            "api_keys": max([sequences.get("api_keys", 0), *self.api_keys.keys()]),
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            api_keys=len(self.api_keys),
            path=str(self.state_path),
        )
        return True
