from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_in(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, (int, float)):
        return from_timestamp(float(raw))
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: int
    email: Optional[str]
    username: str
    name: str = ""
    role: str = "user"
    is_active: bool = True
    is_deleted: bool = False
    password_digest: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_ip: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    settings: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def contact(self) -> str:
        """Address notifications go to; accounts without an email use the username."""
        return self.email or self.username


@dataclass
class AccessToken:
    id: int
    user_id: int
    token_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DeletedIdentity:
    """Irreversible record of an anonymized account; digests only."""

    id: int
    user_id: int
    email_digest: str
    username_digest: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ApiKey:
    id: int
    value: str
    description: str = ""
    is_active: bool = True
    expires_at: Optional[datetime] = None
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def serialize_user(user: User, *, include_secrets: bool = False) -> dict:
    data = {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
        "is_deleted": user.is_deleted,
        "last_login_at": _dt_out(user.last_login_at),
        "last_ip": user.last_ip,
        "email_verified_at": _dt_out(user.email_verified_at),
        "deleted_at": _dt_out(user.deleted_at),
        "settings": user.settings,
        "created_at": _dt_out(user.created_at),
        "updated_at": _dt_out(user.updated_at),
    }
    if include_secrets:
        data["password_digest"] = user.password_digest
    return data


def deserialize_user(data: dict) -> User:
    return User(
        id=int(data["id"]),
        email=data.get("email"),
        username=data.get("username") or "",
        name=data.get("name") or "",
        role=data.get("role", "user"),
        is_active=bool(data.get("is_active", True)),
        is_deleted=bool(data.get("is_deleted", False)),
        password_digest=data.get("password_digest"),
        last_login_at=_dt_in(data.get("last_login_at")),
        last_ip=data.get("last_ip"),
        email_verified_at=_dt_in(data.get("email_verified_at")),
        deleted_at=_dt_in(data.get("deleted_at")),
        settings=data.get("settings"),
        created_at=_dt_in(data.get("created_at")) or utcnow(),
        updated_at=_dt_in(data.get("updated_at")),
    )


def serialize_api_key(key: ApiKey) -> dict:
    # expires_at as epoch seconds keeps cached DTOs cheap to compare
    return {
        "id": key.id,
        "value": key.value,
        "description": key.description,
        "is_active": key.is_active,
        "expires_at": key.expires_at.timestamp() if key.expires_at else None,
        "permissions": list(key.permissions),
        "created_at": _dt_out(key.created_at),
        "updated_at": _dt_out(key.updated_at),
    }


def deserialize_api_key(data: dict) -> ApiKey:
    return ApiKey(
        id=int(data["id"]),
        value=data["value"],
        description=data.get("description") or "",
        is_active=bool(data.get("is_active", True)),
        expires_at=_dt_in(data.get("expires_at")),
        permissions=list(data.get("permissions") or []),
        created_at=_dt_in(data.get("created_at")) or utcnow(),
        updated_at=_dt_in(data.get("updated_at")),
    )


def serialize_access_token(token: AccessToken) -> dict:
    return {
        "id": token.id,
        "user_id": token.user_id,
        "token_digest": token.token_digest,
        "expires_at": _dt_out(token.expires_at),
        "created_at": _dt_out(token.created_at),
    }


def deserialize_access_token(data: dict) -> AccessToken:
    return AccessToken(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        token_digest=data["token_digest"],
        expires_at=_dt_in(data["expires_at"]),
        created_at=_dt_in(data.get("created_at")) or utcnow(),
    )


def serialize_deleted_identity(entry: DeletedIdentity) -> dict:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "email_digest": entry.email_digest,
        "username_digest": entry.username_digest,
        "created_at": _dt_out(entry.created_at),
    }


def deserialize_deleted_identity(data: dict) -> DeletedIdentity:
    return DeletedIdentity(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        email_digest=data["email_digest"],
        username_digest=data.get("username_digest"),
        created_at=_dt_in(data.get("created_at")) or utcnow(),
    )
