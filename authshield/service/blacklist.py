from __future__ import annotations

import hashlib
from typing import Optional

from authshield.logging import get_logger
from authshield.service.errors import ConflictError
from authshield.storage.common import AuthStore
from authshield.storage.models import DeletedIdentity, User

logger = get_logger(__name__)


class BlacklistService:
    """Digest-only registry of identities that belonged to anonymized accounts."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    @staticmethod
    def digest(value: str) -> str:
        return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()

    def is_blacklisted(
        self, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> bool:
        if not email and not username:
            return False
        entry = self.store.find_deleted_identity(
            email_digest=self.digest(email) if email else None,
            username_digest=self.digest(username) if username else None,
        )
        return entry is not None

    def add(self, user: User) -> DeletedIdentity:
        """Record ``user``'s contact identity; must run before fields are scrubbed."""
        if user.is_deleted:
            raise ConflictError("user is already blacklisted", detail={"user_id": user.id})
        entry = self.store.add_deleted_identity(
            user.id,
            self.digest(user.contact),
            self.digest(user.username) if user.username else None,
        )
        logger.info("identity_blacklisted", user_id=user.id)
        return entry
