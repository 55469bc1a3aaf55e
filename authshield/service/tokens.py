from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from authshield.service.errors import InvalidOrExpiredTokenError

_MIN_TOKEN_BYTES = 16


@dataclass(frozen=True)
class SecretToken:
    """One issued secret: ``plaintext`` goes to the user once, ``digest`` is stored."""

    plaintext: str
    digest: str

    def __repr__(self) -> str:
        return f"SecretToken(digest={self.digest[:8]}...)"


class SecretTokenCodec:
    """Hash-don't-store token helper.

    Plaintexts are random hex strings; only their SHA-256 digest is ever
    persisted and every comparison goes through ``hmac.compare_digest``.
    """

    def __init__(self, num_bytes: int = _MIN_TOKEN_BYTES) -> None:
        if num_bytes < _MIN_TOKEN_BYTES:
            raise ValueError(f"tokens need at least {_MIN_TOKEN_BYTES} bytes of entropy")
        self.num_bytes = num_bytes

    def generate(self) -> SecretToken:
        plaintext = secrets.token_hex(self.num_bytes)
        return SecretToken(plaintext=plaintext, digest=self.digest(plaintext))

    @staticmethod
    def digest(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    def verify(self, candidate: Any, stored_digest: Optional[str]) -> bool:
        """Return True when ``candidate`` hashes to ``stored_digest``.

        Fails closed: an absent digest (expired or never issued), a non-string
        candidate or any encoding problem yields False instead of raising.
        """
        if not stored_digest or not isinstance(stored_digest, str):
            return False
        if not candidate or not isinstance(candidate, str):
            return False
        try:
            computed = self.digest(candidate)
            return hmac.compare_digest(computed.encode("utf-8"), stored_digest.encode("utf-8"))
        except (UnicodeEncodeError, TypeError, ValueError):
            return False

    def require_valid(self, candidate: Any, stored_digest: Optional[str]) -> None:
        if not self.verify(candidate, stored_digest):
            raise InvalidOrExpiredTokenError()

    def safe_compare(self, expected: Any, provided: Any) -> bool:
        """Constant-time equality of two secrets of arbitrary length.

        Both sides are digested first so the comparison always runs over
        equal-length inputs and leaks nothing about the secret's length.
        """
        if not isinstance(expected, str) or not isinstance(provided, str):
            return False
        try:
            return hmac.compare_digest(
                self.digest(expected).encode("ascii"), self.digest(provided).encode("ascii")
            )
        except (UnicodeEncodeError, TypeError, ValueError):
            return False
