from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from turnstile.logging import get_logger

logger = get_logger(__name__)


class PasswordHashing:
    """Opaque one-way password comparison backed by argon2id."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, digest: str, password: str) -> bool:
        """Return True on match and False on mismatch.

        A malformed stored digest is an error, not a mismatch, and is raised.
        """
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.error("password_digest_unusable")
            raise


__all__ = ["PasswordHashing"]
