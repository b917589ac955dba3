"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from turnstile.logging import get_logger
from turnstile.storage.errors import SecretUnreadable
from turnstile.storage.models import (
    TwoFactorDisabled,
    TwoFactorState,
    two_factor_from_columns,
)

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper for 2FA secrets at rest.

    The Fernet key is derived from arbitrary key material with SHA-256 so any
    configured secret string can be used.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("2FA encryption key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            logger.error("two_factor_secret_decrypt_failed")
            raise SecretUnreadable("stored 2FA secret cannot be decrypted") from exc


def two_factor_to_columns(
    state: TwoFactorState, cipher: SecretCipher
) -> Tuple[str, Optional[str]]:
    if isinstance(state, TwoFactorDisabled):
        return state.status, None
    return state.status, cipher.encrypt(state.secret)


def two_factor_from_row(
    status: Optional[str], encrypted: Optional[str], cipher: SecretCipher
) -> TwoFactorState:
    secret = cipher.decrypt(encrypted) if encrypted else None
    return two_factor_from_columns(status, secret)


__all__ = ["SecretCipher", "two_factor_to_columns", "two_factor_from_row"]
