"""RFC 6238 time-based one-time passwords (SHA-1, 6 digits, 30 second step).

These defaults are the ones authenticator apps assume when scanning an
``otpauth://`` URI.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from turnstile.logging import get_logger

logger = get_logger(__name__)

DIGITS = 6
INTERVAL = 30
SKEW_STEPS = 1


@dataclass(frozen=True)
class GeneratedSecret:
    secret: str
    uri: str


class TotpAuthenticator:
    def __init__(
        self, issuer: str, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.issuer = issuer
        self._clock = clock

    def generate_secret(self, account_label: str) -> GeneratedSecret:
        secret = base64.b32encode(os.urandom(20)).decode().rstrip("=")
        return GeneratedSecret(secret=secret, uri=self.provisioning_uri(secret, account_label))

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": DIGITS,
                "period": INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def code_at(self, secret: str, timestamp: float) -> Optional[str]:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None
        counter = int(timestamp // INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**DIGITS
        )
        return str(code_int).zfill(DIGITS)

    def current_code(self, secret: str) -> Optional[str]:
        return self.code_at(secret, self._clock())

    def validate(self, code: str, secret: str) -> bool:
        """Check ``code`` against the current step and one adjacent step either side."""
        if not code or len(code) != DIGITS or not code.isdigit():
            return False
        now = self._clock()
        for offset in range(-SKEW_STEPS, SKEW_STEPS + 1):
            generated = self.code_at(secret, now + offset * INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False


__all__ = ["GeneratedSecret", "TotpAuthenticator"]
