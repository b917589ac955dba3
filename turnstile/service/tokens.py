from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from turnstile.logging import get_logger
from turnstile.service.errors import InvalidTokenError

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"type", "jti", "iat", "exp"})


class TokenKind(str, Enum):
    """Purpose discriminator carried in every signed token."""

    USER = "USER"
    OAUTH_STATE = "OAUTH_STATE"
    TWOFA_SETUP = "TWOFA_SETUP"
    TWOFA_CHALLENGE = "TWOFA_CHALLENGE"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CredentialSigner:
    """Issues and verifies HS256 JWTs tagged with a :class:`TokenKind`.

    The signer holds no state besides the key and the clock, so replacing the
    key only requires constructing a new signer.
    """

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode()
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, kind: TokenKind, claims: Dict[str, Any], ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {key: value for key, value in claims.items() if key not in _RESERVED_CLAIMS}
        payload.update(
            type=TokenKind(kind).value,
            jti=str(uuid.uuid4()),
            iat=now,
            exp=now + int(ttl_seconds),
        )
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject algorithm confusion before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def verify(self, token: str, expected_kind: TokenKind) -> Dict[str, Any]:
        """Return the claims of a valid, unexpired token of ``expected_kind``.

        Raises:
            InvalidTokenError: on a bad signature, malformed token, expiry, or a
                token minted for a different purpose. The message never says which.
        """
        payload = self._decode(token)
        if payload is None:
            raise InvalidTokenError()
        if payload.get("type") != TokenKind(expected_kind).value:
            logger.warning(
                "jwt_kind_mismatch",
                expected=TokenKind(expected_kind).value,
                actual=payload.get("type"),
            )
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= self._clock():
            raise InvalidTokenError()
        return payload


__all__ = ["CredentialSigner", "TokenKind"]
