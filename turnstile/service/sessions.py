from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from redis import Redis

from turnstile.logging import get_logger
from turnstile.service.errors import AuthenticationError
from turnstile.service.presence import PresenceTracker
from turnstile.service.tokens import CredentialSigner, TokenKind
from turnstile.storage.models import TokenRecord, User
from turnstile.storage.redis_cache import session_key, session_key_pattern

logger = get_logger(__name__)

_SCAN_BATCH = 100


def _invalid_token() -> AuthenticationError:
    # One message for "unknown" and "wrong owner" so callers cannot tell them apart
    return AuthenticationError("invalid token")


@dataclass(frozen=True)
class SessionGrant:
    """A freshly issued session token and the user it belongs to."""

    user: User
    token: str


class TokenStore(Protocol):
    def issue_session(self, user_id: str, *, revoke_existing: bool = False) -> str:
        ...

    def validate(self, token: str, user_id: str) -> None:
        ...

    def revoke_all(self, user_id: str) -> int:
        ...


class SessionRowStore(Protocol):
    def add_token(self, record: TokenRecord) -> None:
        ...

    def get_token_owner(self, token: str) -> Optional[str]:
        ...

    def delete_user_tokens(self, user_id: str) -> int:
        ...


class DurableTokenStore:
    """Session tokens as rows keyed by the token string.

    A row only proves the token was issued and not revoked; expiry is carried
    by the signed ``exp`` claim, which callers verify before ``validate``.
    """

    def __init__(
        self,
        store: SessionRowStore,
        signer: CredentialSigner,
        presence: PresenceTracker,
        *,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.signer = signer
        self.presence = presence
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue_session(self, user_id: str, *, revoke_existing: bool = False) -> str:
        if revoke_existing:
            self.revoke_all(user_id)
        token = self.signer.issue(TokenKind.USER, {"sub": user_id}, self.ttl_seconds)
        now = self._clock()
        self.store.add_token(
            TokenRecord(
                token=token,
                user_id=user_id,
                created_at=datetime.fromtimestamp(now, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(now + self.ttl_seconds, tz=timezone.utc),
            )
        )
        self.presence.touch(user_id)
        return token

    def validate(self, token: str, user_id: str) -> None:
        owner = self.store.get_token_owner(token)
        if owner is None:
            logger.info("session_token_unknown", user_id=user_id)
            raise _invalid_token()
        if owner != user_id:
            logger.warning("session_token_owner_mismatch", user_id=user_id)
            raise _invalid_token()
        self.presence.touch(user_id)

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.delete_user_tokens(user_id)
        logger.info("session_tokens_revoked", user_id=user_id, revoked=revoked)
        return revoked


class CacheTokenStore:
    """Session tokens as Redis keys ``session:<user>:<token>`` with a sliding TTL.

    The key value records the owner, the absolute deadline and the current idle
    deadline. Each successful validation pushes the idle deadline forward by
    the sliding TTL, never past the absolute deadline, and rewrites the key
    with ``SET XX EX`` so a concurrent revoke is never resurrected.
    """

    def __init__(
        self,
        client: Redis,
        signer: CredentialSigner,
        presence: PresenceTracker,
        *,
        sliding_ttl_seconds: int,
        absolute_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.signer = signer
        self.presence = presence
        self.sliding_ttl_seconds = sliding_ttl_seconds
        self.absolute_ttl_seconds = absolute_ttl_seconds
        self._clock = clock

    @staticmethod
    def _ttl(now: float, deadline: float) -> int:
        return max(1, math.ceil(deadline - now))

    def issue_session(self, user_id: str, *, revoke_existing: bool = False) -> str:
        if revoke_existing:
            self.revoke_all(user_id)
        # The signed claim carries the absolute cap; Redis owns the sliding window
        token = self.signer.issue(TokenKind.USER, {"sub": user_id}, self.absolute_ttl_seconds)
        now = self._clock()
        absolute = now + self.absolute_ttl_seconds
        idle = min(now + self.sliding_ttl_seconds, absolute)
        self.client.set(
            session_key(user_id, token),
            json.dumps({"uid": user_id, "abs": absolute, "idle": idle}),
            ex=self._ttl(now, idle),
        )
        self.presence.touch(user_id)
        return token

    def validate(self, token: str, user_id: str) -> None:
        key = session_key(user_id, token)
        raw = self.client.get(key)
        if raw is None:
            logger.info("session_token_unknown", user_id=user_id)
            raise _invalid_token()
        try:
            entry = json.loads(raw)
            owner, absolute, idle = entry["uid"], float(entry["abs"]), float(entry["idle"])
        except (ValueError, KeyError, TypeError):
            logger.error("session_entry_corrupt", user_id=user_id)
            self.client.delete(key)
            raise _invalid_token()
        if owner != user_id:
            logger.warning("session_token_owner_mismatch", user_id=user_id)
            raise _invalid_token()
        now = self._clock()
        if now >= idle or now >= absolute:
            self.client.delete(key)
            logger.info("session_token_expired", user_id=user_id)
            raise _invalid_token()
        new_idle = min(now + self.sliding_ttl_seconds, absolute)
        refreshed = self.client.set(
            key,
            json.dumps({"uid": owner, "abs": absolute, "idle": new_idle}),
            ex=self._ttl(now, new_idle),
            xx=True,
        )
        if not refreshed:
            # Revoked between GET and SET
            raise _invalid_token()
        self.presence.touch(user_id)

    def revoke_all(self, user_id: str) -> int:
        revoked = 0
        batch: list[str] = []
        for key in self.client.scan_iter(match=session_key_pattern(user_id), count=_SCAN_BATCH):
            batch.append(key)
            if len(batch) >= _SCAN_BATCH:
                revoked += self.client.delete(*batch)
                batch = []
        if batch:
            revoked += self.client.delete(*batch)
        logger.info("session_tokens_revoked", user_id=user_id, revoked=revoked)
        return revoked


def build_token_store(
    *,
    store: SessionRowStore,
    client: Optional[Redis],
    signer: CredentialSigner,
    presence: PresenceTracker,
    session_ttl_seconds: int,
    absolute_ttl_seconds: int,
    clock: Callable[[], float] = time.time,
) -> TokenStore:
    """Pick the token strategy once: Redis when a client is configured, rows otherwise."""
    if client is not None:
        return CacheTokenStore(
            client,
            signer,
            presence,
            sliding_ttl_seconds=session_ttl_seconds,
            absolute_ttl_seconds=absolute_ttl_seconds,
            clock=clock,
        )
    return DurableTokenStore(
        store, signer, presence, ttl_seconds=session_ttl_seconds, clock=clock
    )


__all__ = [
    "CacheTokenStore",
    "DurableTokenStore",
    "SessionGrant",
    "TokenStore",
    "build_token_store",
]
