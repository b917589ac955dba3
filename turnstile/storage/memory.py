from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from turnstile.logging import get_logger
from turnstile.storage.common import (
    SecretCipher,
    two_factor_from_row,
    two_factor_to_columns,
)
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import (
    TokenRecord,
    TwoFactorDisabled,
    TwoFactorState,
    User,
    UserSummary,
)


class MemoryStore:
    """In-process backing store with the same contract as ``PostgresStore``.

    Foreign-key behaviour is emulated: tokens, heartbeats and friendships of a
    deleted user are removed with it, and rows for unknown users are rejected.
    """

    def __init__(self, cipher: SecretCipher) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self.users: Dict[str, User] = {}
        # user_id -> (status, encrypted secret)
        self.two_factor: Dict[str, Tuple[str, Optional[str]]] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.heartbeats: Dict[str, datetime] = {}
        self.friends: Dict[str, Set[str]] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    def _materialize(self, user: User) -> User:
        status, encrypted = self.two_factor.get(user.id, ("disabled", None))
        return replace(
            user, two_factor=two_factor_from_row(status, encrypted, self.cipher)
        )

    def _check_unique(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        google_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation(
                    "username or email already in use", {"field": "username"}
                )
            if email is not None and existing.email == email:
                raise ConstraintViolation(
                    "username or email already in use", {"field": "email"}
                )
            if google_id is not None and existing.google_id == google_id:
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )

    # Users -------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            self._check_unique(username=username, email=email, google_id=google_id)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                google_id=google_id,
                avatar=avatar,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._materialize(user) if user else None

    def _find_user(self, **criteria) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if all(getattr(user, key) == value for key, value in criteria.items()):
                    return self._materialize(user)
            return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._find_user(username=username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user(email=email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._find_user(google_id=google_id)

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(username=username, email=email, exclude_id=user_id)
            changes = {
                key: value
                for key, value in (
                    ("username", username),
                    ("email", email),
                    ("avatar", avatar),
                )
                if value is not None
            }
            updated = replace(user, updated_at=datetime.now(timezone.utc), **changes)
            self.users[user_id] = updated
            return self._materialize(updated)

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(
                user, password_hash=password_hash, updated_at=datetime.now(timezone.utc)
            )
            return True

    def set_two_factor(
        self,
        user_id: str,
        state: TwoFactorState,
        *,
        expected: Optional[TwoFactorState] = None,
    ) -> bool:
        """Persist a 2FA state; with ``expected`` only if the stored state still equals it."""
        with self._data_lock:
            if user_id not in self.users:
                return False
            if expected is not None:
                current_status, current_secret = self.two_factor.get(user_id, ("disabled", None))
                if two_factor_from_row(current_status, current_secret, self.cipher) != expected:
                    return False
            if isinstance(state, TwoFactorDisabled):
                self.two_factor.pop(user_id, None)
            else:
                self.two_factor[user_id] = two_factor_to_columns(state, self.cipher)
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.two_factor.pop(user_id, None)
            self.heartbeats.pop(user_id, None)
            self.friends.pop(user_id, None)
            for friend_ids in self.friends.values():
                friend_ids.discard(user_id)
            for token, record in list(self.tokens.items()):
                if record.user_id == user_id:
                    self.tokens.pop(token, None)
            return True

    def list_users(self) -> List[UserSummary]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [UserSummary(id=u.id, username=u.username, avatar=u.avatar) for u in ordered]

    # Tokens ------------------------------------------------------------------

    def add_token(self, record: TokenRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            if record.token in self.tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.tokens[record.token] = record

    def get_token_owner(self, token: str) -> Optional[str]:
        with self._data_lock:
            record = self.tokens.get(token)
            return record.user_id if record else None

    def delete_user_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, r in self.tokens.items() if r.user_id == user_id]
            for token in doomed:
                self.tokens.pop(token, None)
            return len(doomed)

    # Presence ----------------------------------------------------------------

    def upsert_heartbeat(self, user_id: str, seen_at: datetime) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            previous = self.heartbeats.get(user_id)
            if previous is None or seen_at > previous:
                self.heartbeats[user_id] = seen_at

    def list_active_user_ids(self, since: datetime) -> List[str]:
        with self._data_lock:
            return [uid for uid, seen in self.heartbeats.items() if seen > since]

    # Friends -----------------------------------------------------------------

    def add_friend(self, user_id: str, friend_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users or friend_id not in self.users:
                raise ConstraintViolation(
                    "user not found", {"field": "friend_id", "reason": "missing"}
                )
            current = self.friends.setdefault(user_id, set())
            if friend_id in current:
                raise ConstraintViolation(
                    "friend already added", {"field": "friend_id", "reason": "duplicate"}
                )
            current.add(friend_id)

    def list_friends(self, user_id: str) -> List[UserSummary]:
        with self._data_lock:
            friend_ids = self.friends.get(user_id, set())
            return [
                UserSummary(id=u.id, username=u.username, avatar=u.avatar)
                for u in sorted(
                    (self.users[fid] for fid in friend_ids if fid in self.users),
                    key=lambda u: u.username,
                )
            ]


__all__ = ["MemoryStore"]
