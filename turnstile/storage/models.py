from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TwoFactorDisabled:
    status = "disabled"


@dataclass(frozen=True)
class TwoFactorPending:
    """A generated secret awaiting its first valid code."""

    secret: str
    status = "pending"


@dataclass(frozen=True)
class TwoFactorEnabled:
    secret: str
    status = "enabled"


TwoFactorState = Union[TwoFactorDisabled, TwoFactorPending, TwoFactorEnabled]

TWO_FACTOR_STATUSES = ("disabled", "pending", "enabled")


def two_factor_from_columns(status: Optional[str], secret: Optional[str]) -> TwoFactorState:
    """Rebuild the tagged 2FA state from its persisted status/secret pair."""
    if status == "pending" and secret:
        return TwoFactorPending(secret)
    if status == "enabled" and secret:
        return TwoFactorEnabled(secret)
    return TwoFactorDisabled()


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    two_factor: TwoFactorState = field(default_factory=TwoFactorDisabled)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_federated_only(self) -> bool:
        return self.password_hash is None

    @property
    def two_factor_enabled(self) -> bool:
        return isinstance(self.two_factor, TwoFactorEnabled)


@dataclass
class TokenRecord:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class UserSummary:
    id: str
    username: str
    avatar: Optional[str] = None
