from __future__ import annotations

import re
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from turnstile.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error|2FA_REQUIRED)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
_PASSWORD_PATTERN = re.compile(r"^[A-Za-z0-9,.#$%@^;|_!*&?]+$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")


def _validate_username(value: str) -> str:
    value = value.strip()
    if not 3 <= len(value) <= 50:
        raise ValueError("username must be 3-50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits, '.', '_' and '-'")
    return value


def _validate_password(value: str) -> str:
    if not 3 <= len(value) <= 20:
        raise ValueError("password must be 3-20 characters")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError("password contains unsupported characters")
    return value


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if len(normalized) > 100:
        raise ValueError("email must be at most 100 characters")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_avatar(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not value.startswith(("http://", "https://")) or len(value) > 2048:
        raise ValueError("avatar must be an http(s) URL")
    return value


def _validate_code(value: str) -> str:
    if not _CODE_PATTERN.match(value):
        raise ValueError("2FA code must be exactly 6 digits")
    return value


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    avatar: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("avatar")
    @classmethod
    def _check_avatar(cls, value: Optional[str]) -> Optional[str]:
        return _validate_avatar(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=3, max_length=100)
    password: str

    @field_validator("identifier")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        return value.strip()

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateProfileRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_email(value)

    @field_validator("avatar")
    @classmethod
    def _check_avatar(cls, value: Optional[str]) -> Optional[str]:
        return _validate_avatar(value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., alias="oldPassword")
    new_password: str = Field(..., alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("old_password", "new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class PasswordRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class TwoFactorConfirmRequest(BaseModel):
    code: str = Field(..., alias="twoFaCode")
    setup_token: str = Field(..., alias="setupToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_code(value)


class TwoFactorChallengeRequest(BaseModel):
    code: str = Field(..., alias="twoFaCode")
    session_token: str = Field(..., alias="sessionToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_code(value)


class AddFriendRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)

    model_config = ConfigDict(populate_by_name=True)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    avatar: Optional[str] = None
    two_fa: bool = Field(False, serialization_alias="twoFa")
    google_oauth_id: Optional[str] = Field(None, serialization_alias="googleOauthId")
    created_at: int = Field(..., serialization_alias="createdAt")
    token: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, token: Optional[str] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            avatar=user.avatar,
            two_fa=user.two_factor_enabled,
            google_oauth_id=user.google_id,
            created_at=int(user.created_at.timestamp()),
            token=token,
        )


class TwoFactorSetupResponse(BaseModel):
    secret: str = Field(..., serialization_alias="twoFaSecret")
    setup_token: str = Field(..., serialization_alias="setupToken")
    uri: str = Field(..., serialization_alias="twoFaUri")


class TwoFactorPendingResponse(BaseModel):
    message: str = "2FA_REQUIRED"
    session_token: str = Field(..., serialization_alias="sessionToken")


class SimpleUserResponse(BaseModel):
    id: str
    username: str
    avatar: Optional[str] = None


class FriendResponse(SimpleUserResponse):
    online: bool = False


class FriendsResponse(BaseModel):
    friends: List[FriendResponse]


class ValidationResponse(BaseModel):
    user_id: str = Field(..., serialization_alias="userId")
