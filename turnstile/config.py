from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from turnstile.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential engine and its HTTP surface."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    # Session lifetimes
    session_ttl_seconds: int = env_field(
        3600,
        "USER_TOKEN_EXPIRY",
        description="Session TTL; sliding window in cache mode, fixed claim expiry otherwise",
    )
    session_absolute_ttl_seconds: int = env_field(
        60 * 60 * 24 * 30,
        "USER_TOKEN_ABSOLUTE_EXPIRY",
        description="Upper bound on a cache-backed session regardless of refreshes",
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TOKEN_EXPIRY")
    twofa_token_ttl_seconds: int = env_field(600, "TWO_FA_TOKEN_EXPIRY")
    twofa_issuer: str = env_field("Transcendence", "TWO_FA_ISSUER")
    twofa_encryption_key: str | None = env_field(
        None,
        "TWO_FA_ENCRYPTION_KEY",
        description="Key material for 2FA secrets at rest; defaults to the JWT secret",
    )
    # Rate limiting
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMITER_DURATION_IN_SECONDS")
    rate_limit_requests: int = env_field(1000, "RATE_LIMITER_REQUEST_LIMIT")
    rate_limit_cleanup_interval_seconds: int = env_field(
        300, "RATE_LIMITER_CLEANUP_INTERVAL_IN_SECONDS"
    )
    presence_window_seconds: int = env_field(120, "PRESENCE_WINDOW_SECONDS")
    # Backends
    redis_url: str = env_field(
        "",
        "REDIS_URL",
        description="Empty selects the durable token/presence strategy",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/turnstile", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")
    background_workers: int = env_field(4, "BACKGROUND_WORKERS")
    background_max_pending: int = env_field(1024, "BACKGROUND_MAX_PENDING")
    # Google federation
    google_client_id: str = env_field("", "GOOGLE_CLIENT_ID")
    google_client_secret: str = env_field("", "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str = env_field(
        "http://localhost:3003/api/users/google/callback", "GOOGLE_REDIRECT_URI"
    )
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma separated list of origins"
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    port: int = env_field(3003, "PORT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_seconds",
        "session_absolute_ttl_seconds",
        "oauth_state_ttl_seconds",
        "twofa_token_ttl_seconds",
        "rate_limit_window_seconds",
        "rate_limit_requests",
        "rate_limit_cleanup_interval_seconds",
        "presence_window_seconds",
        "background_workers",
        "background_max_pending",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeout must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required")
        # Tokens only need to outlive the test process
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated_for_test_mode")
        return self

    @property
    def cache_enabled(self) -> bool:
        return bool(self.redis_url.strip())

    @property
    def allowed_origins(self) -> List[str]:
        origins = [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        return origins or [self.frontend_url]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
