import pytest
from pydantic import ValidationError

from turnstile.config import Settings, get_settings, reset_settings_cache
from turnstile.logging import _redact_pii
from turnstile.storage.redis_cache import mask_url_password


def test_from_env_reads_documented_names(monkeypatch):
    monkeypatch.setenv("USER_TOKEN_EXPIRY", "120")
    monkeypatch.setenv("RATE_LIMITER_REQUEST_LIMIT", "5")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test")

    settings = Settings.from_env()

    assert settings.session_ttl_seconds == 120
    assert settings.rate_limit_requests == 5
    assert settings.cache_enabled is True
    assert settings.allowed_origins == ["http://a.test", "http://b.test"]


def test_defaults():
    settings = Settings(jwt_secret="s")

    assert settings.cache_enabled is False
    assert settings.presence_window_seconds == 120
    assert settings.allowed_origins == [settings.frontend_url]


def test_secret_required_outside_test_mode():
    with pytest.raises(ValidationError, match="JWT_SECRET is required"):
        Settings(test_mode=False)


def test_secret_generated_in_test_mode():
    first = Settings(test_mode=True)
    second = Settings(test_mode=True)

    assert first.jwt_secret
    assert first.jwt_secret != second.jwt_secret


@pytest.mark.parametrize(
    "field", ["session_ttl_seconds", "rate_limit_window_seconds", "background_workers"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="s", **{field: 0})


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("PRESENCE_WINDOW_SECONDS", "30")
    assert get_settings() is get_settings()

    monkeypatch.setenv("PRESENCE_WINDOW_SECONDS", "45")
    assert get_settings().presence_window_seconds == 30
    reset_settings_cache()
    assert get_settings().presence_window_seconds == 45
    reset_settings_cache()


def test_redis_password_masked():
    assert mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert mask_url_password("redis://cache:6379") == "redis://cache:6379"


def test_log_processor_masks_credentials():
    event = _redact_pii(
        None,
        "info",
        {"event": "login", "password": "Secret123!", "setup_token": "abcdefgh", "user_id": "u-1"},
    )

    assert event["password"] == "Se***3!"
    assert event["setup_token"] == "ab***gh"
    assert event["user_id"] == "u-1"
    assert event["event"] == "login"
