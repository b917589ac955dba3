from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from redis import Redis

from turnstile.logging import get_logger

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session"
PRESENCE_KEY = "heartbeat:"


def session_key(user_id: str, token: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{user_id}:{token}"


def session_key_pattern(user_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{user_id}:*"


def mask_url_password(url: str) -> str:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def create_redis_client(redis_url: str, *, timeout_seconds: float = 2.0) -> Redis:
    """Build a synchronous client with bounded socket timeouts and verify it with PING."""
    client = Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
    client.ping()
    logger.info("redis_connected", redis_url=mask_url_password(redis_url))
    return client


__all__ = [
    "PRESENCE_KEY",
    "create_redis_client",
    "mask_url_password",
    "session_key",
    "session_key_pattern",
]
