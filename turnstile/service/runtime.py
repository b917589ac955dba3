from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Union

from redis import Redis

from turnstile.config import Settings, get_settings, reset_settings_cache
from turnstile.logging import get_logger
from turnstile.service.auth import AccountService
from turnstile.service.background import BackgroundDispatcher
from turnstile.service.oauth import GoogleOAuthClient
from turnstile.service.passwords import PasswordHashing
from turnstile.service.presence import build_presence_tracker
from turnstile.service.rate_limit import RateLimiter
from turnstile.service.sessions import build_token_store
from turnstile.service.tokens import CredentialSigner
from turnstile.service.totp import TotpAuthenticator
from turnstile.service.twofa import TwoFactorService
from turnstile.storage.common import SecretCipher
from turnstile.storage.memory import MemoryStore
from turnstile.storage.postgres import PostgresStore
from turnstile.storage.redis_cache import create_redis_client, mask_url_password

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def build_store(settings: Settings) -> Store:
    cipher = SecretCipher(settings.twofa_encryption_key or settings.jwt_secret or "")
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store: Store = (
            MemoryStore(cipher)
            if settings.use_memory_store
            else PostgresStore(
                settings.database_url,
                cipher,
                timeout_seconds=settings.store_timeout_seconds,
            )
        )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def build_cache_client(settings: Settings) -> Optional[Redis]:
    """Connect to Redis when configured; a configured but unreachable Redis is fatal."""
    if not settings.cache_enabled:
        return None
    try:
        return create_redis_client(
            settings.redis_url, timeout_seconds=settings.store_timeout_seconds
        )
    except Exception as exc:
        logger.error(
            "runtime_redis_init_failed",
            redis_url=mask_url_password(settings.redis_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise


class Runtime:
    """Holds the wired service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        cache_client: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            cache_enabled=self.settings.cache_enabled or cache_client is not None,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.cache = cache_client if cache_client is not None else build_cache_client(self.settings)

        self.dispatcher = BackgroundDispatcher(
            max_workers=self.settings.background_workers,
            max_pending=self.settings.background_max_pending,
            slow_after_seconds=self.settings.store_timeout_seconds,
        )
        self.signer = CredentialSigner(self.settings.jwt_secret or "", clock=clock)
        self.passwords = PasswordHashing()
        self.totp = TotpAuthenticator(self.settings.twofa_issuer, clock=clock)
        self.presence = build_presence_tracker(
            store=self.store,
            client=self.cache,
            dispatcher=self.dispatcher,
            window_seconds=self.settings.presence_window_seconds,
            clock=clock,
        )
        self.tokens = build_token_store(
            store=self.store,
            client=self.cache,
            signer=self.signer,
            presence=self.presence,
            session_ttl_seconds=self.settings.session_ttl_seconds,
            absolute_ttl_seconds=self.settings.session_absolute_ttl_seconds,
            clock=clock,
        )
        self.twofa = TwoFactorService(
            self.store,
            self.signer,
            self.totp,
            self.tokens,
            self.passwords,
            token_ttl_seconds=self.settings.twofa_token_ttl_seconds,
        )
        self.oauth = GoogleOAuthClient(
            self.settings.google_client_id,
            self.settings.google_client_secret,
            self.settings.google_redirect_uri,
        )
        self.accounts = AccountService(
            self.store,
            self.signer,
            self.tokens,
            self.presence,
            self.twofa,
            self.passwords,
            self.oauth,
            oauth_state_ttl_seconds=self.settings.oauth_state_ttl_seconds,
        )
        self.rate_limiter = RateLimiter(
            limit=self.settings.rate_limit_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            cleanup_interval_seconds=self.settings.rate_limit_cleanup_interval_seconds,
            clock=clock,
        )
        logger.info(
            "runtime_init_complete",
            session_backend=type(self.tokens).__name__,
            presence_tracker=type(self.presence).__name__,
        )

    def close(self) -> None:
        self.dispatcher.drain(timeout=self.settings.store_timeout_seconds)
        self.dispatcher.shutdown(wait_for_tasks=False)
        if self.cache is not None:
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(runtime_override: Optional[Runtime] = None) -> Runtime:
    """Replace the runtime singleton for isolated test runs.

    Only allowed in TEST_MODE; the previous runtime is closed first.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = runtime_override or Runtime(settings)
        return runtime


__all__ = [
    "Runtime",
    "build_cache_client",
    "build_store",
    "get_runtime",
    "reset_runtime_for_tests",
]
