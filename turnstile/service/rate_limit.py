from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from turnstile.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Window:
    count: int
    expires_at: float


class RateLimiter:
    """Fixed-window request counter per client identity.

    All reads and writes happen under one lock. Expired windows are swept
    lazily: the first call after ``cleanup_interval_seconds`` since the previous
    sweep removes every expired entry, so cleanup is amortized across requests.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        cleanup_interval_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("rate limit and window must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def allow(self, client_id: str) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup > self.cleanup_interval_seconds:
                self._cleanup_locked(now)
            window = self._windows.get(client_id)
            if window is None or now > window.expires_at:
                self._windows[client_id] = _Window(count=1, expires_at=now + self.window_seconds)
                return True
            if window.count < self.limit:
                window.count += 1
                return True
            return False

    def _cleanup_locked(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if now > window.expires_at]
        for key in expired:
            self._windows.pop(key, None)
        self._last_cleanup = now
        if expired:
            logger.debug("rate_limit_cleanup", cleaned=len(expired), remaining=len(self._windows))
        return len(expired)

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._windows)


__all__ = ["RateLimiter"]
