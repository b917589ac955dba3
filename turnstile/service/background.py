from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set

from turnstile.logging import get_logger

logger = get_logger(__name__)


class BackgroundDispatcher:
    """Bounded pool for detached, best-effort work such as heartbeat writes.

    ``submit`` never blocks the caller: once ``max_pending`` tasks are queued or
    running, new tasks are dropped with a warning. Task failures are logged and
    never reach the submitter. Individual tasks are bounded by the store client
    timeouts; tasks that overrun ``slow_after_seconds`` are reported.
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        max_pending: int = 1024,
        slow_after_seconds: float = 2.0,
    ) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="turnstile-bg"
        )
        self._slots = threading.BoundedSemaphore(max_pending)
        self._slow_after = slow_after_seconds
        self._inflight: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, name: str, fn: Callable[..., Any], *args: Any) -> bool:
        if self._closed:
            logger.warning("background_task_rejected_closed", task=name)
            return False
        if not self._slots.acquire(blocking=False):
            logger.warning("background_task_dropped", task=name)
            return False
        try:
            future = self._executor.submit(self._run, name, fn, args)
        except RuntimeError:
            # Executor shut down between the closed check and submit
            self._slots.release()
            logger.warning("background_task_rejected_closed", task=name)
            return False
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._finished)
        return True

    def _finished(self, future: Future) -> None:
        # Free the slot before the future leaves the in-flight set that drain watches
        self._slots.release()
        with self._lock:
            self._inflight.discard(future)

    def _run(self, name: str, fn: Callable[..., Any], args: tuple) -> None:
        started = time.monotonic()
        try:
            fn(*args)
        except Exception as exc:
            logger.warning(
                "background_task_failed",
                task=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        elapsed = time.monotonic() - started
        if elapsed > self._slow_after:
            logger.warning("background_task_slow", task=name, elapsed_seconds=round(elapsed, 3))

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued tasks; returns False if some are still running at timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._inflight)
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, *, wait_for_tasks: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait_for_tasks)


__all__ = ["BackgroundDispatcher"]
