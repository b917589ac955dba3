from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Set

from redis import Redis

from turnstile.logging import get_logger
from turnstile.service.background import BackgroundDispatcher
from turnstile.storage.redis_cache import PRESENCE_KEY

logger = get_logger(__name__)


class HeartbeatStore(Protocol):
    def upsert_heartbeat(self, user_id: str, seen_at: datetime) -> None:
        ...

    def list_active_user_ids(self, since: datetime) -> list[str]:
        ...


class PresenceTracker(Protocol):
    """Recently-seen tracking derived from authenticated activity.

    ``touch`` is fire-and-forget: it returns immediately and its failures are
    only logged. ``online_set`` reports users touched within the window.
    """

    def touch(self, user_id: str) -> None:
        ...

    def online_set(self, within_seconds: Optional[float] = None) -> Set[str]:
        ...

    def forget(self, user_id: str) -> None:
        ...


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class DurablePresenceTracker:
    """One heartbeat row per user, upserted on conflict."""

    def __init__(
        self,
        store: HeartbeatStore,
        dispatcher: BackgroundDispatcher,
        *,
        window_seconds: float = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.window_seconds = window_seconds
        self._clock = clock

    def touch(self, user_id: str) -> None:
        self.dispatcher.submit("presence_touch", self._record, user_id, self._clock())

    def _record(self, user_id: str, seen_at: float) -> None:
        self.store.upsert_heartbeat(user_id, _as_datetime(seen_at))

    def online_set(self, within_seconds: Optional[float] = None) -> Set[str]:
        window = self.window_seconds if within_seconds is None else within_seconds
        since = _as_datetime(self._clock() - window)
        return set(self.store.list_active_user_ids(since))

    def forget(self, user_id: str) -> None:
        # Heartbeat rows cascade with the user row
        return None


class CachePresenceTracker:
    """Presence as a sorted set under a single key, scored by last-seen time.

    Every read schedules a prune of scores older than the window, so stale
    members are removed lazily without a scheduled job.
    """

    def __init__(
        self,
        client: Redis,
        dispatcher: BackgroundDispatcher,
        *,
        window_seconds: float = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.window_seconds = window_seconds
        self._clock = clock

    def touch(self, user_id: str) -> None:
        self.dispatcher.submit("presence_touch", self._record, user_id, self._clock())

    def _record(self, user_id: str, seen_at: float) -> None:
        # GT keeps a late-arriving older touch from moving the score backwards
        self.client.zadd(PRESENCE_KEY, {user_id: seen_at}, gt=True)

    def online_set(self, within_seconds: Optional[float] = None) -> Set[str]:
        window = self.window_seconds if within_seconds is None else within_seconds
        now = self._clock()
        members = self.client.zrangebyscore(PRESENCE_KEY, f"({now - window}", "+inf")
        prune_before = now - max(window, self.window_seconds)
        self.dispatcher.submit("presence_prune", self._prune, prune_before)
        return set(members)

    def _prune(self, cutoff: float) -> None:
        removed = self.client.zremrangebyscore(PRESENCE_KEY, "-inf", cutoff)
        if removed:
            logger.debug("presence_pruned", removed=removed)

    def forget(self, user_id: str) -> None:
        self.client.zrem(PRESENCE_KEY, user_id)


def build_presence_tracker(
    *,
    store: HeartbeatStore,
    client: Optional[Redis],
    dispatcher: BackgroundDispatcher,
    window_seconds: float,
    clock: Callable[[], float] = time.time,
) -> PresenceTracker:
    """Mirror the token strategy: a sorted set when Redis is configured, rows otherwise."""
    if client is not None:
        return CachePresenceTracker(
            client, dispatcher, window_seconds=window_seconds, clock=clock
        )
    return DurablePresenceTracker(
        store, dispatcher, window_seconds=window_seconds, clock=clock
    )


__all__ = [
    "CachePresenceTracker",
    "DurablePresenceTracker",
    "HeartbeatStore",
    "PresenceTracker",
    "build_presence_tracker",
]
