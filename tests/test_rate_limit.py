import threading

import pytest

from turnstile.service.rate_limit import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(limit=2, window_seconds=60, cleanup_interval_seconds=300, clock=clock)


class TestFixedWindow:
    def test_limit_then_reset_after_window(self, limiter, clock):
        assert limiter.allow("10.0.0.1") is True
        assert limiter.allow("10.0.0.1") is True
        assert limiter.allow("10.0.0.1") is False

        clock.advance(61)
        assert limiter.allow("10.0.0.1") is True

    def test_window_boundary_still_counts(self, limiter, clock):
        limiter.allow("c")
        limiter.allow("c")
        clock.advance(60)

        assert limiter.allow("c") is False
        clock.advance(0.001)
        assert limiter.allow("c") is True

    def test_clients_are_independent(self, limiter):
        limiter.allow("a")
        limiter.allow("a")
        assert limiter.allow("a") is False

        assert limiter.allow("b") is True
        assert limiter.allow("b") is True

    def test_rejected_requests_do_not_extend_window(self, limiter, clock):
        limiter.allow("c")
        limiter.allow("c")
        for _ in range(5):
            clock.advance(10)
            assert limiter.allow("c") is False
        clock.advance(11)
        assert limiter.allow("c") is True

    def test_invalid_configuration(self, clock):
        with pytest.raises(ValueError):
            RateLimiter(limit=0, window_seconds=60, cleanup_interval_seconds=300, clock=clock)
        with pytest.raises(ValueError):
            RateLimiter(limit=1, window_seconds=0, cleanup_interval_seconds=300, clock=clock)


class TestLazyCleanup:
    def test_sweep_waits_for_interval(self, limiter, clock):
        limiter.allow("a")
        limiter.allow("b")
        clock.advance(61)

        limiter.allow("c")

        # Expired windows linger until the cleanup interval passes
        assert limiter.tracked_clients() == 3

    def test_sweep_removes_expired_entries(self, limiter, clock):
        limiter.allow("a")
        limiter.allow("b")
        clock.advance(301)

        limiter.allow("c")

        assert limiter.tracked_clients() == 1

    def test_sweep_keeps_live_windows(self, limiter, clock):
        limiter.allow("old")
        clock.advance(290)
        limiter.allow("fresh")
        clock.advance(11)

        limiter.allow("trigger")

        assert limiter.tracked_clients() == 2


def test_concurrent_requests_never_exceed_limit(clock):
    limiter = RateLimiter(limit=50, window_seconds=60, cleanup_interval_seconds=300, clock=clock)
    results = []
    results_lock = threading.Lock()

    def worker():
        for _ in range(25):
            allowed = limiter.allow("shared")
            with results_lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 200
    assert results.count(True) == 50
