import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Durable strategy by default; cache-backed tests inject a fakeredis client
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import fakeredis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from turnstile.service.background import BackgroundDispatcher  # noqa: E402
from turnstile.service.runtime import reset_runtime_for_tests  # noqa: E402
from turnstile.service.tokens import CredentialSigner  # noqa: E402
from turnstile.storage.common import SecretCipher  # noqa: E402
from turnstile.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret"


class FakeClock:
    """Manually advanced wall clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cipher():
    return SecretCipher("unit-test-encryption-key")


@pytest.fixture
def memory_store(cipher):
    return MemoryStore(cipher)


@pytest.fixture
def signer(clock):
    return CredentialSigner(TEST_SECRET, clock=clock)


@pytest.fixture
def dispatcher():
    pool = BackgroundDispatcher(max_workers=2, max_pending=64, slow_after_seconds=2.0)
    yield pool
    pool.shutdown(wait_for_tasks=True)


@pytest.fixture
def fake_redis():
    # Fresh server per test so no keys leak between tests
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
