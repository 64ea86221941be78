"""
Test fixtures for the login security suite.

Everything runs against the in-memory store driven by a controllable clock,
so TTL expiry is tested by advancing time instead of sleeping.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from login_security.core.config import SecurityConfig, settings
from login_security.core.errors import TransientStoreError
from login_security.main import create_app
from login_security.services.attempt_store import AttemptStore, MemoryAttemptStore
from login_security.services.login_security_service import LoginSecurityService

EMAIL = "shopper@example.com"
OTHER_EMAIL = "other@example.com"
IP = "203.0.113.10"
OTHER_IP = "198.51.100.7"
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Callable clock shared by the store (TTL) and the service (timestamps)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenStore(AttemptStore):
    """Every backend call fails as if the cache were unreachable."""

    transient_errors = (ConnectionError,)

    async def _increment(self, key, window_seconds):
        raise ConnectionError("connection refused")

    async def _get(self, key):
        raise ConnectionError("connection refused")

    async def _set_with_ttl(self, key, value, ttl_seconds):
        raise ConnectionError("connection refused")

    async def _swap_with_ttl(self, key, value, ttl_seconds):
        raise ConnectionError("connection refused")

    async def _delete(self, keys):
        raise ConnectionError("connection refused")

    async def _ping(self):
        raise ConnectionError("connection refused")

    async def _sweep(self, prefixes, batch_size, orphan_ttl_seconds):
        raise TransientStoreError("scan", prefixes[0], ConnectionError("connection refused"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> SecurityConfig:
    return SecurityConfig()


@pytest.fixture
def store(clock: FakeClock) -> MemoryAttemptStore:
    return MemoryAttemptStore(clock=clock)


@pytest.fixture
def service(store: MemoryAttemptStore, config: SecurityConfig, clock: FakeClock) -> LoginSecurityService:
    return LoginSecurityService(store, config, clock=clock)


def make_service(store, clock, **overrides) -> LoginSecurityService:
    """Build a service with a few tunables overridden."""
    return LoginSecurityService(store, SecurityConfig.build(**overrides), clock=clock)


# ---------------------------------------------------------------------------
# HTTP app
# ---------------------------------------------------------------------------


@pytest.fixture
def app(service: LoginSecurityService):
    return create_app(service=service)


@pytest_asyncio.fixture
async def client(app) -> AsyncClient:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app, client=(IP, 51000))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers(monkeypatch) -> dict[str, str]:
    """Enable the admin routes and return headers that pass the key check."""
    monkeypatch.setattr(settings, "LOGIN_SECURITY_ADMIN_API_KEY", ADMIN_KEY)
    return {"X-API-Key": ADMIN_KEY}
