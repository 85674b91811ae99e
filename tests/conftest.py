"""Shared test fixtures: fake clock, isolated cache and an HTTPX test client."""

import os
from collections.abc import AsyncGenerator, Generator

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from fintrack.core.cache import VersionedTTLCache  # noqa: E402
from fintrack.core.security import create_jwt  # noqa: E402
from fintrack.main import app  # noqa: E402


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> Generator[VersionedTTLCache, None, None]:
    c = VersionedTTLCache(clock=clock)
    yield c
    c.close()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_jwt('user-1')}"}


@pytest.fixture
async def client(cache) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with a fresh cache installed on the app."""
    app.state.cache = cache
    app.state.query_analyzer = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.query_analyzer = None
