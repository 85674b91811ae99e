"""Tests for the application lifespan wiring."""

import asyncio
from collections.abc import Generator

import pytest

from fintrack.core.cache import VersionedTTLCache
from fintrack.main import app
from fintrack.middleware.performance import pending_profiles
from fintrack.services.query_analysis import QueryAnalyzer
from test_query_analysis import FakeExplain


@pytest.fixture
def clean_state() -> Generator[None, None, None]:
    yield
    for name in ("query_explain", "profiling_tasks"):
        if hasattr(app.state, name):
            delattr(app.state, name)
    app.state.query_analyzer = None


async def test_lifespan_starts_and_closes_cache(clean_state):
    app.state.query_explain = FakeExplain()

    async with app.router.lifespan_context(app):
        cache = app.state.cache
        assert isinstance(cache, VersionedTTLCache)
        assert cache.running
        assert isinstance(app.state.query_analyzer, QueryAnalyzer)
        cache.set("k", "v")

    assert not cache.running
    assert cache.get_keys() == []


async def test_lifespan_without_explain_hook_installs_no_analyzer(clean_state):
    async with app.router.lifespan_context(app):
        assert app.state.cache.running
        assert app.state.query_analyzer is None


async def test_lifespan_cancels_pending_profiling(clean_state):
    async with app.router.lifespan_context(app):
        task = asyncio.create_task(asyncio.sleep(60))
        pending_profiles(app)["query:transactions:abc"] = task

    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()
