"""Tests for query performance analysis."""

import pytest

from fintrack.services.query_analysis import (
    ExecutionStats,
    QueryAnalyzer,
    calculate_efficiency,
    make_query_key,
)


class FakeExplain:
    """Records explain() calls and replays canned execution stats."""

    def __init__(self, stats: ExecutionStats | None = None, error: Exception | None = None):
        self.stats = stats or ExecutionStats()
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, collection: str, query: dict) -> ExecutionStats:
        self.calls.append((collection, query))
        if self.error is not None:
            raise self.error
        return self.stats


def test_efficiency_without_examined_docs_is_perfect():
    assert calculate_efficiency(0, 0) == 100


def test_efficiency_is_returned_over_examined():
    assert calculate_efficiency(200, 50) == 25
    assert calculate_efficiency(3, 1) == 33


def test_query_key_is_stable_and_order_independent():
    a = make_query_key("transactions", {"userId": 1, "type": "expense"})
    b = make_query_key("transactions", {"type": "expense", "userId": 1})
    assert a == b
    assert a.startswith("query:transactions:")
    assert a != make_query_key("budgets", {"userId": 1, "type": "expense"})
    assert a != make_query_key("transactions", {"userId": 1, "type": "expense"}, {"limit": 10})


async def test_analyze_builds_report(cache):
    explain = FakeExplain(ExecutionStats(
        execution_time_ms=12,
        docs_examined=1000,
        docs_returned=10,
        index_name=None,
        stage="COLLSCAN",
    ))
    analyzer = QueryAnalyzer(explain, cache)

    analysis = await analyzer.analyze("transactions", {"userId": 1})
    assert analysis.collection == "transactions"
    assert analysis.execution_time == 12
    assert analysis.index_used == "COLLSCAN"
    assert analysis.is_index_used is False
    assert analysis.efficiency == 1


async def test_analyze_with_index(cache):
    explain = FakeExplain(ExecutionStats(
        docs_examined=10, docs_returned=10, index_name="userId_1_date_-1", stage="IXSCAN",
    ))
    analysis = await QueryAnalyzer(explain, cache).analyze("transactions", {"userId": 1})
    assert analysis.index_used == "userId_1_date_-1"
    assert analysis.is_index_used is True
    assert analysis.efficiency == 100


async def test_analyze_cached_reuses_report(cache):
    explain = FakeExplain(ExecutionStats(docs_examined=4, docs_returned=2, stage="IXSCAN"))
    analyzer = QueryAnalyzer(explain, cache, timeout=60)

    first = await analyzer.analyze_cached("budgets", {"month": "2026-10"})
    second = await analyzer.analyze_cached("budgets", {"month": "2026-10"})
    assert first == second
    assert first.efficiency == 50
    assert len(explain.calls) == 1
    assert cache.has_key(make_query_key("budgets", {"month": "2026-10"}))


async def test_analyze_cached_propagates_driver_errors(cache):
    analyzer = QueryAnalyzer(FakeExplain(error=ConnectionError("db offline")), cache)

    with pytest.raises(ConnectionError):
        await analyzer.analyze_cached("budgets", {"month": "2026-10"})
    assert cache.get_keys() == []
