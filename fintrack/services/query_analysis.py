"""Query performance analysis, memoized through the application cache.

The database driver is not called directly: callers install an ``explain``
coroutine that returns the execution statistics of a query (for MongoDB,
``find(query).explain("executionStats")``). This module turns those
statistics into an efficiency report.
"""

import hashlib
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from fintrack.core.cache import DEFAULT_TIMEOUT, VersionedTTLCache

logger = logging.getLogger(__name__)

COLLSCAN = "COLLSCAN"


class ExecutionStats(BaseModel):
    execution_time_ms: int = 0
    docs_examined: int = 0
    docs_returned: int = 0
    index_name: str | None = None
    stage: str = COLLSCAN


class QueryAnalysis(BaseModel):
    collection: str
    query: dict[str, Any]
    execution_time: int
    total_docs_examined: int
    total_docs_returned: int
    index_used: str
    is_index_used: bool
    efficiency: int


Explain = Callable[[str, dict[str, Any]], Awaitable[ExecutionStats]]


def calculate_efficiency(docs_examined: int, docs_returned: int) -> int:
    """Percentage of examined documents that were returned."""
    if docs_examined == 0:
        return 100
    return round(docs_returned / docs_examined * 100)


def make_query_key(collection: str, query: dict[str, Any], options: dict[str, Any] | None = None) -> str:
    """Deterministic cache key for a query on ``collection``."""
    canonical = json.dumps(
        {"collection": collection, "query": query, "options": options or {}},
        sort_keys=True,
        default=str,
    )
    digest = hashlib.sha256(canonical.encode()).hexdigest()[:16]
    return f"query:{collection}:{digest}"


class QueryAnalyzer:
    """Runs ``explain`` for a query and scores how well it used indexes."""

    def __init__(
        self,
        explain: Explain,
        cache: VersionedTTLCache,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._explain = explain
        self._cache = cache
        self.timeout = timeout

    async def analyze(self, collection: str, query: dict[str, Any]) -> QueryAnalysis:
        try:
            stats = await self._explain(collection, query)
        except Exception as exc:
            logger.error("Error analyzing query on %s: %s", collection, exc)
            raise

        analysis = QueryAnalysis(
            collection=collection,
            query=query,
            execution_time=stats.execution_time_ms,
            total_docs_examined=stats.docs_examined,
            total_docs_returned=stats.docs_returned,
            index_used=stats.index_name or COLLSCAN,
            is_index_used=stats.stage != COLLSCAN,
            efficiency=calculate_efficiency(stats.docs_examined, stats.docs_returned),
        )
        logger.info(
            "Query analysis for %s: efficiency=%d%% index=%s",
            collection, analysis.efficiency, analysis.index_used,
        )
        return analysis

    async def analyze_cached(self, collection: str, query: dict[str, Any]) -> QueryAnalysis:
        """Like analyze(), but reuses a cached report for the same query."""

        async def _fetch() -> dict[str, Any]:
            analysis = await self.analyze(collection, query)
            return analysis.model_dump()

        data = await self._cache.get_or_set(
            make_query_key(collection, query), _fetch, self.timeout,
        )
        return QueryAnalysis.model_validate(data)
