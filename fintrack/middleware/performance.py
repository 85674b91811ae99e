"""Request timing middleware.

Logs every request at a level chosen by its duration. Slow requests are
additionally profiled with the installed ``QueryAnalyzer`` (if any). The
profiling runs as a background task after the response has been handed
back, and the analysis is memoized per request shape, so repeated slow calls
to the same endpoint reuse one report.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from fintrack.services.query_analysis import QueryAnalyzer, make_query_key

logger = logging.getLogger(__name__)

_VERSION_SEGMENT = re.compile(r"^v\d+$")


def request_shape(request: Request) -> tuple[str, dict[str, Any]] | None:
    """Map a request to ``(collection, query)``, skipping the API version prefix."""
    segments = [s for s in request.url.path.split("/") if s]
    if segments and _VERSION_SEGMENT.match(segments[0]):
        segments = segments[1:]
    if not segments:
        return None
    return segments[0], dict(sorted(request.query_params.items()))


def pending_profiles(app: Any) -> dict[str, asyncio.Task]:
    """In-flight profiling tasks of ``app``, keyed by query cache key."""
    tasks = getattr(app.state, "profiling_tasks", None)
    if tasks is None:
        tasks = app.state.profiling_tasks = {}
    return tasks


class PerformanceMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        slow_request_ms: int = 1000,
        moderate_request_ms: int = 500,
        low_efficiency_threshold: int = 50,
    ) -> None:
        super().__init__(app)
        self.slow_request_ms = slow_request_ms
        self.moderate_request_ms = moderate_request_ms
        self.low_efficiency_threshold = low_efficiency_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        args = (request.method, request.url.path, response.status_code, duration_ms)
        if duration_ms > self.slow_request_ms:
            logger.warning("Slow request %s %s -> %d in %dms", *args)
            self._schedule_profile(request)
        elif duration_ms > self.moderate_request_ms:
            logger.info("Moderate request duration %s %s -> %d in %dms", *args)
        else:
            logger.debug("Request completed %s %s -> %d in %dms", *args)
        return response

    def _schedule_profile(self, request: Request) -> None:
        """Start profiling in the background; one task per request shape."""
        analyzer = getattr(request.app.state, "query_analyzer", None)
        shape = request_shape(request)
        if analyzer is None or shape is None:
            return

        collection, query = shape
        key = make_query_key(collection, query)
        tasks = pending_profiles(request.app)
        if key in tasks:
            return

        task = asyncio.create_task(self._profile(analyzer, collection, query))
        tasks[key] = task
        task.add_done_callback(lambda _: tasks.pop(key, None))

    async def _profile(self, analyzer: QueryAnalyzer, collection: str, query: dict[str, Any]) -> None:
        try:
            analysis = await analyzer.analyze_cached(collection, query)
        except Exception:
            logger.exception("Query analysis for %s failed", collection)
            return

        if analysis.efficiency < self.low_efficiency_threshold:
            logger.warning(
                "Low query efficiency on %s: %d%% (index=%s, examined=%d, returned=%d)",
                collection,
                analysis.efficiency,
                analysis.index_used,
                analysis.total_docs_examined,
                analysis.total_docs_returned,
            )
