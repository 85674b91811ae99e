"""Cache control and query performance endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fintrack.api.deps import Analyzer, Cache, get_auth_context
from fintrack.core.cache import DEFAULT_VERSION

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/optimization",
    tags=["optimization"],
    dependencies=[Depends(get_auth_context)],
)


# ── Schemas ──────────────────────────────────────────────────

class OptimizationResponse(BaseModel):
    success: bool
    message: str
    data: Any | None = None
    deleted_count: int | None = None
    error: str | None = None


class AnalyzeQueryRequest(BaseModel):
    query: dict[str, Any] | None = None
    collection: str | None = None


def _failure(status_code: int, message: str, error: str | None = None) -> JSONResponse:
    body = OptimizationResponse(success=False, message=message, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ── Routes ───────────────────────────────────────────────────

@router.get(
    "/cache-stats",
    response_model=OptimizationResponse,
    response_model_exclude_none=True,
)
async def get_cache_stats(cache: Cache) -> OptimizationResponse:
    return OptimizationResponse(
        success=True,
        data=cache.get_stats().model_dump(),
        message="Cache statistics retrieved successfully",
    )


@router.get(
    "/cache-info",
    response_model=OptimizationResponse,
    response_model_exclude_none=True,
)
async def get_cache_info(cache: Cache) -> OptimizationResponse:
    """Per-entry debugging view (first entries only)."""
    return OptimizationResponse(
        success=True,
        data=cache.get_cache_info().model_dump(),
        message="Cache info retrieved successfully",
    )


@router.delete(
    "/cache",
    response_model=OptimizationResponse,
    response_model_exclude_none=True,
)
async def clear_cache(
    cache: Cache,
    pattern: str | None = None,
    version: int = DEFAULT_VERSION,
) -> OptimizationResponse:
    """Clear everything, or only the keys matching ``pattern``."""
    if pattern:
        deleted = cache.delete_pattern(pattern, version)
        return OptimizationResponse(
            success=True,
            message=f"Cache cleared for pattern: {pattern}",
            deleted_count=deleted,
        )

    cache.clear()
    return OptimizationResponse(success=True, message="All cache cleared successfully")


@router.post(
    "/analyze-query",
    response_model=OptimizationResponse,
    response_model_exclude_none=True,
)
async def analyze_query(body: AnalyzeQueryRequest, analyzer: Analyzer) -> Any:
    if not body.query or not body.collection:
        return _failure(status.HTTP_400_BAD_REQUEST, "Query and collection are required")
    if analyzer is None:
        return _failure(
            status.HTTP_503_SERVICE_UNAVAILABLE, "Query analysis is not configured",
        )

    try:
        analysis = await analyzer.analyze_cached(body.collection, body.query)
    except Exception as exc:
        logger.exception("Error analyzing query performance")
        return _failure(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to analyze query performance",
            error=str(exc)[:200],
        )

    return OptimizationResponse(
        success=True,
        data=analysis.model_dump(),
        message="Query performance analysis completed",
    )
