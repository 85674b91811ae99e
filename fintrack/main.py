"""FastAPI application entrypoint."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fintrack.api.v1 import v1_router
from fintrack.core.cache import VersionedTTLCache
from fintrack.core.config import get_settings
from fintrack.core.logging import configure_logging
from fintrack.middleware.performance import PerformanceMiddleware, pending_profiles
from fintrack.services.query_analysis import QueryAnalyzer

_settings = get_settings()
configure_logging(_settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: the process-wide cache lives exactly as long as the app
    cache = VersionedTTLCache(
        sweep_interval=_settings.cache_sweep_interval_seconds,
        info_entry_limit=_settings.cache_info_entry_limit,
    )
    cache.start()
    app.state.cache = cache

    # The persistence layer installs its explain hook on app.state.query_explain
    explain = getattr(app.state, "query_explain", None)
    app.state.query_analyzer = (
        QueryAnalyzer(explain, cache, timeout=_settings.query_analysis_cache_seconds)
        if explain is not None
        else None
    )
    yield
    # Shutdown: abandon in-flight profiling before dropping the cache
    for task in list(pending_profiles(app).values()):
        task.cancel()
    cache.close()


app = FastAPI(
    title="fintrack",
    version="0.1.0",
    description="Caching and performance layer of the finance tracker API",
    lifespan=lifespan,
)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    PerformanceMiddleware,
    slow_request_ms=_settings.slow_request_ms,
    moderate_request_ms=_settings.moderate_request_ms,
    low_efficiency_threshold=_settings.low_efficiency_threshold,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
