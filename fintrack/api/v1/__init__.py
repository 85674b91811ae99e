"""V1 API router aggregation."""

from fastapi import APIRouter

from fintrack.api.v1.optimization import router as optimization_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(optimization_router)
