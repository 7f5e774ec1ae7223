"""API router: all JSON endpoints under the /api prefix."""

from fastapi import APIRouter

from .jobs.routes import router as jobs_router
from .monitoring.routes import router as health_router

api_router = APIRouter(prefix="/api")

api_router.include_router(jobs_router)
api_router.include_router(health_router)
