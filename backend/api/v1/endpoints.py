"""API v1 router aggregating the health and task endpoints."""

from fastapi import APIRouter

from backend.api.v1.routers import health, tasks

router = APIRouter()
router.include_router(health.router)
router.include_router(tasks.router)
