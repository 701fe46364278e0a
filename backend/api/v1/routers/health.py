"""Health check endpoints."""

import time

from fastapi import APIRouter, Request

from backend.api.v1.schemas import HealthStatus
from backend.config import settings
from backend.core.task_store import get_task_store
from backend.tasks.engine import get_engine

router = APIRouter(prefix="/api/v1", tags=["health"])


@router.get("/health", response_model=HealthStatus)
async def health_check(request: Request) -> HealthStatus:
    """Health check endpoint for load balancers and monitoring."""
    store = get_task_store()
    engine = get_engine()

    store_health = await store.health_check()
    dependencies = {
        "store": store_health.get("store", "unknown"),
        "sweeper": "healthy" if store_health.get("sweeper_running") else "stopped",
        "executors": "configured" if engine.registry.task_types() else "missing",
    }

    overall_status = (
        "healthy"
        if all(state in ["configured", "healthy"] for state in dependencies.values())
        else "degraded"
    )

    started_at = getattr(request.app.state, "started_at", None)
    uptime = time.monotonic() - started_at if started_at is not None else 0.0

    return HealthStatus(
        status=overall_status,
        service="storybook-task-api",
        version=settings.api_version,
        environment=settings.get_environment_display(),
        uptime_seconds=round(uptime, 3),
        tasks_in_memory=store_health["total_tasks"],
        active_executions=engine.active_count,
        task_types=engine.registry.task_types(),
        dependencies=dependencies,
    )
