"""
FastAPI backend for the Storybook task service.

Runs long AI generation jobs (scripts, storyboards, page illustrations) as
background tasks that clients submit and then poll. Built on a process-local
task store and execution engine; state lives only as long as the process.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from backend.api.v1.endpoints import router as api_v1_router
from backend.api.v1.schemas import ErrorDetail, ErrorResponse

# Configure structured logging first
from backend.config import configure_structlog, settings
from backend.core.task_store import initialize_store
from backend.tasks.engine import initialize_engine
from backend.tasks.registry import build_default_registry
from backend.upstream.resilient_client import ResilientClient

configure_structlog()
logger = structlog.get_logger(__name__)

HTTP_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    # Startup
    logger.info(
        "Storybook Task API starting up",
        version=settings.api_version,
        environment=settings.get_environment_display(),
        debug=settings.debug,
    )

    store = initialize_store(
        retention_minutes=settings.task_retention_minutes,
        sweep_interval_minutes=settings.sweep_interval_minutes,
    )
    registry = build_default_registry()
    client = ResilientClient.from_settings(settings)
    engine = initialize_engine(
        store,
        registry,
        client,
        settings=settings,
        max_concurrent_tasks=settings.max_concurrent_tasks,
    )
    store.start_sweeper()
    app.state.started_at = time.monotonic()

    logger.info(
        "Task engine ready",
        task_types=registry.task_types(),
        retention_minutes=settings.task_retention_minutes,
        sweep_interval_minutes=settings.sweep_interval_minutes,
    )
    logger.info("API routes registered", endpoints=len(app.routes))

    yield

    # Shutdown
    logger.info("Storybook Task API shutting down")
    await engine.shutdown()
    await store.stop_sweeper()


app = FastAPI(
    title=settings.api_title,
    description=f"""
    **Background task service for AI picture-book generation**

    Submit long-running generation jobs and poll them until they finish:

    * **generate-script**: write a story script from topics or textbook pages
    * **split-script**: split a script into storyboard scenes
    * **generate-single-image**: illustrate one page
    * **generate-images**: illustrate every scene of a book

    Upstream text and image APIs are called with retries, backoff and
    per-attempt timeouts; responses from different vendors are normalized.

    ## Environment

    Currently running in **{settings.get_environment_display()}** mode.

    ## Limits

    - Finished tasks are kept for {settings.task_retention_minutes} minutes
    - Upstream attempts per call: {settings.upstream_max_attempts}
    """,
    version=settings.api_version,
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    openapi_url="/openapi.json" if not settings.is_production() else None,
)

# CORS middleware with environment-aware configuration
cors_config = settings.get_cors_config()
app.add_middleware(CORSMiddleware, **cors_config)

app.include_router(api_v1_router)


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    field: str | None = None,
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field)
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        detail = ErrorDetail(**exc.detail)
        return create_error_response(exc.status_code, detail.code, detail.message, detail.field)
    return create_error_response(
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        str(exc.detail),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or None
    return create_error_response(
        status.HTTP_400_BAD_REQUEST,
        "invalid_request",
        first.get("msg", "Invalid request"),
        field=field,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled request error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "Internal server error",
    )


# Root endpoint for basic health check
@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint providing basic API information.

    Use `/api/v1/health` for detailed health checks.
    """
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "environment": settings.get_environment_display(),
        "status": "operational",
        "docs": "/docs" if not settings.is_production() else "disabled",
        "health": "/api/v1/health",
    }


# Application startup
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,  # Use our structured logging
    )
