"""Task management endpoints."""

from fastapi import APIRouter, HTTPException, Query, status
import structlog

from backend.api.v1.schemas import (
    ErrorDetail,
    TaskCancelledResponse,
    TaskCreatedResponse,
    TaskCreateRequest,
    TaskListResponse,
    TaskRecordResponse,
)
from backend.core.task_store import get_task_store
from backend.tasks.engine import get_engine
from backend.tasks.models import TaskEntry, TaskStatus

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


def bad_request(code: str, message: str, field: str | None = None) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=ErrorDetail(code=code, message=message, field=field).model_dump(),
    )


async def get_task_or_404(task_id: str) -> TaskEntry:
    """Get task by ID or raise 404."""
    task = await get_task_store().get(task_id)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Task not found or expired"
        )
    return task


@router.post("", response_model=TaskCreatedResponse)
async def create_task(request: TaskCreateRequest) -> TaskCreatedResponse:
    """Create a task and start it in the background.

    Expected behavior:
    - 400 if `type` or `ownerRef` is missing
    - 400 if a known task type is missing required payload fields
    - Unknown task types are accepted and fail with a "no executor" error
    - Returns immediately with the new task id and `pending` status
    """
    task_type = (request.type or "").strip()
    owner_ref = (request.owner_ref or "").strip()
    if not task_type:
        raise bad_request("missing_field", "Task type is required", field="type")
    if not owner_ref:
        raise bad_request("missing_field", "ownerRef is required", field="ownerRef")

    payload = request.payload or {}
    missing = get_engine().registry.missing_fields(task_type, payload)
    if missing:
        raise bad_request(
            "invalid_payload",
            f"Missing required payload fields for '{task_type}': {', '.join(missing)}",
            field=f"payload.{missing[0]}",
        )

    task = await get_task_store().create(task_type, owner_ref, payload)
    logger.info("Task submitted", task_id=task.task_id, task_type=task_type, owner_ref=owner_ref)
    return TaskCreatedResponse(id=task.task_id, status=task.status)


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    owner_ref: str | None = Query(default=None, alias="ownerRef"),
) -> TaskListResponse:
    """List tasks for an owner, newest first."""
    if not owner_ref:
        raise bad_request("missing_field", "ownerRef query parameter is required", field="ownerRef")

    tasks = await get_task_store().list_by_owner(owner_ref)
    return TaskListResponse(tasks=[TaskRecordResponse.from_entry(t) for t in tasks])


@router.get("/{task_id}", response_model=TaskRecordResponse)
async def get_task_status(task_id: str) -> TaskRecordResponse:
    """Get current task status, progress and results.

    Expected behavior:
    - Returns 404 if task not found or already swept
    - Credential fields in the payload are masked
    """
    task = await get_task_or_404(task_id)
    return TaskRecordResponse.from_entry(task)


@router.delete("/{task_id}", response_model=TaskCancelledResponse)
async def cancel_task(task_id: str) -> TaskCancelledResponse:
    """Cancel a pending or running task.

    Expected behavior:
    - 400 if the task does not exist or has already finished
    - A running executor stops at its next progress update
    """
    if not await get_engine().cancel(task_id):
        raise bad_request(
            "not_cancellable", "Task not found or already finished", field="id"
        )

    logger.info("Task cancellation requested", task_id=task_id)
    return TaskCancelledResponse(
        id=task_id, status=TaskStatus.CANCELLED, message="Task cancelled"
    )
