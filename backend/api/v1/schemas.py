"""Pydantic schemas for API v1 - Simple DTOs only."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backend.tasks.models import TaskEntry, TaskStatus

SECRET_PAYLOAD_KEYS = frozenset({"apikey", "api_key", "authorization"})
MASK = "***"


def mask_secrets(value: Any) -> Any:
    """Return a copy of a payload with credential values masked at any depth."""
    if isinstance(value, dict):
        return {
            key: MASK if str(key).lower() in SECRET_PAYLOAD_KEYS and val else mask_secrets(val)
            for key, val in value.items()
        }
    if isinstance(value, list):
        return [mask_secrets(item) for item in value]
    return value


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input; serializes camelCase."""

    model_config = ConfigDict(populate_by_name=True)


class ErrorDetail(BaseModel):
    """Error information."""

    code: str
    message: str
    field: str | None = None


class ErrorResponse(BaseModel):
    """Structured error body returned for every 4xx/5xx."""

    error: ErrorDetail
    request_id: str | None = None


class TaskCreateRequest(CamelModel):
    """Task submission. `type` and `ownerRef` are checked by the endpoint."""

    type: str | None = None
    owner_ref: str | None = Field(default=None, alias="ownerRef")
    payload: dict[str, Any] | None = None


class TaskCreatedResponse(BaseModel):
    """Task creation response."""

    id: str
    status: TaskStatus


class TaskRecordResponse(CamelModel):
    """Full task record as seen by pollers."""

    id: str
    type: str
    owner_ref: str = Field(alias="ownerRef")
    status: TaskStatus
    progress: int = Field(ge=0, le=100)
    progress_text: str | None = Field(default=None, alias="progressText")
    payload: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @classmethod
    def from_entry(cls, task: TaskEntry) -> "TaskRecordResponse":
        return cls(
            id=task.task_id,
            type=task.task_type,
            owner_ref=task.owner_ref,
            status=task.status,
            progress=task.progress,
            progress_text=task.progress_text,
            payload=mask_secrets(task.payload),
            result=task.result,
            error=task.error,
            error_code=task.error_code,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


class TaskListResponse(BaseModel):
    """Tasks for one owner, newest first."""

    tasks: list[TaskRecordResponse]


class TaskCancelledResponse(BaseModel):
    id: str
    status: TaskStatus
    message: str


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    environment: str
    timestamp: datetime = Field(default_factory=datetime.now)
    uptime_seconds: float
    tasks_in_memory: int
    active_executions: int
    task_types: list[str] = []
    dependencies: dict[str, str] = {}
