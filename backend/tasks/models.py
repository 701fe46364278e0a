"""Task domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# Legal status transitions; terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
}


class TaskType(str, Enum):
    """Task types shipped with the default executor registry."""

    GENERATE_SCRIPT = "generate-script"
    SPLIT_SCRIPT = "split-script"
    GENERATE_IMAGES = "generate-images"
    GENERATE_SINGLE_IMAGE = "generate-single-image"


@dataclass
class TaskEntry:
    """
    In-memory task record.

    Attributes:
        task_id: Unique identifier
        task_type: Tag selecting the executor (usually a TaskType value)
        owner_ref: Caller-supplied correlation id, e.g. a project id
        status: Current execution status
        created_at: When the task was created
        updated_at: When the task was last updated
        payload: Opaque executor input
        progress: Completion percentage (0 to 100)
        progress_text: Human-readable status message
        result: Executor result (completed tasks only)
        error: Error message (failed tasks only)
        error_code: Machine-readable error code
        started_at: When the executor was invoked
        completed_at: When the task reached a terminal state
    """

    task_id: str
    task_type: str
    owner_ref: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    progress: int = 0
    progress_text: str | None = None
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "owner_ref": self.owner_ref,
            "status": self.status.value,
            "progress": self.progress,
            "progress_text": self.progress_text,
            "payload": self.payload,
            "result": self.result,
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
