"""Core backend modules - task store, cancellation and error types."""

from .cancellation import CancellationToken, race_cancellation
from .errors import StorybookError, TaskCancelledError
from .task_store import (
    TaskStore,
    get_task_store,
    initialize_store,
    reset_store,
)

__all__ = [
    "CancellationToken",
    "StorybookError",
    "TaskCancelledError",
    "TaskStore",
    "get_task_store",
    "initialize_store",
    "race_cancellation",
    "reset_store",
]
