"""Task domain: models, executor registry, execution engine and executors."""

from backend.tasks.models import TaskEntry, TaskStatus, TaskType

__all__ = ["TaskEntry", "TaskStatus", "TaskType"]
