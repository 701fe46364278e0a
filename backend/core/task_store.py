"""
In-memory task store with retention-based sweeping.

Single source of truth for task records for the lifetime of the process.
State is deliberately ephemeral: nothing survives a restart, and finished
tasks are swept once they are older than the retention window.
"""

import asyncio
from collections.abc import Callable
import copy
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any
import uuid

import structlog

from backend.tasks.models import (
    ALLOWED_TRANSITIONS,
    TaskEntry,
    TaskStatus,
)

logger = structlog.get_logger(__name__)

Dispatcher = Callable[[str], None]

_UPDATABLE_FIELDS = frozenset(f.name for f in fields(TaskEntry)) - {
    "task_id",
    "task_type",
    "owner_ref",
    "created_at",
    "updated_at",
}


def _clamp_progress(value: Any) -> int:
    return max(0, min(100, int(value)))


class TaskStore:
    """
    Lock-protected in-memory registry of task records.

    Callers only ever receive deep snapshot copies; every mutation goes through
    `update` (or `cancel`), which is a last-write-wins merge.

    Example:
        >>> store = TaskStore(retention_minutes=60)
        >>> task = await store.create("split-script", "project-1", {"script": "..."})
        >>> await store.update(task.task_id, progress=40, progress_text="Halfway")
        >>> (await store.get(task.task_id)).progress
        40
    """

    def __init__(
        self,
        retention_minutes: int = 60,
        sweep_interval_minutes: int = 10,
        dispatcher: Dispatcher | None = None,
    ):
        """
        Initialize the store.

        Args:
            retention_minutes: How long terminal tasks are kept after completion
            sweep_interval_minutes: How often the background sweeper runs
            dispatcher: Called with the task id of every newly created task
        """
        self._tasks: dict[str, TaskEntry] = {}
        self._lock = asyncio.Lock()
        self._dispatcher = dispatcher
        self._sweeper: asyncio.Task | None = None
        self.retention = timedelta(minutes=retention_minutes)
        self.sweep_interval = timedelta(minutes=sweep_interval_minutes)
        self._last_sweep = datetime.now()

        logger.info(
            "TaskStore initialized",
            retention_minutes=retention_minutes,
            sweep_interval_minutes=sweep_interval_minutes,
        )

    def set_dispatcher(self, dispatcher: Dispatcher | None) -> None:
        """Bind the callable that starts execution of newly created tasks."""
        self._dispatcher = dispatcher

    async def create(
        self, task_type: str, owner_ref: str, payload: dict[str, Any] | None = None
    ) -> TaskEntry:
        """
        Insert a new pending task and hand it to the dispatcher.

        Execution is fire-and-forget: this never waits for the executor.

        Returns:
            Snapshot of the created task
        """
        now = datetime.now()
        task = TaskEntry(
            task_id=str(uuid.uuid4()),
            task_type=task_type,
            owner_ref=owner_ref,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            payload=copy.deepcopy(dict(payload or {})),
        )

        async with self._lock:
            self._tasks[task.task_id] = task
            snapshot = copy.deepcopy(task)

        logger.info(
            "Task created",
            task_id=task.task_id,
            task_type=task_type,
            owner_ref=owner_ref,
        )

        if self._dispatcher is not None:
            self._dispatcher(task.task_id)

        return snapshot

    async def get(self, task_id: str) -> TaskEntry | None:
        """Return a snapshot of the task, or None if it does not exist."""
        async with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    async def list_by_owner(self, owner_ref: str) -> list[TaskEntry]:
        """
        List tasks for an owner, newest first.

        Tasks created within the same clock tick keep newest-first order too.
        """
        async with self._lock:
            # Reverse insertion order first so the stable sort breaks ties newest-first
            tasks = [
                copy.deepcopy(t)
                for t in reversed(list(self._tasks.values()))
                if t.owner_ref == owner_ref
            ]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    async def update(self, task_id: str, /, **changes: Any) -> TaskEntry | None:
        """
        Merge fields into a task record.

        Updates to terminal tasks are ignored. Progress is clamped to [0, 100]
        and never moves backwards.

        Returns:
            Snapshot after the merge, or None when the task does not exist

        Raises:
            ValueError: For unknown fields, illegal status transitions, or
                result and error set together
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        if changes.get("result") is not None and changes.get("error") is not None:
            raise ValueError("A task cannot have both a result and an error")

        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None

            if task.is_terminal:
                logger.debug(
                    "Ignoring update to terminal task",
                    task_id=task_id,
                    status=task.status.value,
                    fields=sorted(changes),
                )
                return copy.deepcopy(task)

            new_status = changes.get("status")
            if new_status is not None:
                new_status = TaskStatus(new_status)
                if (
                    new_status != task.status
                    and new_status not in ALLOWED_TRANSITIONS[task.status]
                ):
                    raise ValueError(
                        f"Illegal transition {task.status.value} -> {new_status.value}"
                    )
                changes["status"] = new_status

            if "progress" in changes:
                changes["progress"] = max(
                    task.progress, _clamp_progress(changes["progress"])
                )

            for name, value in changes.items():
                setattr(task, name, copy.deepcopy(value))
            task.updated_at = datetime.now()

            return copy.deepcopy(task)

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a pending or running task.

        Returns:
            True if the task was cancelled, False if absent or already terminal
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return False

            now = datetime.now()
            task.status = TaskStatus.CANCELLED
            task.completed_at = now
            task.updated_at = now

        logger.info("Task cancelled", task_id=task_id)
        return True

    async def sweep(self) -> dict[str, int]:
        """
        Delete tasks that finished longer ago than the retention window.

        Returns:
            Sweep statistics
        """
        async with self._lock:
            cutoff = datetime.now() - self.retention
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if task.completed_at is not None and task.completed_at < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]

            self._last_sweep = datetime.now()
            remaining = len(self._tasks)

        if expired:
            logger.info(
                "Task sweep completed",
                expired_tasks=len(expired),
                remaining_tasks=remaining,
            )

        return {"expired_tasks": len(expired), "remaining_tasks": remaining}

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        interval = self.sweep_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Task sweep failed", error=str(e))

    async def get_task_count(self) -> int:
        """Get total number of tasks held in memory."""
        async with self._lock:
            return len(self._tasks)

    async def health_check(self) -> dict[str, Any]:
        """
        Get store health information.

        Returns:
            Dictionary with task statistics
        """
        async with self._lock:
            status_counts: dict[str, int] = {}
            for task in self._tasks.values():
                status = task.status.value
                status_counts[status] = status_counts.get(status, 0) + 1

            return {
                "store": "healthy",
                "total_tasks": len(self._tasks),
                "status_breakdown": status_counts,
                "last_sweep": self._last_sweep.isoformat(),
                "sweeper_running": self._sweeper is not None and not self._sweeper.done(),
            }


# Global store instance (initialized once at startup)
_task_store: TaskStore | None = None


def get_task_store() -> TaskStore:
    """
    Get the global task store instance.

    Raises:
        RuntimeError: If the store has not been initialized
    """
    if _task_store is None:
        raise RuntimeError("Task store not initialized. Call initialize_store() first.")
    return _task_store


def initialize_store(
    retention_minutes: int = 60, sweep_interval_minutes: int = 10
) -> TaskStore:
    """Create the global task store."""
    global _task_store
    _task_store = TaskStore(
        retention_minutes=retention_minutes,
        sweep_interval_minutes=sweep_interval_minutes,
    )
    logger.info("Global task store initialized")
    return _task_store


def reset_store() -> None:
    """Reset the global store (for testing)."""
    global _task_store
    _task_store = None
