"""
Execution engine: drives tasks through their lifecycle.

pending -> running -> completed | failed | cancelled

Each dispatched task runs as its own asyncio task. Executors report progress
through `ExecutionContext.update_progress`, which is also the cancellation
checkpoint: once a task is cancelled the next progress update raises
`TaskCancelledError` and the executor unwinds. Long upstream calls observe the
same cancellation through the context's `cancel_token`.
"""

import asyncio
from datetime import datetime
import time
from typing import Any

import structlog

from backend.config import settings as app_settings
from backend.core.cancellation import CancellationToken
from backend.core.errors import TaskCancelledError
from backend.core.task_store import TaskStore
from backend.tasks.models import TaskStatus
from backend.tasks.registry import ExecutorRegistry
from backend.upstream.resilient_client import ResilientClient

logger = structlog.get_logger(__name__)

NO_EXECUTOR_ERROR_CODE = "no_executor"
DEFAULT_ERROR_CODE = "execution_failed"


class ExecutionContext:
    """
    Everything an executor may use while running one task.

    Attributes:
        task_id: Id of the running task
        client: Shared resilient upstream client
        cancel_token: Trips when the task is cancelled
        settings: Application settings
    """

    def __init__(
        self,
        task_id: str,
        store: TaskStore,
        client: ResilientClient,
        cancel_token: CancellationToken,
        settings: Any = None,
    ):
        self.task_id = task_id
        self.client = client
        self.cancel_token = cancel_token
        self.settings = settings if settings is not None else app_settings
        self._store = store

    async def update_progress(self, progress: int, text: str | None = None) -> None:
        """
        Report progress; doubles as the cancellation checkpoint.

        Raises:
            TaskCancelledError: If the task has been cancelled
        """
        task = await self._store.get(self.task_id)
        if task is None or task.status == TaskStatus.CANCELLED or self.cancel_token.cancelled:
            raise TaskCancelledError(self.task_id)

        changes: dict[str, Any] = {"progress": progress}
        if text is not None:
            changes["progress_text"] = text
        await self._store.update(self.task_id, **changes)

    def check_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()


class ExecutionEngine:
    """
    Runs registered executors for tasks created in the store.

    The engine binds itself as the store's dispatcher, so creating a task is
    enough to start it. It never raises to its caller: every executor outcome
    becomes a terminal task state.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ExecutorRegistry,
        client: ResilientClient,
        settings: Any = None,
        max_concurrent_tasks: int = 0,
    ):
        """
        Initialize the engine.

        Args:
            store: Task store to drive
            registry: Executor registry
            client: Upstream client handed to executors
            settings: Application settings handed to executors
            max_concurrent_tasks: Admission limit (0 = unbounded)
        """
        self.store = store
        self.registry = registry
        self.client = client
        self.settings = settings
        self._runners: set[asyncio.Task] = set()
        self._tokens: dict[str, CancellationToken] = {}
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_tasks) if max_concurrent_tasks > 0 else None
        )
        store.set_dispatcher(self.dispatch)

        logger.info(
            "ExecutionEngine initialized",
            task_types=registry.task_types(),
            max_concurrent_tasks=max_concurrent_tasks or "unbounded",
        )

    @property
    def active_count(self) -> int:
        return len(self._runners)

    def dispatch(self, task_id: str) -> None:
        """Schedule execution of a task; returns immediately."""
        token = CancellationToken(task_id)
        self._tokens[task_id] = token
        runner = asyncio.create_task(self._execute(task_id, token), name=f"task-{task_id}")
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a pending or running task.

        Returns:
            True if the task was cancelled, False if absent or already terminal
        """
        cancelled = await self.store.cancel(task_id)
        if cancelled:
            token = self._tokens.get(task_id)
            if token is not None:
                token.cancel()
        return cancelled

    async def drain(self) -> None:
        """Wait until every dispatched task has finished."""
        while self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight executions (application shutdown)."""
        runners = list(self._runners)
        if not runners:
            return
        logger.info("Cancelling in-flight tasks", count=len(runners))
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)

    async def _execute(self, task_id: str, token: CancellationToken) -> None:
        try:
            if self._semaphore is None:
                await self._run(task_id, token)
            else:
                async with self._semaphore:
                    await self._run(task_id, token)
        except asyncio.CancelledError:
            await self.store.cancel(task_id)
            logger.warning("Task interrupted by shutdown", task_id=task_id)
            raise
        except Exception as e:
            logger.error(
                "Unexpected engine error", task_id=task_id, error=str(e), exc_info=True
            )
        finally:
            self._tokens.pop(task_id, None)

    async def _run(self, task_id: str, token: CancellationToken) -> None:
        task = await self.store.get(task_id)
        if task is None:
            logger.warning("Dispatched task no longer exists", task_id=task_id)
            return
        if task.is_terminal:
            logger.info(
                "Task finished before it started", task_id=task_id, status=task.status.value
            )
            return

        executor = self.registry.get(task.task_type)
        if executor is None:
            error = f"No executor registered for task type '{task.task_type}'"
            await self.store.update(
                task_id,
                status=TaskStatus.FAILED,
                error=error,
                error_code=NO_EXECUTOR_ERROR_CODE,
                completed_at=datetime.now(),
            )
            logger.error("Task failed", task_id=task_id, task_type=task.task_type, error=error)
            return

        running = await self.store.update(
            task_id, status=TaskStatus.RUNNING, started_at=datetime.now()
        )
        if running is None or running.status != TaskStatus.RUNNING:
            return

        logger.info("Task started", task_id=task_id, task_type=task.task_type)
        context = ExecutionContext(task_id, self.store, self.client, token, self.settings)
        started = time.monotonic()

        try:
            result = await executor(running, context)
        except TaskCancelledError:
            await self.store.cancel(task_id)
            logger.info(
                "Task cancelled",
                task_id=task_id,
                task_type=task.task_type,
                duration=f"{time.monotonic() - started:.2f}s",
            )
            return
        except Exception as e:
            error_code = getattr(e, "error_code", DEFAULT_ERROR_CODE)
            await self.store.update(
                task_id,
                status=TaskStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_code=error_code,
                completed_at=datetime.now(),
            )
            logger.error(
                "Task failed",
                task_id=task_id,
                task_type=task.task_type,
                error=str(e),
                error_code=error_code,
                error_type=type(e).__name__,
                duration=f"{time.monotonic() - started:.2f}s",
            )
            return

        current = await self.store.get(task_id)
        if current is None or current.status == TaskStatus.CANCELLED:
            logger.info("Discarding result of cancelled task", task_id=task_id)
            return

        await self.store.update(
            task_id,
            status=TaskStatus.COMPLETED,
            progress=100,
            result=result,
            completed_at=datetime.now(),
        )
        logger.info(
            "Task completed",
            task_id=task_id,
            task_type=task.task_type,
            duration=f"{time.monotonic() - started:.2f}s",
        )


# Global engine instance (initialized once at startup)
_engine: ExecutionEngine | None = None


def get_engine() -> ExecutionEngine:
    """
    Get the global execution engine.

    Raises:
        RuntimeError: If the engine has not been initialized
    """
    if _engine is None:
        raise RuntimeError("Execution engine not initialized. Call initialize_engine() first.")
    return _engine


def initialize_engine(
    store: TaskStore,
    registry: ExecutorRegistry,
    client: ResilientClient,
    settings: Any = None,
    max_concurrent_tasks: int = 0,
) -> ExecutionEngine:
    """Create the global execution engine bound to `store`."""
    global _engine
    _engine = ExecutionEngine(
        store,
        registry,
        client,
        settings=settings,
        max_concurrent_tasks=max_concurrent_tasks,
    )
    return _engine


def reset_engine() -> None:
    """Reset the global engine (for testing)."""
    global _engine
    _engine = None
