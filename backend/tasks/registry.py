"""Executor registry mapping task types to their implementations."""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from backend.tasks.engine import ExecutionContext
    from backend.tasks.models import TaskEntry

logger = structlog.get_logger(__name__)

Executor = Callable[["TaskEntry", "ExecutionContext"], Awaitable[Any]]


@dataclass(frozen=True)
class RegisteredExecutor:
    task_type: str
    executor: Executor
    required_fields: tuple[str, ...] = ()


class ExecutorRegistry:
    """
    Explicit task-type to executor mapping.

    Built once at application start-up and handed to the execution engine.
    """

    def __init__(self) -> None:
        self._executors: dict[str, RegisteredExecutor] = {}

    def register(
        self,
        task_type: str,
        executor: Executor,
        required_fields: Iterable[str] = (),
    ) -> None:
        """
        Register (or replace) the executor for a task type.

        Args:
            task_type: Task type tag
            executor: Coroutine function `executor(task, context)`
            required_fields: Payload keys that must be present at submission
        """
        if task_type in self._executors:
            logger.warning("Replacing registered executor", task_type=task_type)
        self._executors[task_type] = RegisteredExecutor(
            task_type=task_type,
            executor=executor,
            required_fields=tuple(required_fields),
        )

    def get(self, task_type: str) -> Executor | None:
        registered = self._executors.get(task_type)
        return registered.executor if registered else None

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._executors

    def missing_fields(self, task_type: str, payload: dict[str, Any] | None) -> list[str]:
        """Required payload fields that are absent (or null) for a registered type."""
        registered = self._executors.get(task_type)
        if registered is None:
            return []
        payload = payload or {}
        return [name for name in registered.required_fields if payload.get(name) is None]

    def task_types(self) -> list[str]:
        return sorted(self._executors)


def build_default_registry() -> ExecutorRegistry:
    """Registry with every executor shipped by this service."""
    from backend.tasks import executors
    from backend.tasks.models import TaskType

    registry = ExecutorRegistry()
    registry.register(
        TaskType.GENERATE_SCRIPT.value,
        executors.generate_script,
        required_fields=("textApiConfig",),
    )
    registry.register(
        TaskType.SPLIT_SCRIPT.value,
        executors.split_script,
        required_fields=("script", "textApiConfig"),
    )
    registry.register(
        TaskType.GENERATE_SINGLE_IMAGE.value,
        executors.generate_single_image,
        required_fields=("sceneDescription", "imageApiConfig"),
    )
    registry.register(
        TaskType.GENERATE_IMAGES.value,
        executors.generate_images,
        required_fields=("scenes", "imageApiConfig"),
    )
    logger.info("Executor registry built", task_types=registry.task_types())
    return registry
