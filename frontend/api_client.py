"""
API client for communicating with the Storybook task backend.

Handles HTTP communication and error handling, and provides simple methods
for a UI layer to submit tasks and poll them until they finish.
"""

from collections.abc import Callable
import os
import time
from typing import Any

import requests
import structlog

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def _error_message(response: requests.Response | None, fallback: str) -> str:
    """Pull the message out of a structured error body, if there is one."""
    if response is None:
        return fallback
    try:
        body = response.json()
    except ValueError:
        return fallback
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str) and error:
        return error
    return fallback


class TaskAPIClient:
    """Simple HTTP client for the task backend."""

    def __init__(self, base_url: str | None = None):
        """Initialize the API client.

        Args:
            base_url: Backend URL. If None, reads from BACKEND_URL env var.
        """
        self.base_url = base_url or os.getenv("BACKEND_URL", "http://localhost:8000")
        self.session = requests.Session()

        logger.info("API client initialized", base_url=self.base_url)

    @property
    def tasks_url(self) -> str:
        return f"{self.base_url}/api/v1/tasks"

    def health_check(self) -> tuple[bool, dict[str, Any]]:
        """Check if backend is healthy.

        Returns:
            (is_healthy, health_data)
        """
        try:
            response = self.session.get(f"{self.base_url}/api/v1/health", timeout=5)
            response.raise_for_status()
            return True, response.json()
        except Exception as e:
            logger.warning("Backend health check failed", error=str(e))
            return False, {"error": str(e)}

    def submit_task(
        self, task_type: str, owner_ref: str, payload: dict[str, Any]
    ) -> tuple[bool, str]:
        """Submit a task for background execution.

        Args:
            task_type: Task type, e.g. "split-script"
            owner_ref: Correlation id (usually the project id)
            payload: Executor input

        Returns:
            (success, task_id_or_error)
        """
        response = None
        try:
            logger.info("Submitting task", task_type=task_type, owner_ref=owner_ref)
            response = self.session.post(
                self.tasks_url,
                json={"type": task_type, "ownerRef": owner_ref, "payload": payload},
                timeout=30,
            )
            response.raise_for_status()

            task_id = response.json()["id"]
            logger.info("Task submitted", task_id=task_id, task_type=task_type)
            return True, task_id

        except requests.exceptions.RequestException as e:
            error_msg = _error_message(response, f"Failed to submit task: {str(e)}")
            logger.error("Task submission failed", task_type=task_type, error=error_msg)
            return False, error_msg

    def generate_script(
        self, owner_ref: str, text_api_config: dict[str, Any], **payload: Any
    ) -> tuple[bool, str]:
        return self.submit_task(
            "generate-script", owner_ref, {"textApiConfig": text_api_config, **payload}
        )

    def split_script(
        self,
        owner_ref: str,
        script: str,
        text_api_config: dict[str, Any],
        storyboard_count: int = 8,
        keep_original: bool = False,
    ) -> tuple[bool, str]:
        return self.submit_task(
            "split-script",
            owner_ref,
            {
                "script": script,
                "storyboardCount": storyboard_count,
                "keepOriginal": keep_original,
                "textApiConfig": text_api_config,
            },
        )

    def generate_images(
        self,
        owner_ref: str,
        scenes: list[dict[str, Any]],
        image_api_config: dict[str, Any],
        **payload: Any,
    ) -> tuple[bool, str]:
        return self.submit_task(
            "generate-images",
            owner_ref,
            {"scenes": scenes, "imageApiConfig": image_api_config, **payload},
        )

    def get_task_status(self, task_id: str) -> tuple[bool, dict[str, Any]]:
        """Get current task status and results.

        Args:
            task_id: Task ID to check

        Returns:
            (success, task_data)
        """
        response = None
        try:
            response = self.session.get(f"{self.tasks_url}/{task_id}", timeout=10)
            response.raise_for_status()
            return True, response.json()

        except requests.exceptions.RequestException as e:
            error_msg = _error_message(response, f"Failed to get task status: {str(e)}")
            logger.error("Task status check failed", task_id=task_id, error=error_msg)
            return False, {"error": error_msg}

    def list_tasks(self, owner_ref: str) -> tuple[bool, list[dict[str, Any]]]:
        """List tasks for an owner, newest first.

        Returns:
            (success, tasks)
        """
        try:
            response = self.session.get(
                self.tasks_url, params={"ownerRef": owner_ref}, timeout=10
            )
            response.raise_for_status()
            return True, response.json().get("tasks", [])

        except requests.exceptions.RequestException as e:
            logger.error("Task listing failed", owner_ref=owner_ref, error=str(e))
            return False, []

    def cancel_task(self, task_id: str) -> tuple[bool, str]:
        """Cancel a pending or running task.

        Args:
            task_id: Task ID to cancel

        Returns:
            (success, message)
        """
        response = None
        try:
            response = self.session.delete(f"{self.tasks_url}/{task_id}", timeout=10)
            response.raise_for_status()

            return True, "Task cancelled successfully"

        except requests.exceptions.RequestException as e:
            error_msg = _error_message(response, f"Failed to cancel task: {str(e)}")
            logger.error("Task cancellation failed", task_id=task_id, error=error_msg)
            return False, error_msg

    def poll_until_complete(
        self,
        task_id: str,
        progress_callback: Callable[[int, str], None] | None = None,
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ) -> tuple[bool, dict[str, Any]]:
        """Poll task until it reaches a terminal state or the timeout expires.

        Args:
            task_id: Task ID to poll
            progress_callback: Function called with (progress, progress_text) on updates
            poll_interval: Seconds between polls
            timeout: Maximum seconds to wait

        Returns:
            (success, final_task_data); success is True only for completed tasks
        """
        start_time = time.time()

        while time.time() - start_time < timeout:
            success, task_data = self.get_task_status(task_id)

            if not success:
                return False, task_data

            if progress_callback:
                progress = task_data.get("progress", 0)
                message = task_data.get("progressText") or "Processing..."
                progress_callback(progress, message)

            status = task_data.get("status")

            if status == "completed":
                logger.info("Task completed successfully", task_id=task_id)
                return True, task_data
            elif status in TERMINAL_STATUSES:
                logger.warning(
                    "Task finished without result",
                    task_id=task_id,
                    status=status,
                    error=task_data.get("error"),
                )
                return False, task_data

            time.sleep(poll_interval)

        logger.warning("Task polling timeout", task_id=task_id, timeout=timeout)
        return False, {"error": f"Task timeout after {timeout} seconds"}


# Global client instance
api_client = TaskAPIClient()
