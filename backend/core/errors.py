"""Exception hierarchy shared by the task engine, executors and upstream client."""

from typing import Any


class StorybookError(Exception):
    """Base class for errors that carry a machine-readable code."""

    error_code = "execution_failed"


class PayloadValidationError(StorybookError):
    """A task payload is missing or carries an unusable field."""

    error_code = "invalid_payload"


class UnsupportedVendorError(StorybookError):
    """The vendor `type` in an API configuration is not supported."""

    error_code = "unsupported_vendor"


class UpstreamError(StorybookError):
    """Base class for failures talking to a generation API."""

    error_code = "upstream_failed"


class UpstreamRequestError(UpstreamError):
    """
    A single outbound attempt failed.

    Attributes:
        url: Target URL
        status_code: HTTP status, or None when no response was received
        classification: Retry decision produced by the error classifier
        body: Excerpt of the response body (if any)
    """

    error_code = "upstream_request_failed"

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        classification: Any = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.classification = classification
        self.body = body


class UpstreamResponseError(UpstreamError):
    """The upstream answered 2xx but the body is not usable JSON."""

    error_code = "upstream_bad_response"


class ExtractionError(StorybookError):
    """A response parsed fine but held nothing we could extract."""

    error_code = "extraction_failed"


class ImageNotFoundError(ExtractionError):
    error_code = "no_image_in_response"


class TextNotFoundError(ExtractionError):
    error_code = "no_text_in_response"


class TaskCancelledError(StorybookError):
    """
    Raised at a cancellation checkpoint once a task has been cancelled.

    The engine treats this as a normal terminal outcome, never as a failure.
    """

    error_code = "cancelled"

    def __init__(self, task_id: str | None = None):
        super().__init__(f"Task {task_id} was cancelled" if task_id else "Task was cancelled")
        self.task_id = task_id


class ImageGenerationError(StorybookError):
    """Every scene of a multi-image task failed."""

    error_code = "all_scenes_failed"
