"""
Resilient JSON-over-HTTP client for the generation APIs.

Every call is a POST with a JSON body. Failed attempts are classified and
retried with exponential backoff; 429s back off from a larger floor. Each
attempt opens a fresh connection so a half-dead pooled socket can never be
reused, and is bounded by a hard timeout independent of the transport's own.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import time
from typing import Any

from asyncio_throttle import Throttler
import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from backend.core.cancellation import CancellationToken, race_cancellation
from backend.core.errors import UpstreamError, UpstreamRequestError, UpstreamResponseError
from backend.upstream.error_classifier import classify_failure

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 3000
DEFAULT_RATE_LIMIT_DELAY_MS = 5000
DEFAULT_TIMEOUT_MS = 150_000
DEFAULT_USER_AGENT = "storybook-task-backend/1.0"

_BODY_EXCERPT_CHARS = 500


@dataclass(slots=True)
class UpstreamResponse:
    """Parsed 2xx response from an upstream API."""

    url: str
    status_code: int
    data: Any
    elapsed_ms: int
    attempts: int


class wait_classified_backoff(wait_base):
    """
    Exponential backoff whose base depends on the last failure.

    delay = base * 2 ** (attempt - 1), where base is the rate-limit floor
    when the previous attempt was a 429 and the regular base otherwise.
    """

    def __init__(self, base_delay_ms: int, rate_limit_delay_ms: int):
        self.base_delay_ms = base_delay_ms
        self.rate_limit_delay_ms = rate_limit_delay_ms

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        classification = getattr(exc, "classification", None)
        rate_limited = bool(classification is not None and classification.rate_limited)
        base = self.rate_limit_delay_ms if rate_limited else self.base_delay_ms
        return base * 2 ** (retry_state.attempt_number - 1) / 1000


def _is_retryable(exc: BaseException) -> bool:
    return (
        isinstance(exc, UpstreamRequestError)
        and exc.classification is not None
        and exc.classification.should_retry
    )


class ResilientClient:
    """
    Retrying, rate-limited POST client shared by all executors.

    Stateless between calls apart from the outbound throttle window.

    Example:
        >>> client = ResilientClient(max_attempts=3, base_delay_ms=3000)
        >>> response = await client.post_json(url, body, {"Authorization": f"Bearer {key}"})
        >>> response.data["choices"][0]
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        rate_limit_delay_ms: int = DEFAULT_RATE_LIMIT_DELAY_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        rate_limit_per_minute: int = 60,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            max_attempts: Default attempt budget per call
            base_delay_ms: Default backoff base
            rate_limit_delay_ms: Backoff base after an HTTP 429
            timeout_ms: Default hard timeout per attempt
            rate_limit_per_minute: Outbound requests allowed per minute
            user_agent: User-Agent header sent with every request
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Coroutine used for backoff sleeps
        """
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.rate_limit_delay_ms = rate_limit_delay_ms
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent
        self._transport = transport
        self._sleep = sleep
        self._throttler = Throttler(rate_limit=rate_limit_per_minute, period=60)

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "ResilientClient":
        options = {
            "max_attempts": settings.upstream_max_attempts,
            "base_delay_ms": settings.upstream_base_delay_ms,
            "rate_limit_delay_ms": settings.upstream_rate_limit_delay_ms,
            "timeout_ms": settings.upstream_timeout_ms,
            "rate_limit_per_minute": settings.upstream_rate_limit_per_minute,
            "user_agent": settings.upstream_user_agent,
        }
        options.update(overrides)
        return cls(**options)

    async def post_json(
        self,
        url: str,
        body: Any,
        headers: dict[str, str] | None = None,
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        timeout_ms: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> UpstreamResponse:
        """
        POST `body` as JSON and return the parsed JSON response.

        Raises:
            UpstreamRequestError: Last failed attempt once retries are exhausted,
                or the first non-retryable failure
            UpstreamResponseError: A 2xx response whose body is not JSON
            TaskCancelledError: The cancel token tripped mid-request or mid-backoff
        """
        attempts_allowed = max_attempts or self.max_attempts
        base_delay = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        timeout = timeout_ms or self.timeout_ms
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "Connection": "close",
        }
        request_headers.update(headers or {})

        async def sleep(seconds: float) -> None:
            await race_cancellation(self._sleep(seconds), cancel_token)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts_allowed),
            wait=wait_classified_backoff(base_delay, self.rate_limit_delay_ms),
            retry=retry_if_exception(_is_retryable),
            sleep=sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                return await self._send_once(
                    url,
                    body,
                    request_headers,
                    attempt=attempt.retry_state.attempt_number,
                    max_attempts=attempts_allowed,
                    timeout_ms=timeout,
                    cancel_token=cancel_token,
                )
        raise UpstreamError("Upstream request made no attempts")

    async def _post(
        self, url: str, body: Any, headers: dict[str, str], timeout_ms: int
    ) -> httpx.Response:
        timeout_s = timeout_ms / 1000
        await self._throttler.acquire()
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_keepalive_connections=0),
            transport=self._transport,
        ) as client:
            return await asyncio.wait_for(
                client.post(url, json=body, headers=headers), timeout=timeout_s
            )

    async def _send_once(
        self,
        url: str,
        body: Any,
        headers: dict[str, str],
        *,
        attempt: int,
        max_attempts: int,
        timeout_ms: int,
        cancel_token: CancellationToken | None,
    ) -> UpstreamResponse:
        started = time.monotonic()
        try:
            response = await race_cancellation(
                self._post(url, body, headers, timeout_ms), cancel_token
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            classification = classify_failure(None, e)
            detail = str(e) or f"timed out after {timeout_ms}ms"
            logger.warning(
                "Upstream request failed without response",
                url=url,
                attempt=attempt,
                max_attempts=max_attempts,
                elapsed_ms=elapsed_ms,
                error=detail,
                error_type=type(e).__name__,
                classification=classification.reason,
                will_retry=classification.should_retry and attempt < max_attempts,
            )
            raise UpstreamRequestError(
                f"Request to {url} failed: {detail}",
                url=url,
                classification=classification,
            ) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)

        if not response.is_success:
            classification = classify_failure(response.status_code)
            excerpt = response.text[:_BODY_EXCERPT_CHARS]
            logger.warning(
                "Upstream request returned error status",
                url=url,
                attempt=attempt,
                max_attempts=max_attempts,
                elapsed_ms=elapsed_ms,
                status=response.status_code,
                classification=classification.reason,
                will_retry=classification.should_retry and attempt < max_attempts,
            )
            raise UpstreamRequestError(
                f"Upstream returned HTTP {response.status_code}: {excerpt[:200]}",
                url=url,
                status_code=response.status_code,
                classification=classification,
                body=excerpt,
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "Upstream returned a non-JSON body",
                url=url,
                attempt=attempt,
                status=response.status_code,
                content_type=response.headers.get("content-type", ""),
            )
            raise UpstreamResponseError(
                f"Upstream returned a non-JSON body (HTTP {response.status_code})"
            ) from e

        logger.info(
            "Upstream request succeeded",
            url=url,
            attempt=attempt,
            max_attempts=max_attempts,
            elapsed_ms=elapsed_ms,
            status=response.status_code,
        )
        return UpstreamResponse(
            url=url,
            status_code=response.status_code,
            data=data,
            elapsed_ms=elapsed_ms,
            attempts=attempt,
        )
