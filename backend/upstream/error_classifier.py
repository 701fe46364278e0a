"""Deterministic classification of failed upstream attempts into retry decisions."""

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx

_TRANSIENT_ERROR_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "connection reset",
    "socket",
    "network",
    "terminated",
    "aborted",
)

# Exception types that mean "no response arrived" regardless of their message
_TRANSIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class RetryDecision(str, Enum):
    RETRY = "retry"
    NO_RETRY = "no-retry"


@dataclass(frozen=True)
class FailureClassification:
    """
    Outcome of classifying one failed attempt.

    Attributes:
        decision: Whether another attempt may help
        reason: Name of the rule that matched
        rate_limited: True for HTTP 429, which calls for a longer backoff
    """

    decision: RetryDecision
    reason: str
    rate_limited: bool = False

    @property
    def should_retry(self) -> bool:
        return self.decision is RetryDecision.RETRY


def _match_transient_error(error: BaseException) -> str | None:
    if isinstance(error, _TRANSIENT_ERROR_TYPES):
        return type(error).__name__
    text = f"{type(error).__name__} {error}".lower()
    for pattern in _TRANSIENT_ERROR_PATTERNS:
        if pattern in text:
            return pattern
    return None


def classify_failure(
    status_code: int | None = None, error: BaseException | None = None
) -> FailureClassification:
    """
    Map a failed attempt to a retry decision.

    Rules, first match wins:
      1. no response: retry on timeout / connection-reset / abort errors
      2. 429: retry, rate limited
      3. 5xx: retry
      4. other 4xx (408 excepted): no retry
      5. anything else: no retry
    """
    if status_code is None:
        if error is not None and _match_transient_error(error):
            return FailureClassification(RetryDecision.RETRY, "network_transient")
        return FailureClassification(RetryDecision.NO_RETRY, "network_unrecognized")

    if status_code == 429:
        return FailureClassification(RetryDecision.RETRY, "rate_limited", rate_limited=True)
    if 500 <= status_code <= 599:
        return FailureClassification(RetryDecision.RETRY, "server_error")
    if status_code == 408:
        return FailureClassification(RetryDecision.RETRY, "request_timeout")
    if 400 <= status_code <= 499:
        return FailureClassification(RetryDecision.NO_RETRY, "client_error")
    return FailureClassification(RetryDecision.NO_RETRY, "unclassified")
