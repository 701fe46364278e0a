"""Upstream generation API access: resilient client, classification, normalization."""

from backend.upstream.error_classifier import (
    FailureClassification,
    RetryDecision,
    classify_failure,
)
from backend.upstream.resilient_client import ResilientClient, UpstreamResponse
from backend.upstream.response_normalizer import extract_image, extract_text

__all__ = [
    "FailureClassification",
    "ResilientClient",
    "RetryDecision",
    "UpstreamResponse",
    "classify_failure",
    "extract_image",
    "extract_text",
]
