"""Shared test configuration and fixtures for all tests."""

import base64
import io
import os
from typing import Any

from PIL import Image
import pytest

# Keep test runs independent of a developer's .env
os.environ["BACKEND_URL"] = "http://localhost:8000"
os.environ["ENVIRONMENT"] = "development"
os.environ["UPSTREAM_BASE_DELAY_MS"] = "0"
os.environ["UPSTREAM_RATE_LIMIT_DELAY_MS"] = "0"
os.environ["UPSTREAM_RATE_LIMIT_PER_MINUTE"] = "1000"

from backend.upstream.resilient_client import UpstreamResponse  # noqa: E402


class FakeUpstreamClient:
    """Stands in for ResilientClient; replays queued responses and records calls."""

    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def post_json(self, url, body, headers=None, **kwargs) -> UpstreamResponse:
        self.calls.append({"url": url, "body": body, "headers": headers or {}, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected upstream call to {url}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return UpstreamResponse(
            url=url, status_code=200, data=response, elapsed_ms=1, attempts=1
        )


def chat_response(content: Any) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def fake_client() -> FakeUpstreamClient:
    return FakeUpstreamClient()


@pytest.fixture
def text_api_config() -> dict:
    return {
        "type": "openai",
        "apiUrl": "https://llm.example.com/v1",
        "apiKey": "sk-test-123",
        "model": "gpt-4o",
    }


@pytest.fixture
def image_api_config() -> dict:
    return {
        "type": "openai",
        "apiUrl": "https://img.example.com/v1/",
        "apiKey": "sk-image-456",
        "model": "dall-e-3",
    }


@pytest.fixture
def gemini_api_config() -> dict:
    return {
        "type": "openai",
        "apiUrl": "https://gateway.example.com/v1",
        "apiKey": "sk-gemini-789",
        "model": "gemini-2.5-flash-image",
    }


@pytest.fixture
def png_base64() -> str:
    """A tiny valid PNG as bare base64."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 220, 255)).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def png_data_uri(png_base64: str) -> str:
    return f"data:image/png;base64,{png_base64}"


@pytest.fixture
def chat():
    """Builder for chat-completions response bodies."""
    return chat_response
