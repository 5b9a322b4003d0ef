"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- A fake custom backend served through httpx.MockTransport
- A stand-in for the primary (OpenAI) client
- Logger reset between tests
"""

import json
import logging
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("LOG_COLOR", "false")

from config import TromeroConfig  # noqa: E402
from models import mock_openai_format  # noqa: E402
from upstream import CustomBackendClient  # noqa: E402

BASE_URL = "https://tromero.test/tailor/v1"
SERVING_URL = "https://serve.test/adapter"


def frame(text: str, special: bool = False) -> bytes:
    """One generate_stream frame."""
    return ("data:" + json.dumps({"token": {"text": text, "special": special}}) + "\n\n").encode("utf-8")


class TrackingStream(httpx.AsyncByteStream):
    """Response body delivered as fixed blocks; records whether it was closed."""

    def __init__(self, blocks: List[bytes], error: Optional[Exception] = None) -> None:
        self.blocks = blocks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for block in self.blocks:
            yield block
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeTromeroServer:
    """In-process stand-in for the resolver, serving and data endpoints."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.data_posts: List[Dict[str, Any]] = []
        self.models: Dict[str, Dict[str, Any]] = {
            "my-adapter": {"url": SERVING_URL, "base_model": False},
        }
        self.generated_text = "Hi there"
        self.usage: Any = {"prompt_tokens": 3, "completion_tokens": 2}
        self.stream_blocks = [frame("Hi"), frame(" there"), frame("</s>", special=True)]
        self.stream_error: Optional[Exception] = None
        self.fail_generate = False
        self.fail_data = False
        self.streams: List[TrackingStream] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/url"):
            name = path.split("/")[-2]
            if name not in self.models:
                return httpx.Response(404, json={"error": "model not found"})
            return httpx.Response(200, json=self.models[name])

        if path.endswith("/data"):
            self.data_posts.append(json.loads(request.content))
            if self.fail_data:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json={"status": "ok"})

        if path.endswith("/generate_stream"):
            if self.fail_generate:
                return httpx.Response(503, text="overloaded")
            stream = TrackingStream(list(self.stream_blocks), self.stream_error)
            self.streams.append(stream)
            return httpx.Response(200, stream=stream)

        if path.endswith("/generate"):
            if self.fail_generate:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(
                200, json={"generated_text": self.generated_text, "usage": self.usage}
            )

        return httpx.Response(404)

    def bodies(self, suffix: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(suffix)]


class FakePrimary:
    """Stand-in for AsyncOpenAI with the two calls the router uses."""

    def __init__(self, model_ids=("gpt-4o", "gpt-4o-mini"), completion=None) -> None:
        self.page = SimpleNamespace(data=[SimpleNamespace(id=m) for m in model_ids])
        self.models = SimpleNamespace(list=AsyncMock(return_value=self.page))
        self.completion = completion or mock_openai_format("Hello from OpenAI", "gpt-4o")
        self.chat = SimpleNamespace(
            completions=SimpleNamespace(create=AsyncMock(return_value=self.completion))
        )
        self.close = AsyncMock()


@pytest.fixture(autouse=True)
def reset_tromero_logger():
    """Undo setup_logging() side effects so caplog keeps working."""
    yield
    logger = logging.getLogger("tromero")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    logging.disable(logging.NOTSET)


@pytest.fixture
def test_config():
    """Create test configuration."""
    return TromeroConfig(
        tromero_key="tromero-test-key",
        openai_api_key="",
        base_url=BASE_URL,
        data_url=f"{BASE_URL}/data",
        save_data=False,
        request_timeout_s=5.0,
        stream_idle_timeout_s=5.0,
        log_level="DEBUG",
        log_path="",
        user_agent="test-agent",
    )


@pytest.fixture
def server():
    return FakeTromeroServer()


@pytest.fixture
def http_client(server):
    return httpx.AsyncClient(transport=httpx.MockTransport(server.handler))


@pytest.fixture
def backend(test_config, http_client):
    return CustomBackendClient(test_config, http_client)


@pytest.fixture
def fake_primary():
    return FakePrimary()
