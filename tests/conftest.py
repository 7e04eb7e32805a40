"""Shared fixtures: settings and a mock Anthropic upstream."""

import json
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from claudebridge.api.upstream import UpstreamClient
from claudebridge.config import Settings


def make_settings(**overrides: Any) -> Settings:
    defaults: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key",
        "ANTHROPIC_AUTH_TOKEN": "",
        "api_key": "",
    }
    defaults.update(overrides)
    return Settings(**defaults)


def sse_body(events: list[dict[str, Any]]) -> bytes:
    """Encode events the way the Messages API streams them."""
    frames = [
        f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
    ]
    return "".join(frames).encode()


class MockUpstream:
    """Records requests and replies through a swappable handler."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last_body(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def mock_upstream() -> MockUpstream:
    return MockUpstream()


@pytest_asyncio.fixture
async def upstream(settings, mock_upstream):
    """UpstreamClient wired to the mock transport."""
    client = UpstreamClient(settings, transport=httpx.MockTransport(mock_upstream))
    await client.start()
    yield client
    await client.close()
