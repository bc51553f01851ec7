"""
Shared test fixtures for pytest.

Provides fake provider adapters and helpers for all test modules:
- FakeChatAdapter: scripted invoke/stream backend with call counting
- FakeMediaAdapter: scripted media backend returning MediaPayload
- make_registry: build a ProviderRegistry from adapters in priority order
- fast_config: OrchestrationConfig with short deadlines
- make_history: alternating user/assistant Message lists
- api_client: httpx AsyncClient bound to a FastAPI app over ASGITransport
"""

import asyncio
from typing import Any, AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio

from chatrelay.core.config import OrchestrationConfig
from chatrelay.core.registry import ProviderRegistry
from chatrelay.core.types import MediaPayload, Message, ProviderDescriptor, Role, TaskType
from chatrelay.llm.base import ProviderAdapter


# ------------------------------------------------------------------ #
# Fake adapters
# ------------------------------------------------------------------ #

class FakeChatAdapter(ProviderAdapter):
    """Scripted chat backend.

    `error` is raised before any output; `fail_after` raises `stream_error`
    after that many chunks have been yielded.
    """

    supports_streaming = True

    def __init__(
        self,
        provider_id: str,
        reply: str = "ok",
        chunks: tuple = ("Hel", "lo"),
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        stream_error: Optional[BaseException] = None,
    ):
        self.provider_id = provider_id
        self.reply = reply
        self.chunks = tuple(chunks)
        self.error = error
        self.delay = delay
        self.fail_after = fail_after
        self.stream_error = stream_error or RuntimeError("stream broke")
        self.calls = 0
        self.requests: list = []
        self.closed = False
        self.cancelled = False

    async def _before_output(self, request: Any) -> None:
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error

    async def invoke(self, request: Any) -> Any:
        await self._before_output(request)
        return self.reply

    async def stream(self, request: Any):
        try:
            await self._before_output(request)
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.stream_error
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.stream_error
        finally:
            self.closed = True


class FakeMediaAdapter(ProviderAdapter):

    def __init__(
        self,
        provider_id: str,
        payload: Optional[MediaPayload] = None,
        error: Optional[BaseException] = None,
    ):
        self.provider_id = provider_id
        self.payload = payload or MediaPayload(mime_type="image/png", data=b"\x89PNG fake")
        self.error = error
        self.calls = 0
        self.requests: list = []

    async def invoke(self, request: Any) -> MediaPayload:
        self.calls += 1
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.payload


# ------------------------------------------------------------------ #
# Builders
# ------------------------------------------------------------------ #

def make_registry(**tasks) -> ProviderRegistry:
    """Build a registry, e.g. `make_registry(chat=[a, b], image=[c])`."""
    entries = {}
    for task_name, adapters in tasks.items():
        entries[TaskType(task_name)] = [
            ProviderDescriptor(
                id=adapter.provider_id,
                display_name=adapter.provider_id.title(),
                priority=index,
                adapter=adapter,
            )
            for index, adapter in enumerate(adapters)
        ]
    return ProviderRegistry(entries)


def make_history(pairs: int, trailing_user: bool = False, content: str = "message") -> list:
    history = []
    for index in range(pairs):
        history.append(Message(role=Role.USER, content=f"{content} user {index}"))
        history.append(Message(role=Role.ASSISTANT, content=f"{content} assistant {index}"))
    if trailing_user:
        history.append(Message(role=Role.USER, content=f"{content} pending"))
    return history


@pytest.fixture
def fast_config() -> OrchestrationConfig:
    return OrchestrationConfig(
        timeout_seconds=1.0,
        media_timeout_seconds=1.0,
        chunk_timeout_seconds=None,
        poll_max_attempts=3,
        poll_interval_seconds=0.0,
    )


# ------------------------------------------------------------------ #
# HTTP client
# ------------------------------------------------------------------ #

@pytest_asyncio.fixture
async def api_client_factory() -> AsyncGenerator:
    """Return a factory that binds an AsyncClient to an app built from an engine."""
    from chatrelay.api.http_api import create_app

    clients = []

    def factory(engine) -> httpx.AsyncClient:
        app = create_app(engine)
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()
