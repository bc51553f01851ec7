"""
Tests for the sequential fallback orchestrator.

Covers:
- First success wins; later providers are never invoked
- Attempt records on partial and total failure
- Per-attempt deadlines and provider timeouts
- Cancellation before and during an attempt
- Streaming: first-chunk success, empty streams, upstream cleanup
- Polling adapters: completion, ceiling, job cleanup
- Orchestrator settings: plain defaults and environment loading
"""

import asyncio
from typing import Optional

import pytest

from chatrelay.core.config import OrchestrationConfig
from chatrelay.core.errors import (
    AggregateFailure,
    ConfigurationError,
    ProviderError,
    ProviderTimeout,
    RequestCancelled,
)
from chatrelay.core.fallback import FallbackOrchestrator, aclose_if_supported
from chatrelay.core.registry import ProviderRegistry
from chatrelay.core.types import AttemptOutcome, TaskType
from chatrelay.llm.base import PollingProviderAdapter
from chatrelay.llm.provider_config import load_orchestration_config

from conftest import FakeChatAdapter, make_registry


class FakePoller(PollingProviderAdapter):
    """Job backend that finishes after `finish_after` polls (never when None)."""

    provider_id = "poller"

    def __init__(self, finish_after: Optional[int], **kwargs):
        super().__init__(**kwargs)
        self.finish_after = finish_after
        self.polls = 0
        self.dropped: list = []

    async def submit(self, request):
        return "job-1"

    async def poll(self, job_id):
        self.polls += 1
        if self.finish_after is not None and self.polls >= self.finish_after:
            return {"done": True, "value": "image-bytes"}
        return None

    async def collect(self, status, request):
        return status["value"]

    async def cancel_job(self, job_id):
        self.dropped.append(job_id)


async def _collect(chunks) -> list:
    return [chunk async for chunk in chunks]


class TestExecute:

    @pytest.mark.asyncio
    async def test_rate_limited_first_provider_falls_back(self, fast_config):
        """A fails with a rate limit, B succeeds, C is never called."""
        a = FakeChatAdapter("a", error=ProviderError("rate limit exceeded"))
        b = FakeChatAdapter("b", reply="from b")
        c = FakeChatAdapter("c")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b, c]), fast_config)

        result = await orchestrator.execute(TaskType.CHAT, None, "request")

        assert result.payload == "from b"
        assert result.provider_used == "b"
        assert [(r.provider_id, r.outcome) for r in result.attempts] == [
            ("a", AttemptOutcome.FAILURE),
            ("b", AttemptOutcome.SUCCESS),
        ]
        assert result.attempts[0].error_message == "rate limit exceeded"
        assert result.attempts[1].error_message is None
        assert (a.calls, b.calls, c.calls) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_preferred_provider_runs_first(self, fast_config):
        a = FakeChatAdapter("a")
        b = FakeChatAdapter("b", reply="from b")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        result = await orchestrator.execute(TaskType.CHAT, "b", "request")

        assert result.provider_used == "b"
        assert a.calls == 0
        assert len(result.attempts) == 1

    @pytest.mark.asyncio
    async def test_all_failures_record_every_attempt_in_order(self, fast_config):
        adapters = [
            FakeChatAdapter("a", error=ProviderError("A HTTP 500")),
            FakeChatAdapter("b", error=ValueError("bad payload")),
            FakeChatAdapter("c", error=ProviderError("invalid api key")),
        ]
        orchestrator = FallbackOrchestrator(make_registry(chat=adapters), fast_config)

        with pytest.raises(AggregateFailure) as exc_info:
            await orchestrator.execute(TaskType.CHAT, None, "request")

        failure = exc_info.value
        assert [r.provider_id for r in failure.attempts] == ["a", "b", "c"]
        assert all(r.outcome is AttemptOutcome.FAILURE for r in failure.attempts)
        assert failure.last_error_message == "invalid api key"
        assert failure.task_type == "chat"
        assert [adapter.calls for adapter in adapters] == [1, 1, 1]

        body = failure.to_dict()
        assert body["code"] == "ALL_PROVIDERS_FAILED"
        assert body["lastError"] == "invalid api key"
        assert len(body["attempts"]) == 3

    @pytest.mark.asyncio
    async def test_deadline_counts_as_timeout_and_cancels_call(self):
        slow = FakeChatAdapter("slow", delay=5)
        fast = FakeChatAdapter("fast", reply="quick")
        config = OrchestrationConfig(timeout_seconds=0.05)
        orchestrator = FallbackOrchestrator(make_registry(chat=[slow, fast]), config)

        result = await orchestrator.execute(TaskType.CHAT, None, "request")

        assert result.provider_used == "fast"
        assert result.attempts[0].outcome is AttemptOutcome.TIMEOUT
        assert slow.cancelled is True

    @pytest.mark.asyncio
    async def test_provider_timeout_error_is_recorded_as_timeout(self, fast_config):
        a = FakeChatAdapter("a", error=ProviderTimeout("A request timeout"))
        b = FakeChatAdapter("b")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        result = await orchestrator.execute(TaskType.CHAT, None, "request")

        assert result.attempts[0].outcome is AttemptOutcome.TIMEOUT
        assert result.attempts[0].error_message == "A request timeout"

    def test_media_tasks_use_media_deadline(self):
        config = OrchestrationConfig(timeout_seconds=1, media_timeout_seconds=90, task_timeouts={"video": 5})

        assert config.timeout_for(TaskType.CHAT) == 1
        assert config.timeout_for(TaskType.IMAGE) == 90
        assert config.timeout_for(TaskType.VIDEO) == 5

    @pytest.mark.asyncio
    async def test_prepare_args_runs_per_provider(self, fast_config):
        a = FakeChatAdapter("a", error=ProviderError("down"))
        b = FakeChatAdapter("b")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        await orchestrator.execute(
            TaskType.CHAT,
            None,
            "base",
            prepare_args=lambda descriptor, args: f"{args}:{descriptor.id}",
        )

        assert a.requests == ["base:a"]
        assert b.requests == ["base:b"]

    @pytest.mark.asyncio
    async def test_no_registered_providers(self, fast_config):
        orchestrator = FallbackOrchestrator(ProviderRegistry({}), fast_config)

        with pytest.raises(ConfigurationError):
            await orchestrator.execute(TaskType.IMAGE, None, "request")


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_attempt_stops_the_chain(self, fast_config):
        slow = FakeChatAdapter("slow", delay=0.5)
        backup = FakeChatAdapter("backup")
        orchestrator = FallbackOrchestrator(make_registry(chat=[slow, backup]), fast_config)
        cancel_event = asyncio.Event()

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)

        with pytest.raises(RequestCancelled):
            await orchestrator.execute(TaskType.CHAT, None, "request", cancel_event=cancel_event)

        assert slow.cancelled is True
        assert backup.calls == 0

    @pytest.mark.asyncio
    async def test_already_cancelled_invokes_nothing(self, fast_config):
        a = FakeChatAdapter("a")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a]), fast_config)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(RequestCancelled):
            await orchestrator.execute(TaskType.CHAT, None, "request", cancel_event=cancel_event)

        assert a.calls == 0

    @pytest.mark.asyncio
    async def test_unset_event_does_not_interfere(self, fast_config):
        a = FakeChatAdapter("a", reply="fine")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a]), fast_config)

        result = await orchestrator.execute(
            TaskType.CHAT, None, "request", cancel_event=asyncio.Event()
        )

        assert result.payload == "fine"


class TestOpenStream:

    @pytest.mark.asyncio
    async def test_first_chunk_marks_success(self, fast_config):
        a = FakeChatAdapter("a", chunks=("Hel", "lo"))
        orchestrator = FallbackOrchestrator(make_registry(chat=[a]), fast_config)

        handle = await orchestrator.open_stream(TaskType.CHAT, None, "request")

        assert handle.provider_used == "a"
        assert handle.attempts[0].outcome is AttemptOutcome.SUCCESS
        assert await _collect(handle.chunks) == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_failure_before_first_chunk_falls_back(self, fast_config):
        a = FakeChatAdapter("a", error=ProviderError("invalid api key"))
        b = FakeChatAdapter("b", chunks=("hi",))
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        handle = await orchestrator.open_stream(TaskType.CHAT, None, "request")

        assert handle.provider_used == "b"
        assert [r.outcome for r in handle.attempts] == [AttemptOutcome.FAILURE, AttemptOutcome.SUCCESS]
        assert a.closed is True
        assert await _collect(handle.chunks) == ["hi"]

    @pytest.mark.asyncio
    async def test_empty_stream_is_a_success(self, fast_config):
        a = FakeChatAdapter("a", chunks=())
        b = FakeChatAdapter("b")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        handle = await orchestrator.open_stream(TaskType.CHAT, None, "request")

        assert handle.provider_used == "a"
        assert await _collect(handle.chunks) == []
        assert b.calls == 0

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_is_not_retried(self, fast_config):
        a = FakeChatAdapter("a", chunks=("partial", "more"), fail_after=1)
        b = FakeChatAdapter("b")
        orchestrator = FallbackOrchestrator(make_registry(chat=[a, b]), fast_config)

        handle = await orchestrator.open_stream(TaskType.CHAT, None, "request")
        received = []
        with pytest.raises(RuntimeError):
            async for chunk in handle.chunks:
                received.append(chunk)

        assert received == ["partial"]
        assert b.calls == 0

    @pytest.mark.asyncio
    async def test_closing_handle_closes_upstream(self, fast_config):
        a = FakeChatAdapter("a", chunks=("one", "two", "three"))
        orchestrator = FallbackOrchestrator(make_registry(chat=[a]), fast_config)

        handle = await orchestrator.open_stream(TaskType.CHAT, None, "request")
        assert await handle.chunks.__anext__() == "one"
        await handle.chunks.aclose()

        assert a.closed is True

    @pytest.mark.asyncio
    async def test_aclose_if_supported(self):
        closed = []

        async def chunks():
            try:
                yield "one"
                yield "two"
            finally:
                closed.append(True)

        upstream = chunks()
        assert await upstream.__anext__() == "one"

        await aclose_if_supported(upstream)
        await aclose_if_supported(iter(["plain"]))

        assert closed == [True]

    @pytest.mark.asyncio
    async def test_aclose_if_supported_propagates_close_errors(self):
        class BrokenStream:
            async def aclose(self):
                raise RuntimeError("close failed")

        with pytest.raises(RuntimeError, match="close failed"):
            await aclose_if_supported(BrokenStream())


class TestPollingAdapter:

    @pytest.mark.asyncio
    async def test_completes_after_pending_polls(self):
        poller = FakePoller(finish_after=3, max_polls=5, poll_interval=0)

        assert await poller.invoke("request") == "image-bytes"
        assert poller.polls == 3
        assert poller.dropped == []

    @pytest.mark.asyncio
    async def test_poll_ceiling_raises_timeout_and_drops_job(self):
        poller = FakePoller(finish_after=None, max_polls=3, poll_interval=0)

        with pytest.raises(ProviderTimeout, match="timeout after 3 polls"):
            await poller.invoke("request")

        assert poller.polls == 3
        assert poller.dropped == ["job-1"]

    @pytest.mark.asyncio
    async def test_ceiling_is_one_timeout_attempt(self, fast_config):
        poller = FakePoller(finish_after=None, max_polls=2, poll_interval=0)
        backup = FakeChatAdapter("backup", reply="fallback image")
        orchestrator = FallbackOrchestrator(make_registry(image=[poller, backup]), fast_config)

        result = await orchestrator.execute(TaskType.IMAGE, None, "request")

        assert result.provider_used == "backup"
        assert result.attempts[0].outcome is AttemptOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancellation_during_poll_sleep_drops_job(self, fast_config):
        poller = FakePoller(finish_after=None, max_polls=10, poll_interval=1.0)
        orchestrator = FallbackOrchestrator(make_registry(image=[poller]), fast_config)
        cancel_event = asyncio.Event()

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)

        with pytest.raises(RequestCancelled):
            await orchestrator.execute(TaskType.IMAGE, None, "request", cancel_event=cancel_event)

        assert poller.dropped == ["job-1"]


class TestOrchestrationConfig:

    def test_defaults_ignore_environment(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "5")

        config = OrchestrationConfig()

        assert config.timeout_seconds == 30.0
        assert config.media_timeout_seconds == 90.0
        assert config.chunk_timeout_seconds is None
        assert config.poll_max_attempts == 30
        assert config.poll_interval_seconds == 2.0

    def test_loader_reads_environment(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("MEDIA_TIMEOUT_SECONDS", "45")
        monkeypatch.setenv("STREAM_CHUNK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("POLL_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0.5")

        config = load_orchestration_config()

        assert config.timeout_for(TaskType.CHAT) == 5.0
        assert config.timeout_for(TaskType.VIDEO) == 45.0
        assert config.chunk_timeout_seconds == 2.5
        assert config.poll_max_attempts == 7
        assert config.poll_interval_seconds == 0.5

    def test_loader_keeps_defaults_when_unset(self, monkeypatch):
        for name in (
            "PROVIDER_TIMEOUT_SECONDS",
            "MEDIA_TIMEOUT_SECONDS",
            "STREAM_CHUNK_TIMEOUT_SECONDS",
            "POLL_MAX_ATTEMPTS",
            "POLL_INTERVAL_SECONDS",
        ):
            monkeypatch.delenv(name, raising=False)

        assert load_orchestration_config() == OrchestrationConfig()
