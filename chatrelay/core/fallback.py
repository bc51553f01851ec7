"""Sequential try-next-on-failure driver over registry entries.

Architectural role:
    Given a task type and an optional preferred provider, walks the registry's
    fallback order and returns the first successful provider's output together
    with an ordered audit trail of every attempt.

Control flow:
    1. `registry.get_order(task_type, preferred_id)`.
    2. For each provider: derive provider-specific args (`prepare_args`), call
       the adapter under a per-attempt deadline, record the outcome.
    3. Return on the first success; never call another provider afterwards.
    4. Raise `AggregateFailure` when the list is exhausted.

Streaming:
    `open_stream` runs the same chain over `adapter.stream()`. An attempt
    succeeds once the provider yields its first chunk (or ends cleanly with
    none). Errors after that point are the stream relay's concern; partial
    output is already committed and there is nothing to fall back to.

Concurrency:
    Strictly sequential; providers are never raced. When a `cancel_event` is
    set while an attempt is in flight, the attempt task is cancelled and
    `RequestCancelled` is raised without trying further providers.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from chatrelay.core.config import OrchestrationConfig
from chatrelay.core.errors import (
    AggregateFailure,
    ConfigurationError,
    ErrorCode,
    ProviderTimeout,
    RequestCancelled,
)
from chatrelay.core.registry import ProviderRegistry
from chatrelay.core.types import (
    AttemptOutcome,
    AttemptRecord,
    GenerationResult,
    ProviderDescriptor,
    TaskType,
    utcnow,
)


logger = logging.getLogger(__name__)

PrepareArgs = Callable[[ProviderDescriptor, Any], Any]


@dataclass(frozen=True)
class StreamHandle:
    """An opened provider stream plus the attempts it took to open it."""

    provider_used: str
    attempts: tuple
    chunks: AsyncIterator[str]


async def aclose_if_supported(iterator: Any) -> None:
    """Close an async iterator if it supports `aclose`."""
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


async def _empty_stream() -> AsyncIterator[str]:
    return
    yield


async def _prepend(first: str, upstream: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        yield first
        async for chunk in upstream:
            yield chunk
    finally:
        await aclose_if_supported(upstream)


class FallbackOrchestrator:
    """Walks one fallback chain per call. Stateless between calls."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[OrchestrationConfig] = None,
        clock: Callable[[], Any] = utcnow,
    ):
        self.registry = registry
        self.config = config or OrchestrationConfig()
        self._clock = clock

    async def execute(
        self,
        task_type: TaskType,
        preferred_id: Optional[str],
        invoke_args: Any,
        *,
        prepare_args: Optional[PrepareArgs] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """Run a non-streaming fallback chain.

        Args:
            task_type: Task family whose providers are tried.
            preferred_id: Provider to try first, if registered.
            invoke_args: Request handed to `adapter.invoke`.
            prepare_args: Optional `(descriptor, invoke_args) -> args` hook.
            cancel_event: Set by the caller when the downstream went away.

        Returns:
            `GenerationResult` of the first successful provider.

        Raises:
            AggregateFailure: Every provider failed or timed out.
            RequestCancelled: `cancel_event` was set before any success.
        """

        async def call(descriptor: ProviderDescriptor, args: Any) -> Any:
            return await descriptor.adapter.invoke(args)

        payload, provider_used, attempts = await self._run_chain(
            TaskType(task_type), preferred_id, invoke_args, call, prepare_args, cancel_event
        )
        return GenerationResult(payload=payload, provider_used=provider_used, attempts=attempts)

    async def open_stream(
        self,
        task_type: TaskType,
        preferred_id: Optional[str],
        invoke_args: Any,
        *,
        prepare_args: Optional[PrepareArgs] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StreamHandle:
        """Run a fallback chain that ends with an opened chunk stream."""

        async def call(descriptor: ProviderDescriptor, args: Any) -> AsyncIterator[str]:
            upstream = descriptor.adapter.stream(args)
            try:
                first = await upstream.__anext__()
            except StopAsyncIteration:
                return _empty_stream()
            except BaseException:
                await aclose_if_supported(upstream)
                raise
            return _prepend(first, upstream)

        chunks, provider_used, attempts = await self._run_chain(
            TaskType(task_type), preferred_id, invoke_args, call, prepare_args, cancel_event
        )
        return StreamHandle(provider_used=provider_used, attempts=attempts, chunks=chunks)

    async def _run_chain(
        self,
        task_type: TaskType,
        preferred_id: Optional[str],
        invoke_args: Any,
        call: Callable[[ProviderDescriptor, Any], Awaitable[Any]],
        prepare_args: Optional[PrepareArgs],
        cancel_event: Optional[asyncio.Event],
    ):
        order = self.registry.get_order(task_type, preferred_id)
        if not order:
            raise ConfigurationError(
                f"No providers registered for task {task_type.value}",
                code=ErrorCode.CONFIG_INVALID,
            )

        timeout = self.config.timeout_for(task_type)
        attempts: list[AttemptRecord] = []

        for descriptor in order:
            started_at = self._clock()
            logger.info("[%s] trying provider %s", task_type.value, descriptor.id)

            try:
                args = prepare_args(descriptor, invoke_args) if prepare_args else invoke_args
                result = await self._attempt(call(descriptor, args), timeout, cancel_event)

            except RequestCancelled:
                logger.info(
                    "[%s] cancelled during provider %s after %d attempts",
                    task_type.value,
                    descriptor.id,
                    len(attempts),
                )
                raise

            except (asyncio.TimeoutError, ProviderTimeout) as exc:
                message = str(exc) or f"{descriptor.id} timeout after {timeout:g}s"
                attempts.append(
                    AttemptRecord(descriptor.id, started_at, AttemptOutcome.TIMEOUT, message)
                )
                logger.warning("[%s] provider %s timed out: %s", task_type.value, descriptor.id, message)

            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                attempts.append(
                    AttemptRecord(descriptor.id, started_at, AttemptOutcome.FAILURE, message)
                )
                logger.warning("[%s] provider %s failed: %s", task_type.value, descriptor.id, message)

            else:
                attempts.append(AttemptRecord(descriptor.id, started_at, AttemptOutcome.SUCCESS))
                logger.info(
                    "[%s] provider %s succeeded (attempt %d of %d)",
                    task_type.value,
                    descriptor.id,
                    len(attempts),
                    len(order),
                )
                return result, descriptor.id, tuple(attempts)

        logger.error(
            "[%s] all %d providers failed, last error: %s",
            task_type.value,
            len(attempts),
            attempts[-1].error_message,
        )
        raise AggregateFailure(task_type.value, attempts, attempts[-1].error_message)

    async def _attempt(
        self,
        coro: Awaitable[Any],
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> Any:
        """Await one provider call under the deadline, racing the cancel signal."""
        if cancel_event is None:
            return await asyncio.wait_for(coro, timeout)

        if cancel_event.is_set():
            coro.close()
            raise RequestCancelled("Request cancelled before a provider succeeded")

        call_task = asyncio.ensure_future(asyncio.wait_for(coro, timeout))
        cancel_task = asyncio.ensure_future(cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if call_task in done:
            return call_task.result()

        call_task.cancel()
        await asyncio.gather(call_task, return_exceptions=True)
        raise RequestCancelled("Request cancelled before a provider succeeded")
