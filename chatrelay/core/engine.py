"""Request handling composition root.

Architectural role:
    Provides the per-request pipeline used by the API adapter to turn one
    validated turn into either an opened envelope stream (chat) or a final
    payload (image, video, optimize).

Control-flow model:
    1. Validate input (emptiness, length ceilings, provider ids) before any
       provider is touched.
    2. Bound the history per provider attempt with the context truncator.
    3. Walk the task's fallback chain through `FallbackOrchestrator`.
    4. For chat, wrap the opened provider stream in a `StreamRelay`.

Wiring:
    `build_registry` instantiates every adapter once and builds the immutable
    `ProviderRegistry`; `create_engine` composes registry, orchestrator, and
    configuration. Tests inject their own registry instead.

Side effects:
    None of its own; network I/O happens inside provider adapters.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import httpx

from chatrelay.context.truncation import (
    ContextConfig,
    context_stats,
    format_context_stats,
    prepare_context,
    resolve_context_config,
    truncate_messages,
)
from chatrelay.core.config import OrchestrationConfig
from chatrelay.core.errors import ErrorCode, ValidationError
from chatrelay.core.fallback import FallbackOrchestrator
from chatrelay.core.registry import ProviderRegistry
from chatrelay.core.stream_relay import StreamRelay
from chatrelay.core.types import (
    ChatInvocation,
    GenerationResult,
    MediaRequest,
    Message,
    ProviderDescriptor,
    Role,
    TaskType,
    utcnow,
)
from chatrelay.llm.client import build_chat_adapters
from chatrelay.llm.provider_config import (
    CHAT_PROVIDERS,
    CONTEXT_CONFIGS,
    MAX_CHAT_MESSAGE_CHARS,
    MAX_IMAGE_PROMPT_CHARS,
    MAX_OPTIMIZE_PROMPT_CHARS,
    MAX_VIDEO_PROMPT_CHARS,
    OPTIMIZE_MAX_TOKENS,
    OPTIMIZE_TEMPERATURE,
    load_orchestration_config,
)
from chatrelay.media.service import build_image_adapters, build_video_adapters
from chatrelay.prompting.prompt_builder import build_optimize_messages, describe_improvements


logger = logging.getLogger(__name__)

DEFAULT_OPTIMIZE_PROVIDER = "openai"


@dataclass(frozen=True)
class ChatTurn:
    """One incoming chat turn.

    Attributes:
        message: New user message text.
        provider_id: Preferred chat provider.
        history: Prior messages, oldest first, owned by the session store.
        temperature: Optional sampling override.
        max_tokens: Optional output cap override.
    """

    message: str
    provider_id: str
    history: tuple = ()
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatSession:
    """An opened chat stream ready to be relayed to the caller."""

    provider_used: str
    attempts: tuple
    relay: StreamRelay
    started_at: Any = field(default_factory=utcnow)


@dataclass(frozen=True)
class OptimizeResult:
    original: str
    optimized: str
    improvements: list
    provider_used: str
    requested_provider: str
    attempts: tuple
    timestamp: Any


def _require_text(value: Optional[str], field_name: str, ceiling: int) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{field_name} must not be empty",
            code=ErrorCode.VALIDATION_EMPTY_INPUT,
            field=field_name,
        )
    if len(value) > ceiling:
        raise ValidationError(
            f"{field_name} must not exceed {ceiling} characters",
            code=ErrorCode.VALIDATION_TOO_LONG,
            field=field_name,
            length=len(value),
            limit=ceiling,
        )
    return value


class ChatRelayEngine:
    """Per-request orchestration over an injected provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[OrchestrationConfig] = None,
        context_configs: Optional[Mapping[str, ContextConfig]] = None,
        orchestrator: Optional[FallbackOrchestrator] = None,
        max_chat_chars: int = MAX_CHAT_MESSAGE_CHARS,
    ):
        self.registry = registry
        self.config = config or load_orchestration_config()
        self.context_configs = CONTEXT_CONFIGS if context_configs is None else context_configs
        self.orchestrator = orchestrator or FallbackOrchestrator(registry, self.config)
        self.max_chat_chars = max_chat_chars

    # -----------------------------------------------------
    # Validation
    # -----------------------------------------------------

    def _require_provider(self, task_type: TaskType, provider_id: Optional[str]) -> str:
        if not provider_id or not self.registry.has(task_type, provider_id):
            supported = [descriptor.id for descriptor in self.registry.providers(task_type)]
            raise ValidationError(
                f"Unsupported provider: {provider_id}",
                code=ErrorCode.VALIDATION_UNKNOWN_PROVIDER,
                task=task_type.value,
                supported=supported,
            )
        return provider_id

    # -----------------------------------------------------
    # Chat
    # -----------------------------------------------------

    def _chat_args(self, turn: ChatTurn) -> Callable[[ProviderDescriptor, Sequence[Message]], ChatInvocation]:
        def prepare(descriptor: ProviderDescriptor, messages: Sequence[Message]) -> ChatInvocation:
            bounded = prepare_context(messages, descriptor.id, self.context_configs)
            return ChatInvocation(
                messages=tuple(message.to_wire() for message in bounded),
                temperature=turn.temperature,
                max_tokens=turn.max_tokens,
            )

        return prepare

    async def start_chat(
        self,
        turn: ChatTurn,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> ChatSession:
        """Validate a turn and open a provider stream for it.

        Raises:
            ValidationError: Empty/oversized message or unknown provider.
            AggregateFailure: No chat provider could open a stream.
            RequestCancelled: The caller disconnected during fallback.
        """
        _require_text(turn.message, "message", self.max_chat_chars)
        self._require_provider(TaskType.CHAT, turn.provider_id)

        messages = list(turn.history) + [Message(role=Role.USER, content=turn.message)]

        stats = context_stats(
            messages, resolve_context_config(turn.provider_id, self.context_configs)
        )
        logger.info(
            "Chat turn for %s: %s", turn.provider_id, format_context_stats(stats)
        )

        handle = await self.orchestrator.open_stream(
            TaskType.CHAT,
            turn.provider_id,
            messages,
            prepare_args=self._chat_args(turn),
            cancel_event=cancel_event,
        )

        relay = StreamRelay(
            handle.chunks,
            provider_label=handle.provider_used,
            is_disconnected=is_disconnected,
            chunk_timeout=self.config.chunk_timeout_seconds,
        )
        return ChatSession(
            provider_used=handle.provider_used,
            attempts=handle.attempts,
            relay=relay,
        )

    def context_summary(self, provider_id: str, history: Sequence[Message]) -> dict:
        """Describe how a history would be bounded for one chat provider."""
        self._require_provider(TaskType.CHAT, provider_id)
        config = resolve_context_config(provider_id, self.context_configs)
        stats = context_stats(history, config)
        bounded = truncate_messages(history, config)
        return {
            "providerId": provider_id,
            "messageCount": stats.message_count,
            "estimatedTokens": stats.estimated_tokens,
            "truncated": stats.truncated,
            "keptMessages": len(bounded),
            "summary": format_context_stats(stats),
            "config": {
                "maxMessages": config.max_messages,
                "maxTokens": config.max_token_budget,
                "strategy": config.strategy.value,
            },
        }

    # -----------------------------------------------------
    # Media
    # -----------------------------------------------------

    def _preferred_image_provider(self, model: Optional[str]) -> Optional[str]:
        if not model:
            return None
        for candidate in (model, f"huggingface:{model}"):
            if self.registry.has(TaskType.IMAGE, candidate):
                return candidate
        raise ValidationError(
            f"Unsupported image model: {model}",
            code=ErrorCode.VALIDATION_UNKNOWN_PROVIDER,
            supported=[descriptor.id for descriptor in self.registry.providers(TaskType.IMAGE)],
        )

    async def generate_image(
        self,
        prompt: str,
        width: int,
        height: int,
        model: Optional[str] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        _require_text(prompt, "prompt", MAX_IMAGE_PROMPT_CHARS)
        preferred = self._preferred_image_provider(model)

        logger.info("Image generation requested: %dx%d preferred=%s", width, height, preferred)
        return await self.orchestrator.execute(
            TaskType.IMAGE,
            preferred,
            MediaRequest(prompt=prompt, width=width, height=height, model=None),
            cancel_event=cancel_event,
        )

    async def generate_video(
        self,
        prompt: str,
        width: int,
        height: int,
        duration: int,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        _require_text(prompt, "prompt", MAX_VIDEO_PROMPT_CHARS)

        logger.info("Video generation requested: %dx%d duration=%ds", width, height, duration)
        return await self.orchestrator.execute(
            TaskType.VIDEO,
            None,
            MediaRequest(prompt=prompt, width=width, height=height, duration=duration),
            cancel_event=cancel_event,
        )

    # -----------------------------------------------------
    # Optimize
    # -----------------------------------------------------

    async def optimize_prompt(
        self,
        prompt: str,
        provider_id: Optional[str] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OptimizeResult:
        _require_text(prompt, "prompt", MAX_OPTIMIZE_PROMPT_CHARS)
        requested = provider_id or DEFAULT_OPTIMIZE_PROVIDER
        self._require_provider(TaskType.OPTIMIZE, requested)

        messages = build_optimize_messages(prompt)

        def prepare(descriptor: ProviderDescriptor, base: tuple) -> ChatInvocation:
            model = CHAT_PROVIDERS.get(descriptor.id, {}).get("optimize_model")
            return ChatInvocation(
                messages=base,
                temperature=OPTIMIZE_TEMPERATURE,
                max_tokens=OPTIMIZE_MAX_TOKENS,
                model=model,
            )

        result = await self.orchestrator.execute(
            TaskType.OPTIMIZE,
            requested,
            messages,
            prepare_args=prepare,
            cancel_event=cancel_event,
        )

        optimized = str(result.payload).strip()
        return OptimizeResult(
            original=prompt,
            optimized=optimized,
            improvements=describe_improvements(prompt, optimized),
            provider_used=result.provider_used,
            requested_provider=requested,
            attempts=result.attempts,
            timestamp=result.timestamp,
        )


def build_registry(
    config: Optional[OrchestrationConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Instantiate every configured adapter once and register it per task.

    Chat and optimize share adapter instances; priority follows configuration
    order.
    """
    config = config or load_orchestration_config()
    chat_adapters = build_chat_adapters(transport=transport)

    chat = [
        ProviderDescriptor(
            id=provider_id,
            display_name=CHAT_PROVIDERS[provider_id]["display_name"],
            priority=index,
            adapter=adapter,
        )
        for index, (provider_id, adapter) in enumerate(chat_adapters.items())
    ]

    def describe(pairs):
        return [
            ProviderDescriptor(
                id=adapter.provider_id, display_name=name, priority=index, adapter=adapter
            )
            for index, (name, adapter) in enumerate(pairs)
        ]

    return ProviderRegistry({
        TaskType.CHAT: chat,
        TaskType.OPTIMIZE: chat,
        TaskType.IMAGE: describe(build_image_adapters(config, transport)),
        TaskType.VIDEO: describe(build_video_adapters(config, transport)),
    })


def create_engine(
    config: Optional[OrchestrationConfig] = None,
    registry: Optional[ProviderRegistry] = None,
) -> ChatRelayEngine:
    config = config or load_orchestration_config()
    registry = registry or build_registry(config)
    return ChatRelayEngine(registry, config=config)
