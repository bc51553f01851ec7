"""History truncation under message-count and token budgets.

Architectural role:
    Bounds a flat, ordered `Message` history before the engine hands it to a
    provider. Called once per provider attempt so each backend sees a history
    sized for its own `ContextConfig`.

Guarantees:
    - Output never holds more than `config.max_messages` messages.
    - Output fits `config.max_token_budget` unless only the newest message is
      left; that message is always kept so a conversation can continue.
    - Non-empty input never produces empty output.
    - `truncate_messages` is idempotent for a fixed config.

Strategies:
    - `recent`: drop oldest messages first.
    - `sliding_window`: keep whole (user, assistant) pairs, newest first.
    - `summary`: no summarization adapter exists yet; applies `recent` and logs
      that it did so.

Determinism:
    Pure functions over immutable messages; no I/O.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping, Optional, Sequence

from chatrelay.context.tokens import estimate_history
from chatrelay.core.types import Message, Role


logger = logging.getLogger(__name__)


class ContextStrategy(str, Enum):
    RECENT = "recent"
    SLIDING_WINDOW = "sliding_window"
    SUMMARY = "summary"


@dataclass(frozen=True)
class ContextConfig:
    """Budget for one (task type, provider) pairing.

    Attributes:
        max_messages: Upper bound on kept messages, at least 1.
        max_token_budget: Upper bound on `estimate_history`, at least 0.
        strategy: Truncation policy.

    Raises:
        ValueError: On out-of-range bounds.
    """

    max_messages: int
    max_token_budget: int
    strategy: ContextStrategy = ContextStrategy.RECENT

    def __post_init__(self):
        if self.max_messages < 1:
            raise ValueError(f"max_messages must be >= 1, got {self.max_messages}")
        if self.max_token_budget < 0:
            raise ValueError(
                f"max_token_budget must be >= 0, got {self.max_token_budget}"
            )
        if not isinstance(self.strategy, ContextStrategy):
            object.__setattr__(self, "strategy", ContextStrategy(self.strategy))


@dataclass(frozen=True)
class ContextStats:
    message_count: int
    estimated_tokens: int
    truncated: bool


def truncate_messages(messages: Sequence[Message], config: ContextConfig) -> list[Message]:
    """Bound a history according to `config.strategy`.

    Args:
        messages: Ordered history, oldest first.
        config: Budget and strategy.

    Returns:
        A new list, oldest first, satisfying the module guarantees.
    """
    if not messages:
        return []

    if config.strategy is ContextStrategy.SLIDING_WINDOW:
        return _truncate_sliding_window(messages, config)

    if config.strategy is ContextStrategy.SUMMARY:
        logger.warning(
            "Context strategy 'summary' is not implemented; applying 'recent' instead"
        )

    return _truncate_recent(messages, config)


def _truncate_recent(messages: Sequence[Message], config: ContextConfig) -> list[Message]:
    truncated = list(messages[-config.max_messages:])
    total = estimate_history(truncated)

    while len(truncated) > 1 and total > config.max_token_budget:
        truncated = truncated[1:]
        total = estimate_history(truncated)

    return truncated


def _group_turns(messages: Sequence[Message]) -> list[list[Message]]:
    """Group a history into ordered (user, assistant) turns.

    A user message opens a turn; the next assistant message closes it. A user
    message that is never answered forms its own turn, and an assistant message
    with no open user turn does as well.
    """
    groups: list[list[Message]] = []
    current: list[Message] = []

    for message in messages:
        if message.role is Role.USER:
            if current:
                groups.append(current)
            current = [message]
        elif len(current) == 1 and current[0].role is Role.USER:
            current.append(message)
            groups.append(current)
            current = []
        else:
            if current:
                groups.append(current)
                current = []
            groups.append([message])

    if current:
        groups.append(current)

    return groups


def _truncate_sliding_window(messages: Sequence[Message], config: ContextConfig) -> list[Message]:
    if (
        len(messages) <= config.max_messages
        and estimate_history(messages) <= config.max_token_budget
    ):
        return list(messages)

    kept: list[list[Message]] = []
    kept_messages = 0
    kept_tokens = 0

    for group in reversed(_group_turns(messages)):
        group_tokens = estimate_history(group)
        if (
            kept_tokens + group_tokens > config.max_token_budget
            or kept_messages + len(group) > config.max_messages
        ):
            break
        kept.append(group)
        kept_messages += len(group)
        kept_tokens += group_tokens

    if not kept:
        # Forward progress: the newest message always survives.
        return [messages[-1]]

    return [message for group in reversed(kept) for message in group]


def context_stats(messages: Sequence[Message], config: ContextConfig) -> ContextStats:
    """Describe a history against a budget without modifying it."""
    count = len(messages)
    tokens = estimate_history(messages)
    return ContextStats(
        message_count=count,
        estimated_tokens=tokens,
        truncated=count > config.max_messages or tokens > config.max_token_budget,
    )


def format_context_stats(stats: ContextStats) -> str:
    suffix = " (truncated)" if stats.truncated else ""
    return f"{stats.message_count} messages, ~{stats.estimated_tokens} tokens{suffix}"


def resolve_context_config(
    provider_id: str,
    configs: Optional[Mapping[str, ContextConfig]] = None,
    **overrides,
) -> ContextConfig:
    """Return a provider's default config with optional field overrides.

    Unknown providers fall back to `FALLBACK_CONTEXT_CONFIG` from configuration.
    """
    if configs is None:
        from chatrelay.llm.provider_config import CONTEXT_CONFIGS
        configs = CONTEXT_CONFIGS

    from chatrelay.llm.provider_config import FALLBACK_CONTEXT_CONFIG

    config = configs.get(provider_id, FALLBACK_CONTEXT_CONFIG)
    present = {key: value for key, value in overrides.items() if value is not None}
    if present:
        config = replace(config, **present)
    return config


def prepare_context(
    messages: Sequence[Message],
    provider_id: str,
    configs: Optional[Mapping[str, ContextConfig]] = None,
    **overrides,
) -> list[Message]:
    """Truncate a history for one provider and log when anything was dropped."""
    config = resolve_context_config(provider_id, configs, **overrides)
    bounded = truncate_messages(messages, config)

    if len(bounded) < len(messages):
        logger.info(
            "Context truncated for provider=%s strategy=%s: %d -> %d messages (budget=%d tokens)",
            provider_id,
            config.strategy.value,
            len(messages),
            len(bounded),
            config.max_token_budget,
        )

    return bounded
