"""Data contracts shared by the context, orchestration, and API layers.

Architectural role:
    Defines the immutable records that flow through one request: chat messages,
    provider descriptors, attempt records, generation results, and stream
    envelopes.

Determinism:
    All types are plain frozen data classes; they hold no hidden state and are
    safe to share across concurrent requests.
"""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from chatrelay.llm.base import ProviderAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TaskType(str, Enum):
    """Task families that own a separate provider fallback chain."""

    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"
    OPTIMIZE = "optimize"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class EnvelopeType(str, Enum):
    TOKEN = "token"
    END = "end"
    ERROR = "error"


@dataclass(frozen=True)
class Message:
    """One conversation turn as received from the session store.

    Attributes:
        id: Caller-assigned identifier (generated when absent).
        role: `user` or `assistant`.
        content: Message text.
        timestamp: Creation time.
        provider_id: Provider that produced an assistant message, if known.
    """

    role: Role
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=utcnow)
    provider_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    def to_wire(self) -> dict:
        """Role-tagged form handed to model invocation adapters."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ChatInvocation:
    """Provider-agnostic text request handed to chat adapters.

    Attributes:
        messages: Role-tagged dicts (`system`, `user`, `assistant`) in order.
        temperature: Sampling temperature, provider default when `None`.
        max_tokens: Output cap, provider default when `None`.
        model: Model override, provider default when `None`.
    """

    messages: tuple
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class MediaRequest:
    """Provider-agnostic image/video request handed to media adapters."""

    prompt: str
    width: int
    height: int
    duration: int = 1
    model: Optional[str] = None


@dataclass(frozen=True)
class ProviderDescriptor:
    """Registry entry for one backend within one task family."""

    id: str
    display_name: str
    priority: int
    adapter: "ProviderAdapter"


@dataclass(frozen=True)
class AttemptRecord:
    """Audit entry for one provider call inside a fallback chain."""

    provider_id: str
    started_at: datetime
    outcome: AttemptOutcome
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "providerId": self.provider_id,
            "outcome": self.outcome.value,
            "startedAt": self.started_at.isoformat(),
        }
        if self.error_message is not None:
            data["error"] = self.error_message
        return data


@dataclass(frozen=True)
class GenerationResult:
    """Final payload of a successful fallback chain plus its audit trail."""

    payload: Any
    provider_used: str
    attempts: tuple[AttemptRecord, ...]
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MediaPayload:
    """Raw generated media bytes with their MIME type."""

    mime_type: str
    data: bytes
    frames: int = 1
    note: Optional[str] = None

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class Envelope:
    """One unit of streamed output."""

    type: EnvelopeType
    data: str = ""

    @classmethod
    def token(cls, chunk: str) -> "Envelope":
        return cls(EnvelopeType.TOKEN, chunk)

    @classmethod
    def end(cls) -> "Envelope":
        return cls(EnvelopeType.END, "")

    @classmethod
    def error(cls, message: str) -> "Envelope":
        return cls(EnvelopeType.ERROR, message)

    @property
    def is_terminal(self) -> bool:
        return self.type is not EnvelopeType.TOKEN
