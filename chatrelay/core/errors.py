"""Exception taxonomy for the orchestration layer.

Architectural role:
    Defines the error classes raised between the API adapter, the engine, the
    fallback orchestrator, and provider adapters. Each class carries a stable
    `ErrorCode` plus the HTTP status the API adapter maps it to.

Taxonomy:
    - `ValidationError`: malformed caller input, rejected before any provider runs.
    - `ConfigurationError`: missing credentials or invalid runtime configuration.
    - `ProviderError` / `ProviderTimeout`: one backend failed; triggers fallback.
    - `AggregateFailure`: every provider in a chain failed.
    - `StreamFailure`: failure after streaming started (reported in-stream only).
    - `RequestCancelled`: downstream disconnected; no retry follows.
"""

from enum import Enum
from typing import Any, Optional, Sequence


class ErrorCode(str, Enum):
    """Stable error codes exposed in JSON error bodies."""

    VALIDATION_EMPTY_INPUT = "VALIDATION_EMPTY_INPUT"
    VALIDATION_TOO_LONG = "VALIDATION_TOO_LONG"
    VALIDATION_UNKNOWN_PROVIDER = "VALIDATION_UNKNOWN_PROVIDER"
    VALIDATION_INVALID_FIELD = "VALIDATION_INVALID_FIELD"

    CONFIG_MISSING_CREDENTIAL = "CONFIG_MISSING_CREDENTIAL"
    CONFIG_INVALID = "CONFIG_INVALID"

    PROVIDER_FAILED = "PROVIDER_FAILED"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_BAD_RESPONSE = "PROVIDER_BAD_RESPONSE"

    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    STREAM_FAILED = "STREAM_FAILED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"

    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"


class ChatRelayError(Exception):
    """Base exception for all orchestration errors.

    Attributes:
        code: The ErrorCode categorizing this error.
        message: Human-readable error message.
        details: Optional additional context for the caller.
        status_code: HTTP status used when the error reaches the API adapter.
        context: Additional debugging information.
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        if code is not None:
            self.code = code

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "context": self.context,
        }


class ValidationError(ChatRelayError):
    """Caller input is malformed. Never retried."""

    code = ErrorCode.VALIDATION_INVALID_FIELD
    status_code = 400


class ConfigurationError(ChatRelayError):
    """Credentials or runtime configuration are missing or unusable."""

    code = ErrorCode.CONFIG_MISSING_CREDENTIAL
    status_code = 503


class ProviderError(ChatRelayError):
    """One backend failed for one attempt.

    The message keeps the raw backend text so error classification and
    diagnostics can both work from it.
    """

    code = ErrorCode.PROVIDER_FAILED
    status_code = 502

    def __init__(self, message: str, provider_id: Optional[str] = None, **kwargs: Any):
        self.provider_id = provider_id
        super().__init__(message, **kwargs)


class ProviderTimeout(ProviderError):
    """A provider exceeded its deadline or its internal polling ceiling."""

    code = ErrorCode.PROVIDER_TIMEOUT
    status_code = 504


class AggregateFailure(ChatRelayError):
    """Every provider in a fallback chain failed.

    Attributes:
        attempts: Ordered attempt records, one per provider tried.
        last_error_message: Raw error text of the last provider tried.
    """

    code = ErrorCode.ALL_PROVIDERS_FAILED
    status_code = 500

    def __init__(self, task_type: str, attempts: Sequence[Any], last_error_message: str):
        self.task_type = task_type
        self.attempts = tuple(attempts)
        self.last_error_message = last_error_message
        super().__init__(
            f"All {task_type} providers failed, last error: {last_error_message}",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["lastError"] = self.last_error_message
        data["attempts"] = [attempt.to_dict() for attempt in self.attempts]
        return data


class StreamFailure(ChatRelayError):
    """Upstream failed after output was already committed to the caller."""

    code = ErrorCode.STREAM_FAILED


class RequestCancelled(ChatRelayError):
    """Downstream consumer went away before a provider succeeded."""

    code = ErrorCode.REQUEST_CANCELLED
    status_code = 499
