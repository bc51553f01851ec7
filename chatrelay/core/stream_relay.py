"""Provider chunk stream -> ordered, terminated envelope stream.

Architectural role:
    Wraps one provider's live text chunks and re-emits them as envelopes for
    the wire encoder. Pull-based: the next chunk is requested only when the
    consumer asks for the next envelope, so backpressure needs no buffer.

Envelope contract:
    - `token(chunk)` for every non-empty chunk, in arrival order.
    - Exactly one terminal envelope: `end` on clean exhaustion, or
      `error(classified message)` when the upstream raises.
    - Nothing after a terminal envelope.
    - Downstream disconnect stops the pull loop without a terminal envelope.

Cancellation:
    The upstream iterator is closed in every exit path (exhaustion, error,
    disconnect, consumer `aclose()`, task cancellation) so the provider
    connection is released promptly.

Error classification:
    Heuristic, case-insensitive substring matching. The friendly message is
    what callers see; the raw text is logged and kept on `ClassifiedError.raw`.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from chatrelay.core.errors import StreamFailure
from chatrelay.core.fallback import aclose_if_supported
from chatrelay.core.types import Envelope


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CREDENTIAL = "credential"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"


# Checked in order; the first matching kind wins.
ERROR_PHRASES = (
    (ErrorKind.CREDENTIAL, ("api key", "api_key", "apikey", "unauthorized", "authentication")),
    (ErrorKind.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "too many requests", "quota")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
)

STATUS_BY_KIND = {
    ErrorKind.CREDENTIAL: 503,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 500,
    ErrorKind.UNCLASSIFIED: 500,
}


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    raw: str

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


def classify_error(error, provider_label: Optional[str] = None) -> ClassifiedError:
    """Map an exception or raw message to user-facing phrasing.

    Args:
        error: Exception instance or raw error text.
        provider_label: Provider name used in friendly messages.

    Returns:
        `ClassifiedError` with the matched kind, friendly message, and raw text.
    """
    raw = str(error) if not isinstance(error, str) else error
    if not raw and isinstance(error, BaseException):
        raw = error.__class__.__name__

    lowered = raw.lower()
    label = provider_label or "Provider"

    kind = ErrorKind.UNCLASSIFIED
    for candidate, phrases in ERROR_PHRASES:
        if any(phrase in lowered for phrase in phrases):
            kind = candidate
            break

    if isinstance(error, asyncio.TimeoutError) and kind is ErrorKind.UNCLASSIFIED:
        kind = ErrorKind.TIMEOUT

    if kind is ErrorKind.CREDENTIAL:
        message = f"{label} API key is invalid or not configured"
    elif kind is ErrorKind.RATE_LIMIT:
        message = f"{label} rate limit reached, please retry later"
    elif kind is ErrorKind.TIMEOUT:
        message = f"{label} request timed out, please retry"
    else:
        message = raw or "Unknown error"

    return ClassifiedError(kind=kind, message=message, raw=raw)


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND[kind]


class StreamRelay:
    """Async-iterable envelope stream over one provider's chunks.

    Args:
        upstream: The provider's ordered chunk iterator.
        provider_label: Name used in classified error messages.
        is_disconnected: Awaitable predicate checked before every pull.
        chunk_timeout: Optional idle limit for a single pull, in seconds.
    """

    def __init__(
        self,
        upstream: AsyncIterator[str],
        *,
        provider_label: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        chunk_timeout: Optional[float] = None,
    ):
        self._upstream = upstream
        self.provider_label = provider_label
        self._is_disconnected = is_disconnected
        self._chunk_timeout = chunk_timeout
        self.failure: Optional[StreamFailure] = None
        self.token_count = 0
        self._started = False

    def __aiter__(self) -> AsyncIterator[Envelope]:
        if self._started:
            raise RuntimeError("StreamRelay can only be iterated once")
        self._started = True
        return self._relay()

    async def _pull(self) -> str:
        if self._chunk_timeout is None:
            return await self._upstream.__anext__()
        return await asyncio.wait_for(self._upstream.__anext__(), self._chunk_timeout)

    async def _relay(self) -> AsyncIterator[Envelope]:
        try:
            while True:
                if self._is_disconnected is not None and await self._is_disconnected():
                    logger.info(
                        "Client disconnected after %d tokens; stopping %s stream",
                        self.token_count,
                        self.provider_label,
                    )
                    return

                try:
                    chunk = await self._pull()
                except StopAsyncIteration:
                    logger.info(
                        "%s stream finished: %d tokens", self.provider_label, self.token_count
                    )
                    yield Envelope.end()
                    return
                except Exception as exc:
                    classified = classify_error(exc, self.provider_label)
                    self.failure = StreamFailure(
                        classified.message,
                        details=classified.raw,
                        kind=classified.kind.value,
                    )
                    logger.warning(
                        "%s stream failed after %d tokens (%s): %s",
                        self.provider_label,
                        self.token_count,
                        classified.kind.value,
                        classified.raw,
                    )
                    yield Envelope.error(classified.message)
                    return

                # Empty deltas carry no text; skipping them keeps one token per envelope.
                if not chunk:
                    continue

                self.token_count += 1
                yield Envelope.token(str(chunk))
        finally:
            await aclose_if_supported(self._upstream)
