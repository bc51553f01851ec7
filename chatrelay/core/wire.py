"""Server-sent event framing for envelopes.

Wire form:
    One frame per envelope: `data: {"type": "<token|end|error>", "data": "<text>"}`
    followed by a blank line. Encoding is pure and stateless; decoding tolerates
    frames split across arbitrary network chunk boundaries.
"""

import json
import logging
from typing import Callable, Iterable, Iterator, Optional

from chatrelay.core.types import Envelope, EnvelopeType


logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
FRAME_SEPARATOR = "\n\n"


def encode_event(envelope: Envelope) -> str:
    payload = json.dumps(
        {"type": envelope.type.value, "data": envelope.data},
        ensure_ascii=False,
    )
    return f"{DATA_PREFIX}{payload}{FRAME_SEPARATOR}"


def decode_frame(line: str) -> Optional[Envelope]:
    """Parse one `data: ...` line; returns `None` for anything else."""
    line = line.strip()
    if not line.startswith(DATA_PREFIX.strip()):
        return None

    body = line[len(DATA_PREFIX.strip()):].strip()
    try:
        data = json.loads(body)
        return Envelope(EnvelopeType(data["type"]), str(data.get("data") or ""))
    except (ValueError, KeyError, TypeError):
        logger.warning("Skipping malformed event frame: %r", line[:200])
        return None


def decode_events(lines: Iterable[str]) -> Iterator[Envelope]:
    """Decode envelopes from an iterator of text lines (e.g. `iter_lines`)."""
    for line in lines:
        if not line:
            continue
        envelope = decode_frame(line)
        if envelope is not None:
            yield envelope


class EventStreamDecoder:
    """Incremental decoder for raw text chunks of an event stream."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> list:
        self._buffer += text.replace("\r\n", "\n")
        envelopes = []

        while FRAME_SEPARATOR in self._buffer:
            frame, self._buffer = self._buffer.split(FRAME_SEPARATOR, 1)
            for line in frame.split("\n"):
                envelope = decode_frame(line)
                if envelope is not None:
                    envelopes.append(envelope)

        return envelopes


def dispatch(
    envelope: Envelope,
    on_token: Callable[[str], None],
    on_end: Optional[Callable[[], None]] = None,
    on_error: Optional[Callable[[str], None]] = None,
) -> None:
    if envelope.type is EnvelopeType.TOKEN:
        on_token(envelope.data)
    elif envelope.type is EnvelopeType.END:
        if on_end is not None:
            on_end()
    elif on_error is not None:
        on_error(envelope.data)
