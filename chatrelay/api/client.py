"""
Blocking HTTP client for a running ChatRelay server.

Architectural role:
- Used by the terminal CLI to talk to the HTTP surface.
- Decodes the SSE envelope stream of `POST /api/chat` incrementally with
  `requests` streaming (`iter_lines`).

Error handling strategy:
- Non-2xx responses raise `RelayAPIError` carrying the server's JSON error.
- Transport failures propagate as `requests` exceptions to the caller.
- A stream that ends without a terminal frame yields a synthesized `error`
  envelope so callers always observe exactly one terminal envelope.
"""

import logging
from typing import Iterator, Optional, Sequence

import requests

from chatrelay.core.errors import ChatRelayError, ErrorCode
from chatrelay.core.types import Envelope, Message
from chatrelay.core.wire import decode_events


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"


class RelayAPIError(ChatRelayError):
    """Server answered a request with an error status."""

    def __init__(self, message: str, status_code: int, code: Optional[ErrorCode] = None, **context):
        super().__init__(message, code=code, **context)
        self.status_code = status_code


def _raise_for_error(response: requests.Response) -> None:
    if response.ok:
        return

    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text[:300]}

    code = body.get("code")
    try:
        code = ErrorCode(code) if code else None
    except ValueError:
        code = None

    raise RelayAPIError(
        body.get("error") or f"HTTP {response.status_code}",
        status_code=response.status_code,
        code=code,
    )


def _history_payload(history: Sequence[Message]) -> list:
    return [
        {
            "id": message.id,
            "role": message.role.value,
            "content": message.content,
            "timestamp": message.timestamp.isoformat(),
            "providerId": message.provider_id,
        }
        for message in history
    ]


class RelayClient:
    """Thin wrapper around the ChatRelay HTTP endpoints."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 120, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.last_provider: Optional[str] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def stream_chat(
        self,
        message: str,
        provider_id: str,
        history: Sequence[Message] = (),
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[Envelope]:
        """Send one chat turn and yield envelopes as they arrive."""
        payload = {
            "message": message,
            "providerId": provider_id,
            "history": _history_payload(history),
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["maxTokens"] = max_tokens

        with self.session.post(
            self._url("/api/chat"),
            json=payload,
            stream=True,
            timeout=self.timeout,
        ) as response:

            _raise_for_error(response)
            response.encoding = "utf-8"
            self.last_provider = response.headers.get("X-Provider-Used")

            for envelope in decode_events(response.iter_lines(decode_unicode=True)):
                yield envelope
                if envelope.is_terminal:
                    return

        logger.warning("Chat stream closed without a terminal frame")
        yield Envelope.error("Connection closed before the response finished")

    def _post(self, path: str, payload: dict) -> dict:
        response = self.session.post(self._url(path), json=payload, timeout=self.timeout)
        _raise_for_error(response)
        return response.json()

    def generate_image(self, prompt: str, width: Optional[int] = None, height: Optional[int] = None) -> dict:
        payload = {"prompt": prompt}
        if width:
            payload["width"] = width
        if height:
            payload["height"] = height
        return self._post("/api/generate/image", payload)

    def optimize_prompt(self, prompt: str, provider: Optional[str] = None) -> dict:
        payload = {"prompt": prompt}
        if provider:
            payload["provider"] = provider
        return self._post("/api/optimize-prompt", payload)

    def list_models(self) -> dict:
        response = self.session.get(self._url("/api/models"), timeout=self.timeout)
        _raise_for_error(response)
        return response.json()
