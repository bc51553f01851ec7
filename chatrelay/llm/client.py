"""Provider-specific transport adapters for chat/text requests.

Architectural role:
    Executes HTTP requests against configured chat providers and normalizes
    response materialization for streaming and non-streaming paths.

Model invocation flow:
    `FallbackOrchestrator` -> `adapter.invoke(ChatInvocation)` or
    `adapter.stream(ChatInvocation)` -> provider branch (OpenAI-compatible /
    Gemini) -> parsed text or streamed deltas.

Retry behavior:
    No retry loop is implemented. Each call is attempted once; the orchestrator
    owns the deadline and the move to the next provider.

Failure handling model:
    Missing credentials raise `ConfigurationError`. Non-2xx responses, transport
    errors, and malformed bodies raise `ProviderError` (or `ProviderTimeout`)
    whose text keeps the provider label and status for classification.
"""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

import httpx

from chatrelay.core.errors import ConfigurationError, ProviderError, ProviderTimeout
from chatrelay.core.types import ChatInvocation
from chatrelay.llm.base import ProviderAdapter
from chatrelay.llm.provider_config import (
    CHAT_PROVIDERS,
    DEBUG,
    DEFAULT_TEMPERATURE,
    load_key,
)


logger = logging.getLogger(__name__)

ERROR_BODY_PREVIEW_CHARS = 300


def error_from_response(provider_id: str, status_code: int, body: str) -> ProviderError:
    """Build provider-labeled HTTP error text that classification can match on."""
    label = provider_id.upper()
    preview = (body or "").strip()[:ERROR_BODY_PREVIEW_CHARS]

    if status_code in (401, 403):
        message = f"{label} HTTP {status_code}: invalid API key"
    elif status_code == 429:
        message = f"{label} HTTP 429: rate limit exceeded"
    elif status_code in (408, 504):
        message = f"{label} HTTP {status_code}: upstream timeout"
    else:
        message = f"{label} HTTP {status_code}"

    if preview:
        message = f"{message} ({preview})"

    if status_code in (408, 504):
        return ProviderTimeout(message, provider_id=provider_id, status=status_code)
    return ProviderError(message, provider_id=provider_id, status=status_code)


def _extract_delta(data: dict) -> Optional[str]:
    """Pull incremental text from the common OpenAI-compatible chunk shapes."""
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and choice["delta"].get("content"):
            return choice["delta"]["content"]

        if "message" in choice and choice["message"].get("content"):
            return choice["message"]["content"]

        if choice.get("text"):
            return choice["text"]

    elif "message" in data and isinstance(data["message"], dict):
        return data["message"].get("content")

    return None


class HttpChatAdapter(ProviderAdapter):
    """Shared plumbing for HTTP chat adapters."""

    supports_streaming = True

    def __init__(
        self,
        provider_id: str,
        url: str,
        model: str,
        key_file: Optional[str] = None,
        max_tokens: Optional[int] = None,
        request_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider_id = provider_id
        self.url = url
        self.model = model
        self.key_file = key_file
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.transport = transport

    def _api_key(self) -> str:
        api_key = load_key(self.key_file)
        if not api_key:
            raise ConfigurationError(
                f"{self.provider_id} API key is not configured",
                provider=self.provider_id,
            )
        return api_key

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.request_timeout, transport=self.transport)

    async def _post_json(self, url: str, headers: dict, payload: dict) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(
                f"{self.provider_id.upper()} request timeout", provider_id=self.provider_id
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{self.provider_id.upper()} request failed: {exc}", provider_id=self.provider_id
            ) from exc

        if response.status_code >= 400:
            raise error_from_response(self.provider_id, response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider_id.upper()} returned malformed JSON",
                provider_id=self.provider_id,
            ) from exc

    async def _stream_lines(self, url: str, headers: dict, payload: dict) -> AsyncIterator[str]:
        """Yield raw SSE lines from a streaming POST.

        Callers iterate it under `aclosing` so that closing their own stream
        closes the response, and downstream cancellation reaches the provider
        connection.
        """
        try:
            async with self._client() as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise error_from_response(self.provider_id, response.status_code, body)

                    async for line in response.aiter_lines():
                        if line:
                            yield line
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(
                f"{self.provider_id.upper()} stream timeout", provider_id=self.provider_id
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{self.provider_id.upper()} stream failed: {exc}", provider_id=self.provider_id
            ) from exc


class OpenAICompatibleAdapter(HttpChatAdapter):
    """OpenAI-style `/chat/completions` backends (OpenAI, Groq, ...)."""

    def _payload(self, request: ChatInvocation, stream: bool) -> dict:
        payload = {
            "model": request.model or self.model,
            "messages": list(request.messages),
            "temperature": (
                request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
            ),
            "stream": stream,
        }
        max_tokens = request.max_tokens or self.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key()}",
        }

    async def invoke(self, request: ChatInvocation) -> str:
        headers = self._headers()
        data = await self._post_json(self.url, headers, self._payload(request, stream=False))

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                f"{self.provider_id.upper()} response missing message content",
                provider_id=self.provider_id,
            ) from exc

        if not content or not str(content).strip():
            raise ProviderError(
                f"{self.provider_id.upper()} returned an empty response",
                provider_id=self.provider_id,
            )
        return str(content).strip()

    async def stream(self, request: ChatInvocation) -> AsyncIterator[str]:
        headers = self._headers()
        payload = self._payload(request, stream=True)

        async with aclosing(self._stream_lines(self.url, headers, payload)) as lines:
            async for line in lines:
                if line.startswith("data: "):
                    line = line[6:]

                if line.strip() == "[DONE]":
                    break

                try:
                    data = json.loads(line)
                except ValueError:
                    if DEBUG:
                        logger.debug("%s: skipping non-JSON stream line %r", self.provider_id, line)
                    continue

                if isinstance(data, dict) and data.get("error"):
                    error = data["error"]
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise ProviderError(
                        f"{self.provider_id.upper()} stream error: {message}",
                        provider_id=self.provider_id,
                    )

                delta = _extract_delta(data) if isinstance(data, dict) else None
                if delta:
                    yield delta


class GeminiAdapter(HttpChatAdapter):
    """Google Gemini `generateContent` / `streamGenerateContent` backend."""

    def _payload(self, request: ChatInvocation) -> dict:
        contents = []

        for msg in request.messages:
            role = msg.get("role")
            content = msg.get("content", "")

            if not content:
                continue

            if role == "assistant":
                gemini_role = "model"
            elif role in ("user", "system"):
                gemini_role = "user"
            else:
                continue

            contents.append({"role": gemini_role, "parts": [{"text": str(content)}]})

        generation_config = {
            "temperature": (
                request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
            ),
        }
        max_tokens = request.max_tokens or self.max_tokens
        if max_tokens:
            generation_config["maxOutputTokens"] = max_tokens

        return {"contents": contents, "generationConfig": generation_config}

    def _headers(self) -> dict:
        return {
            "x-goog-api-key": self._api_key(),
            "Content-Type": "application/json",
        }

    def _endpoint(self, request: ChatInvocation, method: str) -> str:
        return f"{self.url}/{request.model or self.model}:{method}"

    @staticmethod
    def _candidate_text(data: Any) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return ""
        return "".join(str(part.get("text", "")) for part in parts)

    async def invoke(self, request: ChatInvocation) -> str:
        headers = self._headers()
        data = await self._post_json(
            self._endpoint(request, "generateContent"), headers, self._payload(request)
        )

        text = self._candidate_text(data).strip()
        if not text:
            raise ProviderError(
                f"{self.provider_id.upper()} returned an empty response",
                provider_id=self.provider_id,
            )
        return text

    async def stream(self, request: ChatInvocation) -> AsyncIterator[str]:
        headers = self._headers()
        url = self._endpoint(request, "streamGenerateContent") + "?alt=sse"

        async with aclosing(self._stream_lines(url, headers, self._payload(request))) as lines:
            async for line in lines:
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except ValueError:
                    continue

                text = self._candidate_text(data)
                if text:
                    yield text


ADAPTER_STYLES = {
    "openai": OpenAICompatibleAdapter,
    "gemini": GeminiAdapter,
}


def build_chat_adapters(
    providers: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Instantiate one adapter per configured chat provider, in config order."""
    providers = CHAT_PROVIDERS if providers is None else providers
    adapters = {}

    for provider_id, config in providers.items():
        adapter_cls = ADAPTER_STYLES.get(config.get("api_style", "openai"))
        if adapter_cls is None:
            raise ConfigurationError(
                f"Unknown api_style for provider {provider_id}: {config.get('api_style')}",
            )
        adapters[provider_id] = adapter_cls(
            provider_id=provider_id,
            url=config["url"],
            model=config["model"],
            key_file=config.get("key_file"),
            max_tokens=config.get("max_tokens"),
            transport=transport,
        )

    return adapters
