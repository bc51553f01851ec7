"""
HTTP API adapter for the ChatRelay engine.

Architectural role:
- Expose the chat, media, optimize, and context endpoints over FastAPI.
- Parse request bodies into pydantic models and hand them to
  `chatrelay.core.engine.ChatRelayEngine`.
- Normalize engine output to response transport contracts (JSON or SSE).

Endpoint responsibilities:
- `POST /api/chat`: open a provider stream and relay it as SSE envelopes.
- `GET|POST /api/generate/image`: service description / image generation.
- `GET|POST /api/generate/video`: service description / short GIF generation.
- `GET|POST /api/optimize-prompt`: service description / prompt rewrite.
- `GET /api/models`: chat providers with configured credentials.
- `POST /api/context/stats`: how a history would be bounded for a provider.

Chat request lifecycle (`POST /api/chat`):
1. Parse `{message, providerId, history?, temperature?, maxTokens?}`.
2. Validate and walk the chat fallback chain until one provider yields its
   first chunk, while a watcher turns client disconnects into cancellation.
3. Stream `data: {"type", "data"}` frames until exactly one terminal frame.

Error handling strategy:
- `ChatRelayError` subclasses map to their own HTTP status.
- `AggregateFailure` maps by classifying the last provider error
  (credential -> 503, rate limit -> 429, other -> 500).
- pydantic body validation failures are reported as 400.
- After the stream has started, failures only appear as an `error` frame.

Side effects:
- Loads environment variables at import time via `load_dotenv()`.
- Emits request payload debug logs only when `DEBUG == "true"`.
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.core.engine import ChatRelayEngine, ChatTurn, create_engine
from chatrelay.core.errors import AggregateFailure, ChatRelayError, ErrorCode
from chatrelay.core.stream_relay import classify_error
from chatrelay.core.types import GenerationResult, Message, TaskType
from chatrelay.core.wire import encode_event
from chatrelay.llm.provider_config import (
    CHAT_PROVIDERS,
    DEBUG,
    DEFAULT_IMAGE_SIZE,
    DEFAULT_VIDEO_DURATION,
    DEFAULT_VIDEO_SIZE,
    MAX_MEDIA_SIZE,
    MAX_OPTIMIZE_PROMPT_CHARS,
    MIN_MEDIA_SIZE,
    validate_api_keys,
)
from chatrelay.media.service import describe_image_service, describe_video_service


logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5
VIDEO_FALLBACK_SUGGESTION = "Video generation is unavailable right now; try image generation instead"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


# ============================================================
# Request Schema
# ============================================================

class HistoryItem(BaseModel):
    """One prior turn as sent by the session store (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[datetime] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")

    def to_message(self) -> Message:
        fields = {"role": self.role, "content": self.content, "provider_id": self.provider_id}
        if self.id:
            fields["id"] = self.id
        if self.timestamp is not None:
            fields["timestamp"] = self.timestamp
        return Message(**fields)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    provider_id: str = Field(alias="providerId")
    history: list[HistoryItem] = Field(default_factory=list)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", gt=0)


class ImageRequest(BaseModel):
    prompt: str
    width: int = Field(default=DEFAULT_IMAGE_SIZE, ge=MIN_MEDIA_SIZE, le=MAX_MEDIA_SIZE)
    height: int = Field(default=DEFAULT_IMAGE_SIZE, ge=MIN_MEDIA_SIZE, le=MAX_MEDIA_SIZE)
    model: Optional[str] = None


class VideoRequest(BaseModel):
    prompt: str
    width: int = Field(default=DEFAULT_VIDEO_SIZE, ge=MIN_MEDIA_SIZE, le=MAX_MEDIA_SIZE)
    height: int = Field(default=DEFAULT_VIDEO_SIZE, ge=MIN_MEDIA_SIZE, le=MAX_MEDIA_SIZE)
    duration: int = Field(default=DEFAULT_VIDEO_DURATION, ge=1, le=4)


class OptimizeRequest(BaseModel):
    prompt: str
    provider: Optional[str] = None


class ContextStatsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(alias="providerId")
    history: list[HistoryItem] = Field(default_factory=list)


# ============================================================
# Helpers
# ============================================================

@asynccontextmanager
async def disconnect_watch(request: Request, interval: float = DISCONNECT_POLL_SECONDS):
    """Yield an event that is set once the client disconnects."""
    cancel_event = asyncio.Event()

    async def watch():
        while not cancel_event.is_set():
            if await request.is_disconnected():
                logger.info("Client disconnected from %s", request.url.path)
                cancel_event.set()
                return
            await asyncio.sleep(interval)

    watcher = asyncio.create_task(watch())
    try:
        yield cancel_event
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)


def _attempts(records) -> list:
    return [record.to_dict() for record in records]


def _media_body(result: GenerationResult, prompt: str, width: int, height: int) -> dict:
    payload = result.payload
    return {
        "mediaPayload": payload.to_data_uri(),
        "mimeType": payload.mime_type,
        "providerUsed": result.provider_used,
        "attempts": _attempts(result.attempts),
        "timestamp": result.timestamp.isoformat(),
        "prompt": prompt,
        "dimensions": {"width": width, "height": height},
    }


def _error_body(exc: ChatRelayError, message: Optional[str] = None) -> dict:
    body = exc.to_dict()
    body["error"] = message or exc.message
    return body


# ============================================================
# Application Factory
# ============================================================

def create_app(engine: Optional[ChatRelayEngine] = None) -> FastAPI:
    """Build the FastAPI app around an engine (a default one when omitted)."""
    engine = engine or create_engine()

    app = FastAPI(title="ChatRelay")
    app.state.engine = engine

    # --------------------------------------------------------
    # Exception mapping
    # --------------------------------------------------------

    @app.exception_handler(AggregateFailure)
    async def handle_aggregate_failure(request: Request, exc: AggregateFailure):
        classified = classify_error(exc.last_error_message)
        body = _error_body(exc, classified.message)
        if exc.task_type == TaskType.VIDEO.value:
            body["suggestion"] = VIDEO_FALLBACK_SUGGESTION
        logger.error(
            "%s %s failed after %d attempts: %s",
            request.method,
            request.url.path,
            len(exc.attempts),
            exc.last_error_message,
        )
        return JSONResponse(status_code=classified.status_code, content=body)

    @app.exception_handler(ChatRelayError)
    async def handle_relay_error(request: Request, exc: ChatRelayError):
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code.value, exc)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_body_error(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request body",
                "code": ErrorCode.VALIDATION_INVALID_FIELD.value,
                "details": problems,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unexpected failure in %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": ErrorCode.INTERNAL_UNEXPECTED.value},
        )

    # --------------------------------------------------------
    # Chat
    # --------------------------------------------------------

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        """
        Stream one chat turn as server-sent events.

        Response formatting:
        - Header `X-Provider-Used` names the provider that opened the stream.
        - Frames are `data: {"type": "token"|"end"|"error", "data": ...}`.

        Error handling:
        - Failures before the first chunk return a JSON error with a status.
        - Failures after the first chunk end the stream with an `error` frame.
        """
        if DEBUG:
            logger.debug("Incoming chat payload: %s", body.model_dump(by_alias=True))

        turn = ChatTurn(
            message=body.message,
            provider_id=body.provider_id,
            history=tuple(item.to_message() for item in body.history),
            temperature=body.temperature,
            max_tokens=body.max_tokens,
        )

        async with disconnect_watch(request) as cancel_event:
            session = await engine.start_chat(
                turn,
                cancel_event=cancel_event,
                is_disconnected=request.is_disconnected,
            )

        async def event_generator():
            envelopes = session.relay.__aiter__()
            try:
                async for envelope in envelopes:
                    yield encode_event(envelope)
            finally:
                await envelopes.aclose()

        headers = dict(SSE_HEADERS)
        headers["X-Provider-Used"] = session.provider_used
        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=headers)

    # --------------------------------------------------------
    # Media
    # --------------------------------------------------------

    @app.get("/api/generate/image")
    async def image_service_info():
        return describe_image_service(
            [descriptor.id for descriptor in engine.registry.providers(TaskType.IMAGE)]
        )

    @app.post("/api/generate/image")
    async def generate_image(body: ImageRequest, request: Request):
        async with disconnect_watch(request) as cancel_event:
            result = await engine.generate_image(
                body.prompt, body.width, body.height, body.model, cancel_event=cancel_event
            )
        return _media_body(result, body.prompt, body.width, body.height)

    @app.get("/api/generate/video")
    async def video_service_info():
        return describe_video_service(
            [descriptor.id for descriptor in engine.registry.providers(TaskType.VIDEO)]
        )

    @app.post("/api/generate/video")
    async def generate_video(body: VideoRequest, request: Request):
        async with disconnect_watch(request) as cancel_event:
            result = await engine.generate_video(
                body.prompt, body.width, body.height, body.duration, cancel_event=cancel_event
            )

        response = _media_body(result, body.prompt, body.width, body.height)
        response["duration"] = body.duration
        response["frames"] = result.payload.frames
        if result.payload.note:
            response["note"] = result.payload.note
        return response

    # --------------------------------------------------------
    # Prompt optimization
    # --------------------------------------------------------

    @app.get("/api/optimize-prompt")
    async def optimize_service_info():
        return {
            "service": "prompt-optimization",
            "status": "available",
            "providers": [
                descriptor.id for descriptor in engine.registry.providers(TaskType.OPTIMIZE)
            ],
            "maxPromptLength": MAX_OPTIMIZE_PROMPT_CHARS,
            "description": "Rewrites prompts to be clearer and more specific",
        }

    @app.post("/api/optimize-prompt")
    async def optimize_prompt(body: OptimizeRequest, request: Request):
        async with disconnect_watch(request) as cancel_event:
            result = await engine.optimize_prompt(
                body.prompt, body.provider, cancel_event=cancel_event
            )
        return {
            "original": result.original,
            "optimized": result.optimized,
            "improvements": result.improvements,
            "provider": result.provider_used,
            "requestedProvider": result.requested_provider,
            "attempts": _attempts(result.attempts),
            "timestamp": result.timestamp.isoformat(),
        }

    # --------------------------------------------------------
    # Discovery / diagnostics
    # --------------------------------------------------------

    @app.get("/api/models")
    async def list_models():
        """Return chat providers whose credentials are configured."""
        keys = validate_api_keys()
        models = []
        for descriptor in engine.registry.providers(TaskType.CHAT):
            if not keys.get(descriptor.id):
                continue
            models.append({
                "id": descriptor.id,
                "displayName": descriptor.display_name,
                "maxTokens": CHAT_PROVIDERS.get(descriptor.id, {}).get("max_tokens"),
                "streaming": descriptor.adapter.supports_streaming,
            })

        return {
            "models": models,
            "providers": {
                descriptor.id: bool(keys.get(descriptor.id))
                for descriptor in engine.registry.providers(TaskType.CHAT)
            },
        }

    @app.post("/api/context/stats")
    async def context_stats(body: ContextStatsRequest):
        return engine.context_summary(
            body.provider_id, [item.to_message() for item in body.history]
        )

    return app


app = create_app()
