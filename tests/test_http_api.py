"""
Tests for the FastAPI surface.

Covers:
- SSE chat: headers, frame order, provider header, in-stream failures
- Status mapping: 400 validation, 429 rate limit, 503 credentials, 500 other
- Media, optimize, models, and context stats endpoints
"""

from unittest.mock import patch

import pytest

from chatrelay.context.truncation import ContextConfig
from chatrelay.core.engine import ChatRelayEngine
from chatrelay.core.errors import ConfigurationError, ProviderError
from chatrelay.core.types import Envelope, MediaPayload
from chatrelay.core.wire import decode_events

from conftest import FakeChatAdapter, FakeMediaAdapter, make_history, make_registry


CONTEXT = {"openai": ContextConfig(max_messages=2, max_token_budget=100_000)}


def _engine(fast_config, **tasks) -> ChatRelayEngine:
    return ChatRelayEngine(make_registry(**tasks), config=fast_config, context_configs=CONTEXT)


def _envelopes(response) -> list:
    return list(decode_events(response.text.split("\n")))


class TestChatEndpoint:

    @pytest.mark.asyncio
    async def test_streams_envelopes_with_sse_headers(self, fast_config, api_client_factory):
        openai = FakeChatAdapter("openai", chunks=("Hel", "lo"))
        client = api_client_factory(_engine(fast_config, chat=[openai]))

        response = await client.post("/api/chat", json={"message": "hi", "providerId": "openai"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["connection"] == "keep-alive"
        assert response.headers["x-provider-used"] == "openai"
        assert _envelopes(response) == [Envelope.token("Hel"), Envelope.token("lo"), Envelope.end()]

    @pytest.mark.asyncio
    async def test_fallback_provider_reported_in_header(self, fast_config, api_client_factory):
        openai = FakeChatAdapter("openai", error=ProviderError("OPENAI HTTP 500"))
        groq = FakeChatAdapter("groq", chunks=("from groq",))
        client = api_client_factory(_engine(fast_config, chat=[openai, groq]))

        response = await client.post("/api/chat", json={"message": "hi", "providerId": "openai"})

        assert response.status_code == 200
        assert response.headers["x-provider-used"] == "groq"
        assert _envelopes(response)[0] == Envelope.token("from groq")

    @pytest.mark.asyncio
    async def test_failure_after_start_is_an_error_frame(self, fast_config, api_client_factory):
        openai = FakeChatAdapter(
            "openai",
            chunks=("Hel", "lo"),
            fail_after=2,
            stream_error=ProviderError("OPENAI stream error: rate limit exceeded"),
        )
        client = api_client_factory(_engine(fast_config, chat=[openai]))

        response = await client.post("/api/chat", json={"message": "hi", "providerId": "openai"})

        assert response.status_code == 200
        envelopes = _envelopes(response)
        assert envelopes == [
            Envelope.token("Hel"),
            Envelope.token("lo"),
            Envelope.error("openai rate limit reached, please retry later"),
        ]

    @pytest.mark.asyncio
    async def test_history_is_accepted_in_camel_case(self, fast_config, api_client_factory):
        openai = FakeChatAdapter("openai")
        client = api_client_factory(_engine(fast_config, chat=[openai]))
        history = [
            {"id": m.id, "role": m.role.value, "content": m.content, "providerId": "openai"}
            for m in make_history(2)
        ]

        response = await client.post(
            "/api/chat",
            json={"message": "next", "providerId": "openai", "history": history, "maxTokens": 32},
        )

        assert response.status_code == 200
        invocation = openai.requests[0]
        assert invocation.max_tokens == 32
        assert [m["content"] for m in invocation.messages] == ["message assistant 1", "next"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status",
        [
            (ProviderError("OPENAI HTTP 429: rate limit exceeded"), 429),
            (ConfigurationError("openai API key is not configured"), 503),
            (ProviderError("connection reset"), 500),
        ],
    )
    async def test_all_providers_failing_maps_status(self, fast_config, api_client_factory, error, status):
        openai = FakeChatAdapter("openai", error=error)
        client = api_client_factory(_engine(fast_config, chat=[openai]))

        response = await client.post("/api/chat", json={"message": "hi", "providerId": "openai"})

        assert response.status_code == status
        body = response.json()
        assert body["error"]
        assert body["code"] == "ALL_PROVIDERS_FAILED"
        assert body["lastError"] == str(error)
        assert body["attempts"][0]["providerId"] == "openai"
        assert body["attempts"][0]["outcome"] == "failure"

    @pytest.mark.asyncio
    async def test_unknown_provider_is_400(self, fast_config, api_client_factory):
        openai = FakeChatAdapter("openai")
        client = api_client_factory(_engine(fast_config, chat=[openai]))

        response = await client.post("/api/chat", json={"message": "hi", "providerId": "other"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_UNKNOWN_PROVIDER"
        assert openai.calls == 0

    @pytest.mark.asyncio
    async def test_empty_message_is_400(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(fast_config, chat=[FakeChatAdapter("openai")]))

        response = await client.post("/api/chat", json={"message": "", "providerId": "openai"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_EMPTY_INPUT"

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(fast_config, chat=[FakeChatAdapter("openai")]))

        response = await client.post("/api/chat", json={"message": "hi"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_INVALID_FIELD"


class TestMediaEndpoints:

    @pytest.mark.asyncio
    async def test_image_prompt_over_ceiling_touches_no_provider(self, fast_config, api_client_factory):
        image = FakeMediaAdapter("pollinations")
        client = api_client_factory(_engine(fast_config, image=[image]))

        response = await client.post("/api/generate/image", json={"prompt": "x" * 1001})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_TOO_LONG"
        assert image.calls == 0

    @pytest.mark.asyncio
    async def test_image_response_shape(self, fast_config, api_client_factory):
        failing = FakeMediaAdapter("huggingface:model-a", error=ProviderError("model loading"))
        image = FakeMediaAdapter("pollinations", MediaPayload("image/png", b"png-bytes"))
        client = api_client_factory(_engine(fast_config, image=[failing, image]))

        response = await client.post(
            "/api/generate/image", json={"prompt": "a cat", "width": 512, "height": 768}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["mediaPayload"] == "data:image/png;base64,cG5nLWJ5dGVz"
        assert body["providerUsed"] == "pollinations"
        assert [a["outcome"] for a in body["attempts"]] == ["failure", "success"]
        assert body["attempts"][0]["error"] == "model loading"
        assert "error" not in body["attempts"][1]
        assert body["dimensions"] == {"width": 512, "height": 768}
        assert body["prompt"] == "a cat"
        assert body["timestamp"]

    @pytest.mark.asyncio
    async def test_image_size_out_of_range_is_400(self, fast_config, api_client_factory):
        image = FakeMediaAdapter("pollinations")
        client = api_client_factory(_engine(fast_config, image=[image]))

        response = await client.post("/api/generate/image", json={"prompt": "cat", "width": 10})

        assert response.status_code == 400
        assert image.calls == 0

    @pytest.mark.asyncio
    async def test_video_response_includes_frames(self, fast_config, api_client_factory):
        payload = MediaPayload("image/gif", b"GIF89a", frames=4, note="Animation assembled from 4 generated frames")
        video = FakeMediaAdapter("pollinations_frames", payload)
        client = api_client_factory(_engine(fast_config, video=[video]))

        response = await client.post("/api/generate/video", json={"prompt": "waves", "duration": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["mediaPayload"].startswith("data:image/gif;base64,")
        assert body["frames"] == 4
        assert body["duration"] == 2
        assert body["note"].startswith("Animation assembled")

    @pytest.mark.asyncio
    async def test_video_failure_suggests_images(self, fast_config, api_client_factory):
        video = FakeMediaAdapter("pollinations_animated", error=ProviderError("connection reset"))
        client = api_client_factory(_engine(fast_config, video=[video]))

        response = await client.post("/api/generate/video", json={"prompt": "waves"})

        assert response.status_code == 500
        assert "image generation" in response.json()["suggestion"]

    @pytest.mark.asyncio
    async def test_service_descriptions(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(
            fast_config,
            image=[FakeMediaAdapter("pollinations")],
            video=[FakeMediaAdapter("pollinations_animated")],
            optimize=[FakeChatAdapter("openai")],
        ))

        image = (await client.get("/api/generate/image")).json()
        video = (await client.get("/api/generate/video")).json()
        optimize = (await client.get("/api/optimize-prompt")).json()

        assert image["providers"] == ["pollinations"]
        assert image["maxPromptLength"] == 1000
        assert video["providers"] == ["pollinations_animated"]
        assert video["maxPromptLength"] == 500
        assert optimize["providers"] == ["openai"]
        assert optimize["maxPromptLength"] == 2000


class TestOtherEndpoints:

    @pytest.mark.asyncio
    async def test_optimize_prompt(self, fast_config, api_client_factory):
        openai = FakeChatAdapter("openai", reply="Describe, in detail, a specific autumn poem.")
        client = api_client_factory(_engine(fast_config, optimize=[openai]))

        response = await client.post("/api/optimize-prompt", json={"prompt": "autumn poem"})

        assert response.status_code == 200
        body = response.json()
        assert body["original"] == "autumn poem"
        assert body["optimized"] == "Describe, in detail, a specific autumn poem."
        assert body["provider"] == "openai"
        assert body["requestedProvider"] == "openai"
        assert body["improvements"]
        assert body["attempts"][0]["outcome"] == "success"

    @pytest.mark.asyncio
    async def test_optimize_unknown_provider(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(fast_config, optimize=[FakeChatAdapter("openai")]))

        response = await client.post("/api/optimize-prompt", json={"prompt": "x", "provider": "nope"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_models_lists_configured_providers(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(
            fast_config, chat=[FakeChatAdapter("openai"), FakeChatAdapter("groq")]
        ))

        with patch(
            "chatrelay.api.http_api.validate_api_keys",
            return_value={"openai": True, "groq": False},
        ):
            response = await client.get("/api/models")

        body = response.json()
        assert [model["id"] for model in body["models"]] == ["openai"]
        assert body["models"][0]["streaming"] is True
        assert body["providers"] == {"openai": True, "groq": False}

    @pytest.mark.asyncio
    async def test_context_stats(self, fast_config, api_client_factory):
        client = api_client_factory(_engine(fast_config, chat=[FakeChatAdapter("openai")]))
        history = [{"role": m.role.value, "content": m.content} for m in make_history(3)]

        response = await client.post(
            "/api/context/stats", json={"providerId": "openai", "history": history}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["messageCount"] == 6
        assert body["keptMessages"] == 2
        assert body["truncated"] is True
