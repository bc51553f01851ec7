"""Pollinations image and animation adapters.

Processing flow:
    - Image: one GET to the prompt URL; the response body is the image.
    - Animation: one GET with an animation-biased prompt and `animation=true`.
    - Frame sequence: several seeded GETs with per-frame prompt variations,
      assembled into an animated GIF with Pillow.

Keys:
    Pollinations requires no credentials.

Error handling strategy:
    - Non-2xx or non-image bodies -> `ProviderError`.
    - Frame sequence skips failed frames and only fails when none succeed.
"""

import asyncio
import io
import logging
import time
from typing import Optional
from urllib.parse import quote

import httpx
from PIL import Image

from chatrelay.core.errors import ProviderError, ProviderTimeout
from chatrelay.core.types import MediaPayload, MediaRequest
from chatrelay.llm.base import ProviderAdapter
from chatrelay.llm.client import error_from_response
from chatrelay.llm.provider_config import (
    MAX_VIDEO_FRAMES,
    POLLINATIONS_MODEL,
    POLLINATIONS_URL,
    VIDEO_FRAME_DELAY_SECONDS,
)


logger = logging.getLogger(__name__)

MOTION_WORDS = [
    "subtle movement",
    "gentle motion",
    "dynamic pose",
    "flowing movement",
    "animated scene",
    "moving elements",
    "kinetic energy",
    "fluid motion",
]


def build_pollinations_url(prompt: str, width: int, height: int, seed: Optional[int] = None, **extra) -> str:
    params = {
        "width": width,
        "height": height,
        "enhance": "true",
        "model": POLLINATIONS_MODEL,
    }
    if seed is not None:
        params["seed"] = seed
    params.update(extra)
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return f"{POLLINATIONS_URL}{quote(prompt, safe='')}?{query}"


def frame_prompt(base_prompt: str, frame_index: int, total_frames: int) -> str:
    """Vary the prompt per frame so consecutive frames suggest motion."""
    motion = MOTION_WORDS[frame_index % len(MOTION_WORDS)]
    if frame_index == 0:
        return f"{base_prompt}, starting position, {motion}"
    if frame_index == total_frames - 1:
        return f"{base_prompt}, final position, {motion}"
    return f"{base_prompt}, mid motion, {motion}, frame {frame_index}"


class _PollinationsAdapter(ProviderAdapter):

    def __init__(
        self,
        request_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout = request_timeout
        self.transport = transport

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> MediaPayload:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{self.provider_id} request timeout") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{self.provider_id} request failed: {exc}") from exc

        if response.status_code >= 400:
            raise error_from_response(self.provider_id, response.status_code, response.text)

        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not mime_type.startswith("image/") or not response.content:
            raise ProviderError(f"{self.provider_id} returned no image data ({mime_type or 'unknown'})")
        return MediaPayload(mime_type=mime_type, data=response.content)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.request_timeout,
            transport=self.transport,
            follow_redirects=True,
        )


class PollinationsImageAdapter(_PollinationsAdapter):

    provider_id = "pollinations"

    async def invoke(self, request: MediaRequest) -> MediaPayload:
        url = build_pollinations_url(request.prompt, request.width, request.height)
        async with self._client() as client:
            return await self._fetch(client, url)


class PollinationsAnimationAdapter(_PollinationsAdapter):
    """Single request biased toward animated output."""

    provider_id = "pollinations_animated"

    async def invoke(self, request: MediaRequest) -> MediaPayload:
        prompt = f"animated {request.prompt}, dynamic movement, fluid motion, cinematic"
        url = build_pollinations_url(
            prompt,
            request.width,
            request.height,
            seed=int(time.time()),
            animation="true",
        )
        async with self._client() as client:
            media = await self._fetch(client, url)

        if media.mime_type != "image/gif":
            raise ProviderError(
                f"{self.provider_id} returned a still image ({media.mime_type}), not an animation"
            )
        return MediaPayload(mime_type="image/gif", data=media.data, note="Animated GIF")


class PollinationsFrameSequenceAdapter(_PollinationsAdapter):
    """Generate seeded frames one by one and assemble them into a GIF.

    Two frames per second of requested duration, capped at `max_frames`.
    """

    provider_id = "pollinations_frames"

    def __init__(
        self,
        max_frames: int = MAX_VIDEO_FRAMES,
        frame_delay: float = VIDEO_FRAME_DELAY_SECONDS,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.max_frames = max_frames
        self.frame_delay = frame_delay

    async def invoke(self, request: MediaRequest) -> MediaPayload:
        total = max(1, min(request.duration * 2, self.max_frames))
        frames: list[bytes] = []

        async with self._client() as client:
            for index in range(total):
                url = build_pollinations_url(
                    frame_prompt(request.prompt, index, total),
                    request.width,
                    request.height,
                    seed=1000 + index,
                )
                try:
                    media = await self._fetch(client, url)
                    frames.append(media.data)
                    logger.info("%s frame %d/%d generated", self.provider_id, index + 1, total)
                except ProviderError as exc:
                    logger.warning("%s frame %d/%d skipped: %s", self.provider_id, index + 1, total, exc)

                if index < total - 1:
                    await asyncio.sleep(self.frame_delay)

        if not frames:
            raise ProviderError(f"{self.provider_id} could not generate any frame")

        return MediaPayload(
            mime_type="image/gif",
            data=assemble_gif(frames),
            frames=len(frames),
            note=f"Animation assembled from {len(frames)} generated frames",
        )


def assemble_gif(frames: list[bytes], frame_duration_ms: int = 500) -> bytes:
    """Combine encoded images into one looping animated GIF."""
    images = [Image.open(io.BytesIO(frame)).convert("RGB") for frame in frames]
    size = images[0].size
    images = [image if image.size == size else image.resize(size) for image in images]

    buffer = io.BytesIO()
    images[0].save(
        buffer,
        format="GIF",
        save_all=True,
        append_images=images[1:],
        duration=frame_duration_ms,
        loop=0,
    )
    return buffer.getvalue()
