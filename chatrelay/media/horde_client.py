"""AI Horde image-generation adapter.

Processing flow:
    1. Build submission payload from prompt + generation params.
    2. Submit async generation job.
    3. Poll status endpoint until completion/fault, at most `max_polls` times.
    4. Download (or decode) the first generation and return its bytes.

Polling:
    Submit/poll/collect is encapsulated here; the orchestrator only sees one
    `invoke()` call. A poll answered with HTTP 429 counts as "still pending".
    Exceeding the poll ceiling or being cancelled deletes the remote job.

Size validation:
    Width/height are clamped to AI Horde's accepted range and rounded down to
    multiples of 64.
"""

import base64
import binascii
import logging
from typing import Any, Optional

import httpx

from chatrelay.core.errors import ProviderError
from chatrelay.core.types import MediaPayload, MediaRequest
from chatrelay.llm.base import PollingProviderAdapter
from chatrelay.llm.client import error_from_response
from chatrelay.llm.provider_config import AI_HORDE, load_key


logger = logging.getLogger(__name__)

HORDE_MAX_SIDE = 1024
HORDE_MIN_SIDE = 64
HORDE_STEPS = 25


def _horde_side(value: int) -> int:
    value = max(HORDE_MIN_SIDE, min(HORDE_MAX_SIDE, int(value)))
    return value - value % 64


class AIHordeImageAdapter(PollingProviderAdapter):

    provider_id = "ai_horde"

    def __init__(
        self,
        max_polls: int = 30,
        poll_interval: float = 2.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(max_polls=max_polls, poll_interval=poll_interval)
        self.request_timeout = request_timeout
        self.transport = transport

    def _headers(self) -> dict:
        api_key = load_key(AI_HORDE["key_file"]) or AI_HORDE["anonymous_key"]
        return {"apikey": api_key, "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.request_timeout, transport=self.transport)

    async def submit(self, request: MediaRequest) -> str:
        payload = {
            "prompt": request.prompt,
            "params": {
                "width": _horde_side(request.width),
                "height": _horde_side(request.height),
                "steps": HORDE_STEPS,
                "n": 1,
            },
            "models": [request.model or AI_HORDE["model"]],
            "r2": True,
        }

        async with self._client() as client:
            response = await client.post(AI_HORDE["url"], json=payload, headers=self._headers())

        if response.status_code >= 400:
            raise error_from_response(self.provider_id, response.status_code, response.text)

        job_id = response.json().get("id")
        if not job_id:
            raise ProviderError("AI Horde did not return a job id.", provider_id=self.provider_id)
        return job_id

    async def poll(self, job_id: str) -> Optional[dict]:
        async with self._client() as client:
            response = await client.get(f"{AI_HORDE['status_url']}{job_id}", headers=self._headers())

        if response.status_code == 429:
            return None
        if response.status_code >= 400:
            raise error_from_response(self.provider_id, response.status_code, response.text)

        status = response.json()
        if status.get("faulted"):
            raise ProviderError("AI Horde job faulted.", provider_id=self.provider_id)

        finished = bool(status.get("done") or status.get("finished"))
        if finished and status.get("generations"):
            return status
        return None

    async def collect(self, status: dict, request: Any) -> MediaPayload:
        generation = status["generations"][0]
        image_ref = generation.get("img") or generation.get("image_url")
        if not image_ref:
            raise ProviderError(
                "AI Horde finished but no image returned.", provider_id=self.provider_id
            )

        if image_ref.startswith("http"):
            async with self._client() as client:
                response = await client.get(image_ref)
            if response.status_code >= 400:
                raise error_from_response(self.provider_id, response.status_code, response.text)
            mime_type = response.headers.get("content-type", "image/webp").split(";")[0]
            return MediaPayload(mime_type=mime_type, data=response.content)

        try:
            data = base64.b64decode(image_ref, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProviderError(
                "AI Horde returned an undecodable image.", provider_id=self.provider_id
            ) from exc
        return MediaPayload(mime_type="image/webp", data=data)

    async def cancel_job(self, job_id: str) -> None:
        async with self._client() as client:
            await client.delete(f"{AI_HORDE['status_url']}{job_id}", headers=self._headers())
        logger.info("AI Horde job cancelled: id=%s", job_id)
