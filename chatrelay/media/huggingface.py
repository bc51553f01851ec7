"""Hugging Face inference image adapter.

Processing flow:
    1. Load the Hugging Face API key.
    2. POST the prompt and generation parameters to the model endpoint.
    3. Reject JSON bodies (errors, model-loading notices).
    4. Return the image bytes with their MIME type.

Fallback model:
    One adapter instance wraps one model. The registry holds one descriptor per
    model, so "try the next model" is ordinary provider fallback.

Error handling strategy:
    - Missing key -> `ConfigurationError`.
    - Non-2xx or JSON error/loading bodies -> `ProviderError`.
"""

import logging
from typing import Optional

import httpx

from chatrelay.core.errors import ConfigurationError, ProviderError, ProviderTimeout
from chatrelay.core.types import MediaPayload, MediaRequest
from chatrelay.llm.base import ProviderAdapter
from chatrelay.llm.client import error_from_response
from chatrelay.llm.provider_config import HUGGINGFACE_KEY_FILE, HUGGINGFACE_URL, load_key


logger = logging.getLogger(__name__)


class HuggingFaceImageAdapter(ProviderAdapter):

    def __init__(
        self,
        model: str,
        guidance_scale: float = 7.5,
        num_inference_steps: int = 50,
        request_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.provider_id = f"huggingface:{model}"
        self.guidance_scale = guidance_scale
        self.num_inference_steps = num_inference_steps
        self.request_timeout = request_timeout
        self.transport = transport

    def _api_key(self) -> str:
        api_key = load_key(HUGGINGFACE_KEY_FILE)
        if not api_key:
            raise ConfigurationError("Hugging Face API key is not configured")
        if not api_key.startswith("hf_"):
            raise ConfigurationError("Hugging Face API key format is invalid (expected 'hf_' prefix)")
        return api_key

    async def invoke(self, request: MediaRequest) -> MediaPayload:
        headers = {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
        }
        payload = {
            "inputs": request.prompt,
            "parameters": {
                "width": request.width,
                "height": request.height,
                "num_images_per_prompt": 1,
                "guidance_scale": self.guidance_scale,
                "num_inference_steps": self.num_inference_steps,
            },
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.request_timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{HUGGINGFACE_URL}{self.model}", headers=headers, json=payload
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{self.provider_id} request timeout") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{self.provider_id} request failed: {exc}") from exc

        if response.status_code >= 400:
            raise error_from_response(self.provider_id, response.status_code, response.text)

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            body = response.json()
            if body.get("error"):
                raise ProviderError(f"{self.provider_id}: {body['error']}")
            if body.get("estimated_time"):
                raise ProviderError(
                    f"{self.provider_id} is loading, estimated wait {body['estimated_time']}s"
                )
            raise ProviderError(f"{self.provider_id} returned JSON instead of image data")

        if not response.content:
            raise ProviderError(f"{self.provider_id} returned an empty image")

        mime_type = content_type.split(";")[0].strip() or "image/jpeg"
        logger.info("%s generated %d bytes (%s)", self.provider_id, len(response.content), mime_type)
        return MediaPayload(mime_type=mime_type, data=response.content)
