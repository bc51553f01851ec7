"""Image/video adapter catalogue used when the provider registry is built.

Role in pipeline:
    - Instantiates media adapters in their default fallback order.
    - Exposes the human-readable service descriptions served by the API's GET
      info endpoints.

Fallback order:
    Image: Hugging Face models (configured order), Pollinations, AI Horde.
    Video: Pollinations animation, Pollinations frame sequence.
"""

from typing import Optional

import httpx

from chatrelay.core.config import OrchestrationConfig
from chatrelay.llm.provider_config import (
    HUGGINGFACE_IMAGE_MODELS,
    MAX_IMAGE_PROMPT_CHARS,
    MAX_VIDEO_PROMPT_CHARS,
)
from chatrelay.media.horde_client import AIHordeImageAdapter
from chatrelay.media.huggingface import HuggingFaceImageAdapter
from chatrelay.media.pollinations import (
    PollinationsAnimationAdapter,
    PollinationsFrameSequenceAdapter,
    PollinationsImageAdapter,
)


def build_image_adapters(
    config: OrchestrationConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list:
    """Return `(display_name, adapter)` pairs in default fallback order."""
    adapters = [
        (f"Hugging Face {model}", HuggingFaceImageAdapter(model, transport=transport))
        for model in dict.fromkeys(HUGGINGFACE_IMAGE_MODELS)
    ]
    adapters.append(("Pollinations", PollinationsImageAdapter(transport=transport)))
    adapters.append((
        "AI Horde",
        AIHordeImageAdapter(
            max_polls=config.poll_max_attempts,
            poll_interval=config.poll_interval_seconds,
            transport=transport,
        ),
    ))
    return adapters


def build_video_adapters(
    config: OrchestrationConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list:
    return [
        ("Pollinations animation", PollinationsAnimationAdapter(transport=transport)),
        ("Pollinations frame sequence", PollinationsFrameSequenceAdapter(transport=transport)),
    ]


def describe_image_service(provider_ids: list) -> dict:
    return {
        "service": "image-generation",
        "status": "available",
        "providers": provider_ids,
        "maxPromptLength": MAX_IMAGE_PROMPT_CHARS,
        "supportedDimensions": ["512x512", "768x768", "1024x1024"],
        "description": "Text-to-image generation with ordered provider fallback",
    }


def describe_video_service(provider_ids: list) -> dict:
    return {
        "service": "video-generation",
        "status": "limited",
        "providers": provider_ids,
        "maxPromptLength": MAX_VIDEO_PROMPT_CHARS,
        "supportedDurations": [1, 2, 3, 4],
        "supportedSizes": ["256x256", "512x512", "768x768"],
        "description": "Short animations generated as GIFs from image sequences",
    }
