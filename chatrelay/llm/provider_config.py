"""Provider/runtime configuration for the orchestration layer.

Architectural role:
    Centralizes provider endpoints, model names, credential lookup, per-provider
    context budgets, and orchestration deadlines. Consumed by `chatrelay.llm.client`,
    `chatrelay.media`, `chatrelay.core.engine`, and the API adapter.

Determinism:
    Deterministic for a fixed process environment and key files. Values are
    resolved at import time (plus runtime key-file reads in `load_key`).

Failure behavior:
    Missing key material is represented as `None`; adapters turn that into a
    `ConfigurationError` at call time, so the fallback chain can move on.
"""

import os
from dotenv import load_dotenv

from chatrelay.context.truncation import ContextConfig, ContextStrategy
from chatrelay.core.config import OrchestrationConfig

load_dotenv()

# Sensitive request/response debug logging is opt-in.
DEBUG = os.getenv("DEBUG") == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# Chat/text providers. Order of this map is the default fallback order.
CHAT_PROVIDERS = {

    "openai": {
        "display_name": "GPT-4o Mini",
        "url": "https://api.openai.com/v1/chat/completions",
        "model": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        "optimize_model": os.getenv("OPENAI_OPTIMIZE_MODEL", "gpt-3.5-turbo"),
        "key_file": "config/openai.key",
        "api_style": "openai",
        "max_tokens": 4096,
    },

    "groq": {
        "display_name": "Llama 3.1 8B",
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "model": os.getenv("GROQ_MODEL", "llama-3.1-8b-instant"),
        "optimize_model": os.getenv("GROQ_OPTIMIZE_MODEL", "llama3-8b-8192"),
        "key_file": "config/groq.key",
        "api_style": "openai",
        "max_tokens": 8000,
    },

    "google": {
        "display_name": "Gemini 1.5 Flash",
        "url": "https://generativelanguage.googleapis.com/v1beta/models",
        "model": os.getenv("GOOGLE_MODEL", "gemini-1.5-flash"),
        "optimize_model": os.getenv("GOOGLE_OPTIMIZE_MODEL", "gemini-pro"),
        "key_file": "config/google.key",
        "api_style": "gemini",
        "max_tokens": 8192,
    },

}

DEFAULT_TEMPERATURE = 0.7
OPTIMIZE_TEMPERATURE = 0.3
OPTIMIZE_MAX_TOKENS = 1000


# Image/video generation settings consumed by `chatrelay.media` adapters.
HUGGINGFACE_URL = "https://api-inference.huggingface.co/models/"
HUGGINGFACE_KEY_FILE = "config/huggingface.key"
HUGGINGFACE_IMAGE_MODELS = [
    os.getenv("HUGGINGFACE_IMAGE_MODEL", "stabilityai/stable-diffusion-xl-base-1.0"),
    "runwayml/stable-diffusion-v1-5",
    "CompVis/stable-diffusion-v1-4",
    "stabilityai/stable-diffusion-2-1",
]

POLLINATIONS_URL = "https://image.pollinations.ai/prompt/"
POLLINATIONS_MODEL = os.getenv("POLLINATIONS_MODEL", "flux")

AI_HORDE = {
    "url": "https://aihorde.net/api/v2/generate/async",
    "status_url": "https://aihorde.net/api/v2/generate/status/",
    "key_file": "config/ai_horde.key",
    "model": os.getenv("AI_HORDE_MODEL", "stable_diffusion"),
    # Anonymous key accepted by AI Horde at the lowest queue priority.
    "anonymous_key": "0000000000",
}

DEFAULT_IMAGE_SIZE = 1024
DEFAULT_VIDEO_SIZE = 512
DEFAULT_VIDEO_DURATION = 3
MAX_VIDEO_FRAMES = 6
VIDEO_FRAME_DELAY_SECONDS = 0.8


# Input length ceilings enforced before any provider runs.
MAX_IMAGE_PROMPT_CHARS = 1000
MAX_VIDEO_PROMPT_CHARS = 500
MAX_OPTIMIZE_PROMPT_CHARS = 2000
MAX_CHAT_MESSAGE_CHARS = int(os.getenv("CHAT_MAX_MESSAGE_CHARS", "8000"))
MIN_MEDIA_SIZE = 64
MAX_MEDIA_SIZE = 2048


# Default context budgets per chat provider; leaves room for the response.
_STRATEGY = ContextStrategy(os.getenv("CONTEXT_STRATEGY", "recent"))

CONTEXT_CONFIGS = {
    "openai": ContextConfig(max_messages=20, max_token_budget=3000, strategy=_STRATEGY),
    "groq": ContextConfig(max_messages=15, max_token_budget=2500, strategy=_STRATEGY),
    "google": ContextConfig(max_messages=25, max_token_budget=4000, strategy=_STRATEGY),
}

FALLBACK_CONTEXT_CONFIG = ContextConfig(
    max_messages=15, max_token_budget=2500, strategy=_STRATEGY
)


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


def load_orchestration_config() -> OrchestrationConfig:
    """Build orchestrator settings from the process environment.

    Relevant environment variables:
        - `PROVIDER_TIMEOUT_SECONDS`: per-attempt deadline for chat/optimize.
        - `MEDIA_TIMEOUT_SECONDS`: per-attempt deadline for image/video.
        - `STREAM_CHUNK_TIMEOUT_SECONDS`: optional idle limit between chunks.
        - `POLL_MAX_ATTEMPTS`: polling ceiling for asynchronous job adapters.
        - `POLL_INTERVAL_SECONDS`: fixed delay between polls.

    Unset variables keep the `OrchestrationConfig` defaults.
    """
    defaults = OrchestrationConfig()
    chunk_timeout = _optional_float("STREAM_CHUNK_TIMEOUT_SECONDS")
    return OrchestrationConfig(
        timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", defaults.timeout_seconds)),
        media_timeout_seconds=float(
            os.getenv("MEDIA_TIMEOUT_SECONDS", defaults.media_timeout_seconds)
        ),
        chunk_timeout_seconds=(
            chunk_timeout if chunk_timeout is not None else defaults.chunk_timeout_seconds
        ),
        poll_max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", defaults.poll_max_attempts)),
        poll_interval_seconds=float(
            os.getenv("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
        ),
    )


def load_key(path, env_name=None):
    """Load API key from environment override or key file.

    Resolution order:
        1. `env_name` when given, else the variable inferred from file stem
           (for example `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Args:
        path: Configured key file path or `None`.
        env_name: Explicit environment variable name.

    Returns:
        Key string or `None` when not available.

    Edge cases:
        - `None` path with no `env_name` returns `None`.
        - Missing file returns `None`.
    """
    if not path and not env_name:
        return None
    if not env_name:
        env_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(env_name)
    if env_value:
        return env_value.strip()
    if not path or not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip() or None


def validate_api_keys() -> dict:
    """Report which chat providers currently have credentials configured."""
    return {
        provider_id: bool(load_key(config["key_file"]))
        for provider_id, config in CHAT_PROVIDERS.items()
    }
