"""ChatRelay: request orchestration for multi-provider chat and media generation.

Architectural role:
    Groups the layers that sit between HTTP/CLI entrypoints and remote generation
    backends:
    - `context`: token estimation and history truncation.
    - `core`: provider registry, fallback orchestration, stream relay, wire codec.
    - `llm`: configuration and chat/text provider adapters.
    - `media`: image and video provider adapters.
    - `prompting`: prompt construction for the optimize task.
    - `api`: FastAPI surface, SSE client, and terminal CLI.
"""

__version__ = "0.4.0"
