"""
Interactive terminal client and server entrypoints for ChatRelay.

Architectural role:
- `main()`: terminal chat over a running server's HTTP surface.
- `serve()`: runs the FastAPI app with uvicorn.

Interface responsibilities:
- Accept stdin prompts and render streamed tokens to stdout.
- Keep the session history in memory; it is sent with every turn.
- Handle local control commands.

Request lifecycle (per user turn, CLI):
1. Read a single line from stdin.
2. Handle local control commands (`exit`/`quit`, `empty chat`/`clear chat`,
   `/provider <id>`, `/models`, `/image <prompt>`, `/optimize <prompt>`).
3. Send regular prompts to `POST /api/chat` with the current history.
4. Print tokens as they arrive; append the turn to history when it ends.

Error handling strategy:
- EOF and keyboard interrupts end the loop without traceback output.
- Server-side errors and transport failures are printed; the loop continues.
- Turns that end with an `error` envelope are not added to history.

Side effects:
- Writes generated images into the current working directory.
"""

from dotenv import load_dotenv

load_dotenv()

import base64
import os
import sys
import time

import requests

from chatrelay.api.client import DEFAULT_BASE_URL, RelayAPIError, RelayClient
from chatrelay.core.types import EnvelopeType, Message, Role
from chatrelay.llm.provider_config import CHAT_PROVIDERS
from chatrelay.logging_config import configure_logging


BASE_URL = os.getenv("CHATRELAY_URL", DEFAULT_BASE_URL)
DEFAULT_PROVIDER = os.getenv("CHATRELAY_PROVIDER", next(iter(CHAT_PROVIDERS)))


# =========================================================
# UTF-8 SAFE STDOUT
# Best-effort UTF-8 console output without failing startup.
# =========================================================

if hasattr(sys.stdout, "reconfigure"):
    try:
        sys.stdout.reconfigure(encoding="utf-8", errors="ignore")
    except (AttributeError, ValueError):
        pass


def save_data_uri(data_uri: str, stem: str) -> str:
    """Decode a `data:<mime>;base64,...` payload into a local file."""
    header, encoded = data_uri.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0]
    extension = mime_type.split("/", 1)[-1] or "bin"
    path = f"{stem}.{extension}"
    with open(path, "wb") as f:
        f.write(base64.b64decode(encoded))
    return path


# =========================================================
# TURN HANDLERS
# =========================================================

def run_chat_turn(client: RelayClient, provider_id: str, question: str, history: list) -> None:
    """Stream one turn and record it in `history` when it completes."""
    reply = []
    failed = None

    for envelope in client.stream_chat(question, provider_id, history):
        if envelope.type is EnvelopeType.TOKEN:
            reply.append(envelope.data)
            print(envelope.data, end="", flush=True)
        elif envelope.type is EnvelopeType.ERROR:
            failed = envelope.data

    print()

    if failed:
        print(f"\n[error] {failed}")
        return

    history.append(Message(role=Role.USER, content=question))
    history.append(
        Message(role=Role.ASSISTANT, content="".join(reply), provider_id=client.last_provider)
    )
    if client.last_provider and client.last_provider != provider_id:
        print(f"\n(answered by {client.last_provider})")


def run_image_command(client: RelayClient, prompt: str) -> None:
    result = client.generate_image(prompt)
    path = save_data_uri(result["mediaPayload"], f"chatrelay-image-{int(time.time())}")
    print(f"Image from {result['providerUsed']} saved to {path}")


def run_optimize_command(client: RelayClient, provider_id: str, prompt: str) -> None:
    result = client.optimize_prompt(prompt, provider_id)
    print(result["optimized"])
    for improvement in result["improvements"]:
        print(f"  - {improvement}")


def print_models(client: RelayClient) -> None:
    listing = client.list_models()
    for provider_id, configured in listing["providers"].items():
        print(f"  {provider_id:<10} {'configured' if configured else 'missing key'}")


# =========================================================
# MAIN APPLICATION LOOP
# =========================================================

def main():
    """Run the interactive terminal session against `CHATRELAY_URL`."""
    configure_logging()

    client = RelayClient(BASE_URL)
    provider_id = DEFAULT_PROVIDER
    history = []

    print(f"ChatRelay client started against {BASE_URL}. (Type 'exit' to quit)\n")
    print(f"Provider: {provider_id}")
    print("-" * 60)

    while True:

        try:
            question = input("You: ").strip()

        except EOFError:
            print("\nSession ended.")
            break

        except KeyboardInterrupt:
            print("\nInterrupted.")
            break

        if not question:
            continue

        lowered = question.lower()

        if lowered in ("exit", "quit"):
            print("Shutting down.")
            break

        if lowered in ("empty chat", "clear chat"):
            history.clear()
            print("Chat cleared.")
            continue

        try:
            if lowered.startswith("/provider"):
                requested = question[len("/provider"):].strip()
                if requested not in CHAT_PROVIDERS:
                    print(f"Unknown provider. Available: {', '.join(CHAT_PROVIDERS)}")
                else:
                    provider_id = requested
                    print(f"Provider: {provider_id}")

            elif lowered == "/models":
                print_models(client)

            elif lowered.startswith("/image "):
                run_image_command(client, question[len("/image "):].strip())

            elif lowered.startswith("/optimize "):
                run_optimize_command(client, provider_id, question[len("/optimize "):].strip())

            else:
                print("\nAssistant:\n")
                run_chat_turn(client, provider_id, question, history)

        except RelayAPIError as exc:
            print(f"[{exc.status_code}] {exc.message}")

        except requests.RequestException as exc:
            print(f"Server unreachable: {exc}")

        print("\n" + "-" * 60 + "\n")


def serve():
    """Run the HTTP API with uvicorn (`HOST`/`PORT` from the environment)."""
    import uvicorn

    configure_logging()
    uvicorn.run(
        "chatrelay.api.http_api:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
