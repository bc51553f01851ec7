"""Outer surfaces: FastAPI app, blocking HTTP client, and terminal entrypoints."""
