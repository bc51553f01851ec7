"""Core orchestration package.

Architectural role:
    Exposes the request-orchestration layer that sits between API/CLI entrypoints
    and provider adapters.

Composition:
    - `types`: immutable records shared across layers.
    - `config`: orchestrator deadlines and polling limits.
    - `errors`: exception taxonomy and error codes.
    - `registry`: read-only provider catalogue per task type.
    - `fallback`: sequential try-next-on-failure driver.
    - `stream_relay`: provider chunk stream to terminated envelope stream.
    - `wire`: SSE frame encoding and decoding.
    - `engine`: composition root wiring the above per request.

Determinism and side effects:
    Package import itself is deterministic and side-effect free. Network side
    effects happen only inside provider adapters invoked by `fallback`.
"""
