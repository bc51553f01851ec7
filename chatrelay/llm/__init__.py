"""LLM access package.

Architectural role:
    Provides provider configuration, the adapter interface, and transport
    adapters used by the orchestration layer to invoke text-generation backends.

Module split:
    - `provider_config`: environment-driven provider, budget, and deadline config.
    - `base`: `ProviderAdapter` interface and the polling adapter base.
    - `client`: provider-specific HTTP transport and response parsing.
"""
