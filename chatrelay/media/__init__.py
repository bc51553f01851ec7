"""Image and video generation adapter package.

Scope:
    Provides text-to-image and text-to-animation provider adapters plus the
    catalogue used to register them with the provider registry.

Non-goals:
    - No upload of generated media to external image hosts.
    - No long-term storage; results are returned as base64 data URIs.
"""
