"""Context bounding package.

This package holds the pure, synchronous helpers that keep a conversation
history within a provider's message and token budget before it is sent
anywhere. It performs no I/O and never persists messages.
"""
