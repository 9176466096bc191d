"""Per-request context for HTTP handlers: flow control, input, negotiation, rendering and debug output."""

__version__ = "0.1.0"

__all__ = ["context", "core", "debug", "inputs", "messages", "rendering"]