"""Chat platform adapters for the OpenCode bridge."""

from .protocol import ChatAdapter, IncomingMessageHandler, ReactionCapable

__all__ = [
    "ChatAdapter",
    "IncomingMessageHandler",
    "ReactionCapable",
]
