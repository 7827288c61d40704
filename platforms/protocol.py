"""Protocol definitions for chat platform adapters.

This module defines the capability set that every chat surface must expose
to the bridge. Uses Python's Protocol for structural typing (duck typing with
type hints).
"""

from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

IncomingMessageHandler = Callable[[str, str, str, str], Awaitable[None]]
"""Callback signature: (chat_id, text, message_id, sender_id)."""


@runtime_checkable
class ChatAdapter(Protocol):
    """Abstract messaging operations across chat platforms.

    Implementations handle platform-specific:
    - Rendering of the bridge's markdown into the native message format
    - Transport (polling, websocket long connection, webhook)
    - Translating platform errors into falsy results

    Callers never assume these calls are idempotent and treat a falsy
    result or a raised exception as failure.
    """

    provider: str
    """Platform name driving throttle/fallback policy (e.g. "telegram")."""

    async def start(self, on_message: IncomingMessageHandler) -> None:
        """Start receiving user messages.

        Args:
            on_message: Invoked for each inbound text message
        """
        ...

    async def stop(self) -> None:
        """Stop receiving and release platform resources."""
        ...

    async def send_message(self, chat_id: str, text: str) -> Optional[str]:
        """Send a new message.

        Args:
            chat_id: Target chat
            text: Bridge markdown content

        Returns:
            Platform message id, or None on failure
        """
        ...

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        """Replace the content of a message sent earlier.

        Returns:
            True when the platform accepted the edit
        """
        ...


@runtime_checkable
class ReactionCapable(Protocol):
    """Optional reaction support (loading indicators on user messages)."""

    async def add_reaction(self, message_id: str, emoji: str) -> Optional[str]:
        """Add a reaction and return its id, if the platform has one."""
        ...

    async def remove_reaction(self, message_id: str, reaction_id: str) -> None:
        """Remove a reaction added by add_reaction."""
        ...
