from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, AsyncIterator, Optional, Protocol, runtime_checkable


def make_chat_key(adapter_key: str, chat_id: str) -> str:
    """Generate collision-free chat key across adapters."""
    if not adapter_key:
        raise ValueError("adapter_key is required")
    return f"{adapter_key}:{chat_id}"


def text_part(text: str) -> dict[str, Any]:
    """Build a text message part for prompt submission."""
    return {"type": "text", "text": text}


@dataclass
class ObservedEvent:
    """Canonical event after envelope normalization."""

    type: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionContext:
    """Chat that an assistant session reports back to."""

    chat_id: str
    sender_id: str


@dataclass
class MessageBuffer:
    """Accumulated content for one outbound chat message."""

    platform_msg_id: Optional[str] = None
    reasoning_text: str = ""
    main_text: str = ""
    last_display_hash: Optional[str] = None
    last_update_time: float = 0.0
    last_flushed_at: float = 0.0
    session_id: Optional[str] = None
    finished: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.reasoning_text) or bool(self.main_text)


@dataclass
class PendingAuthorizationState:
    """A chat waiting on the user to resolve a permission block."""

    key: str
    adapter_key: str
    chat_id: str
    sender_id: str
    session_id: str
    blocked_reason: str
    source: str
    deferred_parts: list[dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    due_at: float = 0.0


@dataclass
class ParsedSections:
    """Markdown transcript split into display buckets."""

    thinking: str = ""
    answer: str = ""
    tools: str = ""
    status: str = ""

    def is_blank(self) -> bool:
        return not any(
            part.strip() for part in (self.thinking, self.answer, self.tools, self.status)
        )


@runtime_checkable
class AssistantClient(Protocol):
    """Interface to the assistant server the bridge relays."""

    async def subscribe(self) -> AsyncIterator[Any]:
        """Connect and return an iterator over raw session-scoped events."""
        ...

    async def create_session(self, title: str) -> str:
        """Create a session and return its id."""
        ...

    async def prompt(self, session_id: str, parts: list[dict[str, Any]]) -> None:
        """Submit message parts to a session."""
        ...
