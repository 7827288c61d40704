from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import pytest

PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


class FakeAdapter:
    """In-memory ChatAdapter that records every call."""

    def __init__(self, provider: str = "telegram") -> None:
        self.provider = provider
        self.sent: list[tuple[str, str]] = []
        self.edits: list[tuple[str, str, str]] = []
        self.reactions: list[tuple[str, str]] = []
        self.removed_reactions: list[tuple[str, str]] = []
        self.edit_results: list[bool] = []
        self.send_result: Optional[str] = None
        self.on_message = None
        self.started = False
        self.stopped = False
        self._next_id = 0

    async def start(self, on_message) -> None:
        self.on_message = on_message
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def send_message(self, chat_id: str, text: str) -> Optional[str]:
        self.sent.append((chat_id, text))
        if self.send_result is not None:
            return self.send_result or None
        self._next_id += 1
        return f"pm{self._next_id}"

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        self.edits.append((chat_id, message_id, text))
        if self.edit_results:
            return self.edit_results.pop(0)
        return True

    async def add_reaction(self, message_id: str, emoji: str) -> Optional[str]:
        self.reactions.append((message_id, emoji))
        return f"r-{message_id}"

    async def remove_reaction(self, message_id: str, reaction_id: str) -> None:
        self.removed_reactions.append((message_id, reaction_id))


class FakeClient:
    """AssistantClient stand-in with scripted sessions and streams."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.prompts: list[tuple[str, list[dict[str, Any]]]] = []
        self.session_ids: list[str] = []
        self.streams: list[Any] = []
        self.subscribe_calls = 0

    async def create_session(self, title: str) -> str:
        self.created.append(title)
        if self.session_ids:
            return self.session_ids.pop(0)
        return f"ses_{len(self.created)}"

    async def prompt(self, session_id: str, parts: list[dict[str, Any]]) -> None:
        self.prompts.append((session_id, list(parts)))

    async def subscribe(self) -> AsyncIterator[Any]:
        self.subscribe_calls += 1
        if not self.streams:
            raise ConnectionError("no stream scripted")
        item = self.streams.pop(0)
        if isinstance(item, Exception):
            raise item
        return _iterate(item)


async def _iterate(events: list[Any]) -> AsyncIterator[Any]:
    for event in events:
        yield event


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()
