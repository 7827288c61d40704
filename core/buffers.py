from __future__ import annotations

import hashlib
import logging
from typing import Iterable, Iterator, Optional

from core.types import MessageBuffer

_log = logging.getLogger("opencode-bridge.buffers")

THINKING_HEADER = "> 🤔 **Thinking...**"

BUFFERED_PART_TYPES = ("text", "reasoning")


def simple_hash(text: str) -> str:
    """Stable content hash used for edit de-duplication."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def apply_part(
    buffer: MessageBuffer,
    part_type: str,
    text: Optional[str] = None,
    delta: Optional[str] = None,
) -> bool:
    """Merge a part update into the buffer. Returns True if content changed.

    A delta appends to its bucket. A snapshot (no delta) replaces the bucket
    only when strictly longer, so late or out-of-order snapshots never
    truncate content that may already be on screen.
    """
    if part_type not in BUFFERED_PART_TYPES:
        return False
    attr = "reasoning_text" if part_type == "reasoning" else "main_text"
    current: str = getattr(buffer, attr)

    if isinstance(delta, str) and delta:
        setattr(buffer, attr, current + delta)
        return True

    if isinstance(text, str) and len(text) > len(current):
        setattr(buffer, attr, text)
        return True
    return False


def build_display(buffer: MessageBuffer) -> str:
    """Markdown shown in chat: quoted reasoning block, then the answer text."""
    content = ""
    if buffer.reasoning_text:
        reasoning = buffer.reasoning_text.rstrip()
        quoted = "\n".join(f"> {line}" for line in reasoning.split("\n"))
        content += f"{THINKING_HEADER}\n{quoted}\n\n"
    if buffer.main_text:
        content += buffer.main_text
    return content


class MessageBufferStore:
    """One buffer per in-flight outbound message, keyed by message id."""

    def __init__(self) -> None:
        self._buffers: dict[str, MessageBuffer] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._buffers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._buffers))

    def get(self, message_id: str) -> Optional[MessageBuffer]:
        return self._buffers.get(message_id)

    def get_or_create(self, message_id: str, session_id: Optional[str] = None) -> MessageBuffer:
        buffer = self._buffers.get(message_id)
        if buffer is None:
            buffer = MessageBuffer(session_id=session_id)
            self._buffers[message_id] = buffer
            _log.debug("Created buffer message_id=%s session_id=%s", message_id, session_id)
        elif session_id and not buffer.session_id:
            buffer.session_id = session_id
        return buffer

    def remove(self, message_id: str) -> Optional[MessageBuffer]:
        return self._buffers.pop(message_id, None)

    def remove_many(self, message_ids: Iterable[str]) -> int:
        removed = 0
        for message_id in message_ids:
            if self._buffers.pop(message_id, None) is not None:
                removed += 1
        return removed

    def for_session(self, session_id: str) -> list[str]:
        return [mid for mid, buf in self._buffers.items() if buf.session_id == session_id]

    def evict_finished(self, session_id: str, keep: Optional[str] = None) -> int:
        """Drop finished buffers of a session, except the one named by keep."""
        doomed = [
            mid for mid, buf in self._buffers.items()
            if buf.session_id == session_id and buf.finished and mid != keep
        ]
        return self.remove_many(doomed)

    def clear(self) -> None:
        self._buffers.clear()
