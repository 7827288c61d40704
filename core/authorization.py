"""Permission-block gate between chat input and the assistant.

While the assistant waits on a permission (or question) that the user must
answer outside the chat, new chat input for that chat is held back. The
next reply decides what happens:

- affirmative token -> resume: deferred input is replayed on the blocked session
- new-session token -> switch: a fresh session takes the deferred input
- anything else     -> re-prompt, state unchanged
- deadline passed   -> timed out: input is handled as ordinary new input

Deadlines are checked against the clock when a decision is made; no timers
are scheduled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from core.types import PendingAuthorizationState

_log = logging.getLogger("opencode-bridge.authorization")

AUTH_TIMEOUT_SECONDS = 15 * 60

SOURCE_INCOMING = "bridge.incoming"
SOURCE_QUESTION = "bridge.question.resume"
SOURCE_PERMISSION = "bridge.permission"

REPLY_RESUME = "resume_blocked"
REPLY_NEW_SESSION = "start_new_session"
REPLY_UNKNOWN = "unknown"
REPLY_EMPTY = "empty"

OUTCOME_IDLE = "idle"
OUTCOME_RESUMED = "resumed"
OUTCOME_SWITCHED = "switched"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_EMPTY = "empty"

_RESUME_TOKENS = frozenset({
    "1", "y", "yes", "ok", "okay", "continue", "resume",
    "继续", "继续原会话", "已授权", "授权好了", "授权完成", "好了", "完成",
})

_NEW_SESSION_TOKENS = frozenset({
    "2", "new", "new session", "new topic", "skip", "start new",
    "新会话", "新话题", "跳过", "先聊别的", "换个话题",
})

_QUOTE_CHARS = str.maketrans("", "", "`'\"“”‘’")


def normalize_token(value: Optional[str]) -> str:
    return (value or "").strip().lower().translate(_QUOTE_CHARS)


def parse_authorization_reply(value: Optional[str]) -> str:
    """Classify a chat reply to an authorization prompt."""
    token = normalize_token(value)
    if not token:
        return REPLY_EMPTY
    if token in _RESUME_TOKENS:
        return REPLY_RESUME
    if token in _NEW_SESSION_TOKENS:
        return REPLY_NEW_SESSION
    return REPLY_UNKNOWN


def render_authorization_prompt(state: PendingAuthorizationState) -> str:
    lines = [
        "## Question",
        "This session needs a permission granted in the OpenCode web UI.",
    ]
    if state.blocked_reason:
        lines.append(f"Reason: {state.blocked_reason}")
    lines.extend([
        "",
        "Reply with:",
        "1. Authorized, continue this session",
        "2. Skip, continue in a new session",
    ])
    return "\n".join(lines)


def render_authorization_reply_hint() -> str:
    return "Reply `1` to continue this session or `2` to switch to a new session."


_STATUS_TEXT = {
    "resume": "✅ Got it, continuing in the original session.",
    "switch-new": "✅ Switched to a new session.",
    "still-blocked": (
        "⚠️ This session is still waiting for web authorization. "
        "Finish it first, or reply `2` to switch to a new session."
    ),
    "timeout": "⏰ No confirmation in time, stopped waiting for authorization. New messages are handled as new input.",
}


def render_authorization_status(mode: str) -> str:
    text = _STATUS_TEXT.get(mode, _STATUS_TEXT["timeout"])
    return f"## Status\n{text}"


@dataclass
class GateDecision:
    """Result of passing one chat message through the gate."""

    outcome: str
    state: Optional[PendingAuthorizationState] = None

    @property
    def passes_through(self) -> bool:
        """True when the message should be handled as ordinary input."""
        return self.outcome in (OUTCOME_IDLE, OUTCOME_TIMED_OUT)


class AuthorizationGate:
    """One pending authorization per chat key."""

    def __init__(
        self,
        timeout_seconds: float = AUTH_TIMEOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._timeout = timeout_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorizationState] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, key: str) -> Optional[PendingAuthorizationState]:
        return self._pending.get(key)

    def pending_for_session(self, session_id: str) -> Optional[PendingAuthorizationState]:
        for state in self._pending.values():
            if state.session_id == session_id:
                return state
        return None

    def block(
        self,
        *,
        key: str,
        adapter_key: str,
        chat_id: str,
        sender_id: str,
        session_id: str,
        reason: str = "",
        source: str = SOURCE_PERMISSION,
        parts: Iterable[dict[str, Any]] = (),
    ) -> tuple[PendingAuthorizationState, bool]:
        """Open a pending state, or extend the existing one for this key.

        Returns:
            (state, created) where created is False when an existing state
            was extended instead.
        """
        now = self._clock()
        existing = self._pending.get(key)
        if existing is not None:
            existing.session_id = session_id or existing.session_id
            existing.blocked_reason = reason or existing.blocked_reason
            existing.source = source
            existing.deferred_parts.extend(parts)
            existing.due_at = now + self._timeout
            _log.info("Extended pending authorization key=%s session=%s", key, existing.session_id)
            return existing, False

        state = PendingAuthorizationState(
            key=key,
            adapter_key=adapter_key,
            chat_id=chat_id,
            sender_id=sender_id,
            session_id=session_id,
            blocked_reason=reason,
            source=source,
            deferred_parts=list(parts),
            created_at=now,
            due_at=now + self._timeout,
        )
        self._pending[key] = state
        _log.info("Pending authorization key=%s session=%s source=%s", key, session_id, source)
        return state, True

    def defer(self, key: str, parts: Iterable[dict[str, Any]]) -> bool:
        state = self._pending.get(key)
        if state is None:
            return False
        state.deferred_parts.extend(parts)
        return True

    def resolve(self, key: str, text: Optional[str]) -> GateDecision:
        """Pass a chat message through the gate for this key."""
        state = self._pending.get(key)
        if state is None:
            return GateDecision(OUTCOME_IDLE)

        if self._clock() >= state.due_at:
            self._pending.pop(key, None)
            _log.info("Authorization timed out key=%s session=%s", key, state.session_id)
            return GateDecision(OUTCOME_TIMED_OUT, state)

        reply = parse_authorization_reply(text)
        if reply == REPLY_RESUME:
            self._pending.pop(key, None)
            return GateDecision(OUTCOME_RESUMED, state)
        if reply == REPLY_NEW_SESSION:
            self._pending.pop(key, None)
            return GateDecision(OUTCOME_SWITCHED, state)
        if reply == REPLY_EMPTY:
            return GateDecision(OUTCOME_EMPTY, state)
        return GateDecision(OUTCOME_UNKNOWN, state)

    def release_session(self, session_id: str) -> Optional[PendingAuthorizationState]:
        """Drop the pending state of a session whose block was answered elsewhere."""
        for key, state in list(self._pending.items()):
            if state.session_id == session_id:
                self._pending.pop(key, None)
                _log.info("Released pending authorization key=%s session=%s", key, session_id)
                return state
        return None

    def expire_overdue(self) -> list[PendingAuthorizationState]:
        now = self._clock()
        expired = [state for state in self._pending.values() if now >= state.due_at]
        for state in expired:
            self._pending.pop(state.key, None)
        return expired

    def clear(self) -> None:
        self._pending.clear()
