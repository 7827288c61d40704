from __future__ import annotations

import logging
from threading import Lock
from typing import Optional

from core.types import SessionContext, make_chat_key

_log = logging.getLogger("opencode-bridge.session_store")


class SessionRegistry:
    """In-memory mapping between assistant sessions and chats.

    Owns: chat key -> session id, session id -> (chat context, adapter key,
    active outbound message), and message id -> (role, session id).
    Everything is rebuilt from live traffic; nothing is persisted.
    """

    def __init__(self) -> None:
        self._chat_sessions: dict[str, str] = {}
        self._contexts: dict[str, SessionContext] = {}
        self._adapter_keys: dict[str, str] = {}
        self._active_messages: dict[str, str] = {}
        self._message_roles: dict[str, str] = {}
        self._message_sessions: dict[str, str] = {}
        self._lock = Lock()

    def register(self, session_id: str, adapter_key: str, context: SessionContext) -> None:
        """Bind a session to the chat (and adapter) it reports back to."""
        if not session_id:
            return
        with self._lock:
            self._contexts[session_id] = context
            self._adapter_keys[session_id] = adapter_key
            self._chat_sessions[make_chat_key(adapter_key, context.chat_id)] = session_id
        _log.debug("Registered session %s -> %s:%s", session_id, adapter_key, context.chat_id)

    def lookup(self, session_id: str) -> Optional[SessionContext]:
        with self._lock:
            return self._contexts.get(session_id)

    def lookup_chat(self, adapter_key: str, chat_id: str) -> Optional[str]:
        """Session currently serving a chat, if any."""
        with self._lock:
            return self._chat_sessions.get(make_chat_key(adapter_key, chat_id))

    def adapter_key_for(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._adapter_keys.get(session_id)

    def set_active_message(self, session_id: str, message_id: str) -> None:
        with self._lock:
            self._active_messages[session_id] = message_id

    def active_message(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._active_messages.get(session_id)

    def active_messages(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._active_messages.items())

    def record_role(self, message_id: str, role: str, session_id: Optional[str] = None) -> None:
        with self._lock:
            self._message_roles[message_id] = role
            if session_id:
                self._message_sessions[message_id] = session_id

    def role_of(self, message_id: str) -> Optional[str]:
        with self._lock:
            return self._message_roles.get(message_id)

    def session_of_message(self, message_id: str) -> Optional[str]:
        with self._lock:
            return self._message_sessions.get(message_id)

    def forget_message(self, message_id: str) -> None:
        with self._lock:
            self._message_roles.pop(message_id, None)
            self._message_sessions.pop(message_id, None)
            for session_id, active in list(self._active_messages.items()):
                if active == message_id:
                    self._active_messages.pop(session_id, None)

    def remove(self, session_id: str) -> Optional[SessionContext]:
        """Drop a session and every mapping that points at it."""
        with self._lock:
            context = self._contexts.pop(session_id, None)
            adapter_key = self._adapter_keys.pop(session_id, None)
            self._active_messages.pop(session_id, None)
            if context is not None and adapter_key is not None:
                chat_key = make_chat_key(adapter_key, context.chat_id)
                if self._chat_sessions.get(chat_key) == session_id:
                    self._chat_sessions.pop(chat_key, None)
            for message_id, owner in list(self._message_sessions.items()):
                if owner == session_id:
                    self._message_sessions.pop(message_id, None)
                    self._message_roles.pop(message_id, None)
        if context is not None:
            _log.info("Removed session %s (chat=%s)", session_id, context.chat_id)
        return context

    def invalidate_chat(self, adapter_key: str, chat_id: str) -> Optional[str]:
        """Forget which session serves a chat so the next message provisions anew."""
        with self._lock:
            return self._chat_sessions.pop(make_chat_key(adapter_key, chat_id), None)

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._contexts)

    def clear(self) -> None:
        with self._lock:
            self._chat_sessions.clear()
            self._contexts.clear()
            self._adapter_keys.clear()
            self._active_messages.clear()
            self._message_roles.clear()
            self._message_sessions.clear()
