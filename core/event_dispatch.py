from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from core.authorization import (
    SOURCE_PERMISSION,
    SOURCE_QUESTION,
    AuthorizationGate,
    render_authorization_prompt,
    render_authorization_status,
)
from core.buffers import BUFFERED_PART_TYPES, MessageBufferStore, apply_part
from core.delivery import FlushEngine
from core.envelope import read_string_field
from core.session_store import SessionRegistry
from core.types import AssistantClient, ObservedEvent, PendingAuthorizationState, make_chat_key
from platforms.protocol import ChatAdapter

_log = logging.getLogger("opencode-bridge.event_dispatch")


def _mapping(value: Any) -> Optional[Mapping[str, Any]]:
    return value if isinstance(value, Mapping) else None


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    error_map = _mapping(error)
    if error_map is None:
        return "unknown error"
    data = _mapping(error_map.get("data"))
    return (
        read_string_field(data, "message")
        or read_string_field(error_map, "message", "name")
        or "unknown error"
    )


class EventDispatcher:
    """Routes normalized assistant events to buffers, delivery and the gate."""

    def __init__(
        self,
        registry: SessionRegistry,
        buffers: MessageBufferStore,
        engine: FlushEngine,
        gate: AuthorizationGate,
        get_adapter: Callable[[str], Optional[ChatAdapter]],
        client: Optional[AssistantClient] = None,
    ) -> None:
        self._registry = registry
        self._buffers = buffers
        self._engine = engine
        self._gate = gate
        self._get_adapter = get_adapter
        self._client = client
        # session id -> part id -> (message id, part type)
        self._part_types: dict[str, dict[str, tuple[str, str]]] = {}
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "message.updated": self._on_message_updated,
            "message.removed": self._on_message_removed,
            "message.part.updated": self._on_part,
            "message.part.delta": self._on_part,
            "message.part.removed": self._on_part_removed,
            "session.status": self._on_session_status,
            "session.idle": self._on_session_idle,
            "session.error": self._on_session_error,
            "session.deleted": self._on_session_deleted,
            "permission.asked": self._on_permission_asked,
            "permission.updated": self._on_permission_asked,
            "permission.replied": self._on_block_answered,
            "question.asked": self._on_question_asked,
            "question.replied": self._on_block_answered,
            "question.rejected": self._on_block_answered,
            "command.executed": self._on_command_executed,
        }

    async def handle(self, event: ObservedEvent) -> None:
        """Process one event. Never raises."""
        handler = self._handlers.get(event.type)
        if handler is None:
            _log.debug("No handler for event type=%s", event.type)
            return
        try:
            await handler(event.properties or {})
        except Exception:
            _log.exception("Event handler failed type=%s", event.type)

    async def flush_all(self) -> int:
        return await self._engine.flush_all(self._registry, self._get_adapter)

    def reset(self) -> None:
        """Drop all in-memory dispatch state."""
        self._part_types.clear()
        self._buffers.clear()
        self._registry.clear()
        self._gate.clear()
        self._engine.reset()

    # --- helpers ---

    def _target(self, session_id: Optional[str]) -> Optional[tuple[ChatAdapter, str, str]]:
        """(adapter, adapter_key, chat_id) for a session, if it is routable."""
        if not session_id:
            return None
        context = self._registry.lookup(session_id)
        adapter_key = self._registry.adapter_key_for(session_id)
        if context is None or adapter_key is None:
            return None
        adapter = self._get_adapter(adapter_key)
        if adapter is None:
            _log.warning("No adapter registered for key=%s", adapter_key)
            return None
        return adapter, adapter_key, context.chat_id

    async def _notify(self, adapter: ChatAdapter, chat_id: str, text: str) -> None:
        try:
            await adapter.send_message(chat_id, text)
        except Exception as exc:
            _log.warning("Notification send failed chat=%s: %s", chat_id, exc)

    async def _flush(self, session_id: str, message_id: str, *, force: bool = False, final: bool = False) -> None:
        target = self._target(session_id)
        if target is None:
            return
        adapter, _, chat_id = target
        await self._engine.flush(adapter, chat_id, message_id, force=force, final=final)

    async def _finish_session_turn(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        active = self._registry.active_message(session_id)
        if active:
            await self._flush(session_id, active, force=True, final=True)
        evicted = self._buffers.evict_finished(session_id, keep=active)
        if evicted:
            _log.debug("Evicted %d finished buffers session=%s", evicted, session_id)
        self._forget_parts(lambda mid: mid != active, session_id)

    def _forget_parts(self, matches: Callable[[str], bool], session_id: Optional[str] = None) -> None:
        """Drop remembered part types whose message id matches."""
        sessions = [session_id] if session_id else list(self._part_types)
        for sid in sessions:
            parts = self._part_types.get(sid)
            if parts is None:
                continue
            for part_id in [pid for pid, (mid, _) in parts.items() if matches(mid)]:
                del parts[part_id]
            if not parts:
                del self._part_types[sid]

    def _drop_session(self, session_id: str) -> None:
        self._part_types.pop(session_id, None)
        self._gate.release_session(session_id)
        self._buffers.remove_many(self._buffers.for_session(session_id))
        self._registry.remove(session_id)

    async def _expire_overdue(self) -> None:
        for state in self._gate.expire_overdue():
            adapter = self._get_adapter(state.adapter_key)
            if adapter is not None:
                await self._notify(adapter, state.chat_id, render_authorization_status("timeout"))

    # --- message lifecycle ---

    async def _on_message_updated(self, props: Mapping[str, Any]) -> None:
        info = _mapping(props.get("info"))
        message_id = read_string_field(info, "id")
        role = read_string_field(info, "role")
        if info is None or not message_id or not role:
            _log.debug("message.updated without id/role")
            return
        session_id = read_string_field(info, "sessionID") or read_string_field(props, "sessionID")
        self._registry.record_role(message_id, role, session_id)

        times = _mapping(info.get("time"))
        if role == "assistant" and session_id and times and times.get("completed"):
            if message_id in self._buffers:
                await self._flush(session_id, message_id, force=True, final=True)

    async def _on_message_removed(self, props: Mapping[str, Any]) -> None:
        message_id = read_string_field(props, "messageID")
        if not message_id:
            return
        self._buffers.remove(message_id)
        self._registry.forget_message(message_id)
        self._forget_parts(lambda mid: mid == message_id)

    async def _on_part(self, props: Mapping[str, Any]) -> None:
        part = _mapping(props.get("part"))
        session_id = read_string_field(part, "sessionID") or read_string_field(props, "sessionID")
        message_id = read_string_field(part, "messageID") or read_string_field(props, "messageID")
        part_id = read_string_field(part, "id") or read_string_field(props, "partID")
        part_type = read_string_field(part, "type")
        if part_type and part_id and session_id and message_id:
            self._part_types.setdefault(session_id, {})[part_id] = (message_id, part_type)
        elif part_id and not part_type:
            known = self._part_types.get(session_id or "", {}).get(part_id)
            part_type = known[1] if known else read_string_field(props, "field")

        if not session_id or not message_id or not part_type:
            _log.debug("Part event missing ids session=%s message=%s type=%s", session_id, message_id, part_type)
            return
        if self._registry.role_of(message_id) == "user":
            return
        if self._registry.lookup(session_id) is None:
            return

        if part_type in BUFFERED_PART_TYPES:
            delta = props.get("delta")
            text = part.get("text") if part is not None else None
            buffer = self._buffers.get_or_create(message_id, session_id)
            apply_part(
                buffer,
                part_type,
                text=text if isinstance(text, str) else None,
                delta=delta if isinstance(delta, str) else None,
            )
            self._registry.set_active_message(session_id, message_id)
            await self._flush(session_id, message_id)
        elif part_type == "step-finish":
            _log.debug("Step finished session=%s, force flush", session_id)
            target = message_id if message_id in self._buffers else self._registry.active_message(session_id)
            if target:
                await self._flush(session_id, target, force=True)
        else:
            _log.debug("Ignoring part type=%s session=%s", part_type, session_id)

    async def _on_part_removed(self, props: Mapping[str, Any]) -> None:
        part_id = read_string_field(props, "partID")
        if not part_id:
            return
        session_id = read_string_field(props, "sessionID")
        sessions = [session_id] if session_id else list(self._part_types)
        for sid in sessions:
            self._part_types.get(sid, {}).pop(part_id, None)

    # --- session lifecycle ---

    async def _on_session_status(self, props: Mapping[str, Any]) -> None:
        session_id = read_string_field(props, "sessionID")
        status = _mapping(props.get("status"))
        status_type = read_string_field(status, "type")
        if status_type == "idle":
            await self._finish_session_turn(session_id)
        elif status_type == "retry":
            _log.info(
                "Session %s retrying attempt=%s: %s",
                session_id,
                status.get("attempt") if status else None,
                read_string_field(status, "message"),
            )

    async def _on_session_idle(self, props: Mapping[str, Any]) -> None:
        await self._finish_session_turn(read_string_field(props, "sessionID"))

    async def _on_session_error(self, props: Mapping[str, Any]) -> None:
        session_id = read_string_field(props, "sessionID")
        if not session_id:
            _log.warning("session.error without session: %s", _error_message(props.get("error")))
            return
        target = self._target(session_id)
        if target is not None:
            adapter, _, chat_id = target
            active = self._registry.active_message(session_id)
            if active:
                await self._engine.flush(adapter, chat_id, active, force=True, final=True)
            await self._notify(adapter, chat_id, f"❌ Session error: {_error_message(props.get('error'))}")
        self._drop_session(session_id)

    async def _on_session_deleted(self, props: Mapping[str, Any]) -> None:
        info = _mapping(props.get("info"))
        session_id = read_string_field(props, "sessionID") or read_string_field(info, "id")
        if session_id:
            self._drop_session(session_id)

    # --- permission / question lifecycle ---

    async def _open_block(self, session_id: Optional[str], reason: str, source: str) -> None:
        await self._expire_overdue()
        target = self._target(session_id)
        if target is None or not session_id:
            return
        adapter, adapter_key, chat_id = target
        context = self._registry.lookup(session_id)
        state, created = self._gate.block(
            key=make_chat_key(adapter_key, chat_id),
            adapter_key=adapter_key,
            chat_id=chat_id,
            sender_id=context.sender_id if context else "",
            session_id=session_id,
            reason=reason,
            source=source,
        )
        if created:
            await self._notify(adapter, chat_id, render_authorization_prompt(state))

    async def _on_permission_asked(self, props: Mapping[str, Any]) -> None:
        session_id = read_string_field(props, "sessionID")
        reason = read_string_field(props, "title", "permission", "type") or ""
        patterns = props.get("patterns") or props.get("pattern")
        if isinstance(patterns, list) and patterns:
            reason = f"{reason} ({', '.join(str(p) for p in patterns)})" if reason else ", ".join(str(p) for p in patterns)
        elif isinstance(patterns, str) and patterns:
            reason = f"{reason} ({patterns})" if reason else patterns
        await self._open_block(session_id, reason, SOURCE_PERMISSION)

    async def _on_question_asked(self, props: Mapping[str, Any]) -> None:
        session_id = read_string_field(props, "sessionID")
        questions = props.get("questions")
        texts: list[str] = []
        if isinstance(questions, list):
            for item in questions:
                text = read_string_field(_mapping(item), "question", "header")
                if text:
                    texts.append(text)
        reason = "; ".join(texts) or read_string_field(props, "question") or ""
        await self._open_block(session_id, reason, SOURCE_QUESTION)

    async def _on_block_answered(self, props: Mapping[str, Any]) -> None:
        session_id = read_string_field(props, "sessionID")
        if not session_id:
            return
        state = self._gate.release_session(session_id)
        if state is None or not state.deferred_parts:
            return
        await self._replay(state)

    async def _replay(self, state: PendingAuthorizationState) -> None:
        adapter = self._get_adapter(state.adapter_key)
        if self._client is None:
            _log.warning("No assistant client to replay deferred input session=%s", state.session_id)
            return
        try:
            await self._client.prompt(state.session_id, list(state.deferred_parts))
        except Exception as exc:
            _log.warning("Replay of deferred input failed session=%s: %s", state.session_id, exc)
            if adapter is not None:
                await self._notify(adapter, state.chat_id, f"❌ Error: {exc}")
            return
        if adapter is not None:
            await self._notify(adapter, state.chat_id, render_authorization_status("resume"))

    async def _on_command_executed(self, props: Mapping[str, Any]) -> None:
        _log.info(
            "Command executed name=%s session=%s",
            read_string_field(props, "name"),
            read_string_field(props, "sessionID"),
        )
