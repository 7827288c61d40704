from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Any, Iterator, Optional

from config import AUTH_TIMEOUT_SECONDS, LOADING_EMOJI
from core.authorization import (
    OUTCOME_EMPTY,
    OUTCOME_RESUMED,
    OUTCOME_SWITCHED,
    OUTCOME_TIMED_OUT,
    OUTCOME_UNKNOWN,
    SOURCE_INCOMING,
    AuthorizationGate,
    render_authorization_reply_hint,
    render_authorization_status,
)
from core.buffers import MessageBufferStore
from core.delivery import FlushEngine
from core.errors import SessionProvisionError
from core.event_dispatch import EventDispatcher
from core.event_flow import EventStreamConnector
from core.session_store import SessionRegistry
from core.types import AssistantClient, SessionContext, make_chat_key, text_part
from platforms.protocol import ChatAdapter, ReactionCapable

_log = logging.getLogger("opencode-bridge.dispatcher")


class AdapterMux:
    """Chat adapters by key (one per configured platform)."""

    def __init__(self) -> None:
        self._adapters: dict[str, ChatAdapter] = {}

    def __len__(self) -> int:
        return len(self._adapters)

    def add(self, key: str, adapter: ChatAdapter) -> None:
        if key in self._adapters:
            raise ValueError(f"Adapter already registered: {key}")
        self._adapters[key] = adapter

    def get(self, key: str) -> Optional[ChatAdapter]:
        return self._adapters.get(key)

    def items(self) -> Iterator[tuple[str, ChatAdapter]]:
        return iter(list(self._adapters.items()))


def session_title(chat_id: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%H:%M:%S")
    return f"Chat {chat_id[-4:]} [{stamp}]"


class Bridge:
    """Central coordinator between chat adapters and the assistant."""

    def __init__(
        self,
        client: AssistantClient,
        *,
        registry: Optional[SessionRegistry] = None,
        buffers: Optional[MessageBufferStore] = None,
        engine: Optional[FlushEngine] = None,
        gate: Optional[AuthorizationGate] = None,
        connector: Optional[EventStreamConnector] = None,
    ) -> None:
        self.client = client
        self.mux = AdapterMux()
        self.registry = registry if registry is not None else SessionRegistry()
        self.buffers = buffers if buffers is not None else MessageBufferStore()
        self.engine = engine if engine is not None else FlushEngine(self.buffers)
        self.gate = gate if gate is not None else AuthorizationGate(AUTH_TIMEOUT_SECONDS)
        self.events = EventDispatcher(
            self.registry, self.buffers, self.engine, self.gate, self.mux.get, client,
        )
        self.connector = connector if connector is not None else EventStreamConnector(client, self.events)

    def add_adapter(self, key: str, adapter: ChatAdapter) -> None:
        self.mux.add(key, adapter)

    async def start(self) -> None:
        for key, adapter in self.mux.items():
            await adapter.start(functools.partial(self.handle_incoming, key))
            _log.info("Adapter started key=%s provider=%s", key, getattr(adapter, "provider", "?"))
        await self.connector.start()

    async def stop(self) -> None:
        await self.connector.stop()
        for key, adapter in self.mux.items():
            try:
                await adapter.stop()
            except Exception:
                _log.exception("Failed to stop adapter key=%s", key)

    async def handle_incoming(
        self,
        adapter_key: str,
        chat_id: str,
        text: str,
        message_id: str,
        sender_id: str,
    ) -> None:
        """Handle one user message from a chat. Never raises."""
        adapter = self.mux.get(adapter_key)
        if adapter is None:
            _log.warning("Incoming message for unknown adapter key=%s", adapter_key)
            return
        _log.info("Incoming message chat=%s sender=%s len=%d", chat_id, sender_id, len(text or ""))

        if (text or "").strip().lower() == "ping":
            await self._send(adapter, chat_id, "Pong! ⚡️")
            return

        reaction_id: Optional[str] = None
        try:
            if message_id:
                reaction_id = await self._add_reaction(adapter, message_id)
            await self._route_input(adapter_key, adapter, chat_id, text or "", sender_id)
        except Exception as exc:
            _log.exception("Failed to relay message chat=%s", chat_id)
            self.registry.invalidate_chat(adapter_key, chat_id)
            await self._send(adapter, chat_id, f"❌ Error: {exc}")
        finally:
            if message_id and reaction_id:
                await self._remove_reaction(adapter, message_id, reaction_id)

    async def _route_input(
        self,
        adapter_key: str,
        adapter: ChatAdapter,
        chat_id: str,
        text: str,
        sender_id: str,
    ) -> None:
        key = make_chat_key(adapter_key, chat_id)
        parts = [text_part(text)]
        decision = self.gate.resolve(key, text)
        state = decision.state

        if decision.outcome == OUTCOME_EMPTY:
            return
        if decision.outcome == OUTCOME_UNKNOWN:
            self.gate.defer(key, parts)
            if state is not None:
                state.source = SOURCE_INCOMING
            await self._send(adapter, chat_id, render_authorization_reply_hint())
            return
        if decision.outcome == OUTCOME_RESUMED and state is not None:
            self.registry.register(state.session_id, adapter_key, SessionContext(chat_id, state.sender_id or sender_id))
            await self._send(adapter, chat_id, render_authorization_status("resume"))
            if state.deferred_parts:
                await self.client.prompt(state.session_id, list(state.deferred_parts))
                _log.info("Replayed %d deferred parts session=%s", len(state.deferred_parts), state.session_id)
            return
        if decision.outcome == OUTCOME_SWITCHED and state is not None:
            self.registry.invalidate_chat(adapter_key, chat_id)
            session_id = await self._ensure_session(adapter_key, chat_id, sender_id)
            await self._send(adapter, chat_id, render_authorization_status("switch-new"))
            if state.deferred_parts:
                await self.client.prompt(session_id, list(state.deferred_parts))
            return
        if decision.outcome == OUTCOME_TIMED_OUT:
            await self._send(adapter, chat_id, render_authorization_status("timeout"))

        session_id = await self._ensure_session(adapter_key, chat_id, sender_id)
        await self.client.prompt(session_id, parts)
        _log.info("Prompt sent session=%s", session_id)

    async def _ensure_session(self, adapter_key: str, chat_id: str, sender_id: str) -> str:
        session_id = self.registry.lookup_chat(adapter_key, chat_id)
        if not session_id:
            session_id = await self.client.create_session(session_title(chat_id))
            if not session_id:
                raise SessionProvisionError("Failed to init session")
            _log.info("Created session %s for chat=%s", session_id, chat_id)
        self.registry.register(session_id, adapter_key, SessionContext(chat_id=chat_id, sender_id=sender_id))
        return session_id

    async def _send(self, adapter: ChatAdapter, chat_id: str, text: str) -> Optional[str]:
        try:
            return await adapter.send_message(chat_id, text)
        except Exception as exc:
            _log.warning("Send failed chat=%s: %s", chat_id, exc)
            return None

    async def _add_reaction(self, adapter: Any, message_id: str) -> Optional[str]:
        if not isinstance(adapter, ReactionCapable):
            return None
        try:
            return await adapter.add_reaction(message_id, LOADING_EMOJI)
        except Exception as exc:
            _log.debug("add_reaction failed msg=%s: %s", message_id, exc)
            return None

    async def _remove_reaction(self, adapter: Any, message_id: str, reaction_id: str) -> None:
        if not isinstance(adapter, ReactionCapable):
            return
        try:
            await adapter.remove_reaction(message_id, reaction_id)
        except Exception as exc:
            _log.debug("remove_reaction failed msg=%s: %s", message_id, exc)
