"""Throttled, de-duplicated delivery of message buffers to chat adapters.

Only this module initiates send/edit calls against a buffer's platform
message id. Edits are bounded per provider (minimum interval, one retry,
optional fallback to a new message), skipped when the rendered content is
unchanged, and never run twice concurrently for the same message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from core.buffers import MessageBufferStore, build_display, simple_hash
from platforms.protocol import ChatAdapter

if TYPE_CHECKING:
    from core.session_store import SessionRegistry

_log = logging.getLogger("opencode-bridge.delivery")


@dataclass(frozen=True)
class ProviderPolicy:
    """Edit throttling and failure handling for one chat provider."""

    min_edit_interval: float
    retry_delay: float
    fallback_to_send: bool


# Feishu/Lark rate-limits updates per message; sending a new message as a
# substitute for a rejected edit multiplies visible spam there.
PROVIDER_POLICIES: dict[str, ProviderPolicy] = {
    "feishu": ProviderPolicy(min_edit_interval=2.5, retry_delay=0.5, fallback_to_send=False),
    "lark": ProviderPolicy(min_edit_interval=2.5, retry_delay=0.5, fallback_to_send=False),
    "telegram": ProviderPolicy(min_edit_interval=0.12, retry_delay=0.06, fallback_to_send=True),
}
DEFAULT_POLICY = ProviderPolicy(min_edit_interval=0.5, retry_delay=0.5, fallback_to_send=True)


def provider_of(adapter: object) -> Optional[str]:
    provider = getattr(adapter, "provider", None)
    return provider if isinstance(provider, str) else None


def policy_for(provider: Optional[str]) -> ProviderPolicy:
    if not provider:
        return DEFAULT_POLICY
    return PROVIDER_POLICIES.get(provider.lower(), DEFAULT_POLICY)


async def safe_edit_with_retry(
    adapter: ChatAdapter,
    chat_id: str,
    platform_msg_id: str,
    content: str,
    policy: Optional[ProviderPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[str]:
    """Edit a message, retrying once, then fall back or give up.

    Returns:
        The message id to keep (the same id on success, a new id when the
        fallback sent a fresh message), or None when the edit was dropped.
        Never raises.
    """
    policy = policy or policy_for(provider_of(adapter))

    for attempt in ("first try", "retry"):
        ok = False
        try:
            ok = bool(await adapter.edit_message(chat_id, platform_msg_id, content))
        except Exception as exc:
            _log.warning(
                "Edit threw on %s chat=%s msg=%s content_len=%d: %s",
                attempt, chat_id, platform_msg_id, len(content), exc,
            )
        if ok:
            return platform_msg_id
        _log.warning(
            "Edit failed on %s chat=%s msg=%s content_len=%d",
            attempt, chat_id, platform_msg_id, len(content),
        )
        if attempt == "first try":
            await sleep(policy.retry_delay)

    if not policy.fallback_to_send:
        _log.warning(
            "Edit fallback disabled chat=%s msg=%s provider=%s",
            chat_id, platform_msg_id, provider_of(adapter),
        )
        return None

    try:
        sent = await adapter.send_message(chat_id, content)
    except Exception as exc:
        _log.warning("Fallback send failed chat=%s prev_msg=%s: %s", chat_id, platform_msg_id, exc)
        return None
    if sent:
        _log.info("Fallback send created new message chat=%s prev_msg=%s new_msg=%s", chat_id, platform_msg_id, sent)
    return sent or None


class FlushEngine:
    """Decides when a buffer's content is pushed to the chat surface."""

    def __init__(
        self,
        buffers: MessageBufferStore,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._buffers = buffers
        self._clock = clock
        self._sleep = sleep
        self._in_flight: set[tuple[str, str]] = set()

    @property
    def in_flight(self) -> frozenset[tuple[str, str]]:
        return frozenset(self._in_flight)

    async def flush(
        self,
        adapter: ChatAdapter,
        chat_id: str,
        message_id: str,
        *,
        force: bool = False,
        final: bool = False,
    ) -> bool:
        """Send or edit the message for a buffer if it is due.

        Args:
            force: Bypass the time throttle (step finished, stream closing)
            final: Mark the buffer finished once this flush is delivered

        Returns:
            True if the chat surface now shows the buffer's content
        """
        buffer = self._buffers.get(message_id)
        if buffer is None:
            return False

        policy = policy_for(provider_of(adapter))
        now = self._clock()
        should_update = (
            force
            or not buffer.platform_msg_id
            or (now - buffer.last_update_time) > policy.min_edit_interval
        )
        if not should_update or not buffer.has_content:
            return False

        content = build_display(buffer)
        if not content.strip():
            return False

        content_hash = simple_hash(content)
        if buffer.platform_msg_id and content_hash == buffer.last_display_hash:
            if final:
                buffer.finished = True
            return True

        target = buffer.platform_msg_id or f"new:{message_id}"
        flight_key = (chat_id, target)
        if flight_key in self._in_flight:
            _log.debug("Skip flush in-flight chat=%s msg=%s", chat_id, target)
            return False

        # Every attempt consumes throttle budget, successful or not.
        buffer.last_update_time = now
        self._in_flight.add(flight_key)
        try:
            if not buffer.platform_msg_id:
                delivered_id = await self._send_new(adapter, chat_id, content)
            else:
                delivered_id = await safe_edit_with_retry(
                    adapter, chat_id, buffer.platform_msg_id, content, policy, sleep=self._sleep,
                )
        finally:
            self._in_flight.discard(flight_key)

        if not delivered_id:
            return False
        buffer.platform_msg_id = delivered_id
        buffer.last_display_hash = content_hash
        buffer.last_update_time = self._clock()
        buffer.last_flushed_at = buffer.last_update_time
        if final:
            buffer.finished = True
        return True

    async def _send_new(self, adapter: ChatAdapter, chat_id: str, content: str) -> Optional[str]:
        try:
            sent = await adapter.send_message(chat_id, content)
        except Exception as exc:
            _log.warning("Send failed chat=%s content_len=%d: %s", chat_id, len(content), exc)
            return None
        if not sent:
            _log.warning("Send returned no message id chat=%s", chat_id)
            return None
        return sent

    async def flush_all(
        self,
        registry: "SessionRegistry",
        get_adapter: Callable[[str], Optional[ChatAdapter]],
    ) -> int:
        """Force-flush the active message of every known session."""
        flushed = 0
        for session_id, message_id in registry.active_messages():
            context = registry.lookup(session_id)
            adapter_key = registry.adapter_key_for(session_id)
            if context is None or adapter_key is None:
                continue
            adapter = get_adapter(adapter_key)
            if adapter is None:
                continue
            if await self.flush(adapter, context.chat_id, message_id, force=True):
                flushed += 1
        return flushed

    def reset(self) -> None:
        self._in_flight.clear()
