"""Telegram chat adapter.

Wraps python-telegram-bot's Application to implement the ChatAdapter
protocol: long polling for inbound text, HTML rendering with a plain-text
fallback for outbound messages, and flood-control awareness.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Optional

from telegram import Bot, ReactionTypeEmoji, Update
from telegram.error import RetryAfter
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from config import UNKNOWN_HEADING_POLICY
from ..protocol import ChatAdapter, IncomingMessageHandler
from .formatter import render_chunks, strip_html_tags, unescape_html

_log = logging.getLogger("opencode-bridge.telegram")

MAX_MESSAGE_LENGTH = 4096
REACTION_EMOJI = "👀"
_MESSAGE_CHAT_CACHE_MAX = 1000


def _is_parse_error(error: Exception) -> bool:
    error_str = str(error).lower()
    return "parse entities" in error_str or "can't parse" in error_str


class TelegramAdapter(ChatAdapter):
    """Telegram implementation of the ChatAdapter protocol.

    Handles:
    - Text message intake from allowed chats (long polling)
    - Message sending/editing with HTML -> plain text fallback
    - Long transcripts continued in follow-up messages
    - Flood control: while Telegram asks us to back off, calls fail fast
    - Loading reactions on the user's message
    """

    provider = "telegram"

    def __init__(
        self,
        bot_token: str,
        allowed_chats: Optional[set[int]] = None,
        *,
        bot: Optional[Bot] = None,
        unknown_heading_policy: str = UNKNOWN_HEADING_POLICY,
    ) -> None:
        self._bot_token = bot_token
        self._allowed_chats = allowed_chats or set()
        self._bot = bot
        self._app: Optional[Application] = None
        self._on_message: Optional[IncomingMessageHandler] = None
        self._unknown_heading_policy = unknown_heading_policy
        self._blocked_until = 0.0
        # Reactions are addressed by message id only; remember each message's chat.
        self._message_chats: OrderedDict[str, str] = OrderedDict()
        # First message id -> overflow messages as (message id, last body).
        self._continuations: OrderedDict[str, list[tuple[str, str]]] = OrderedDict()

    @property
    def bot(self) -> Bot:
        if self._bot is not None:
            return self._bot
        if self._app is None:
            raise RuntimeError("TelegramAdapter not started")
        return self._app.bot

    async def start(self, on_message: IncomingMessageHandler) -> None:
        self._on_message = on_message
        self._app = Application.builder().token(self._bot_token).build()
        self._app.add_handler(MessageHandler(
            filters.TEXT & ~filters.COMMAND,
            self._handle_message,
        ))
        await self._app.initialize()
        await self._app.start()
        if self._app.updater:
            await self._app.updater.start_polling()
        _log.info("Telegram polling started")

    async def stop(self) -> None:
        if not self._app:
            return
        try:
            if self._app.updater:
                await self._app.updater.stop()
        except Exception:
            _log.exception("Failed to stop Telegram updater")
        try:
            await self._app.stop()
            await self._app.shutdown()
        except Exception:
            _log.exception("Failed to stop Telegram app")

    def _is_authorized_chat(self, chat_id: Optional[int]) -> bool:
        if not self._allowed_chats:
            return True
        return chat_id is not None and chat_id in self._allowed_chats

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None or not message.text:
            return
        if not self._is_authorized_chat(chat.id):
            _log.info("Ignoring message from unauthorized chat %s", chat.id)
            return
        if self._on_message is None:
            return

        chat_id = str(chat.id)
        message_id = str(message.message_id)
        self._remember_chat(message_id, chat_id)
        sender = update.effective_user
        sender_id = str(sender.id) if sender else ""
        await self._on_message(chat_id, message.text, message_id, sender_id)

    def _remember_chat(self, message_id: str, chat_id: str) -> None:
        self._message_chats[message_id] = chat_id
        while len(self._message_chats) > _MESSAGE_CHAT_CACHE_MAX:
            self._message_chats.popitem(last=False)

    def _flood_blocked(self) -> bool:
        return time.monotonic() < self._blocked_until

    def _note_error(self, context: str, error: Exception) -> None:
        if isinstance(error, RetryAfter):
            retry_after = error.retry_after
            seconds = retry_after.total_seconds() if hasattr(retry_after, "total_seconds") else float(retry_after)
            self._blocked_until = time.monotonic() + seconds
            _log.warning("%s hit flood control, backing off %.1fs", context, seconds)
        else:
            _log.warning("%s failed: %s", context, error)

    def _render(self, text: str) -> list[tuple[str, bool]]:
        return render_chunks(text, self._unknown_heading_policy, MAX_MESSAGE_LENGTH)

    async def _send_chunk(self, chat_id: str, body: str, is_html: bool) -> Optional[str]:
        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=body,
                parse_mode="HTML" if is_html else None,
            )
            return str(msg.message_id)
        except Exception as e:
            if not _is_parse_error(e):
                self._note_error("send_message", e)
                return None

        try:
            msg = await self.bot.send_message(chat_id=chat_id, text=unescape_html(strip_html_tags(body)))
            return str(msg.message_id)
        except Exception as plain_err:
            self._note_error("send_message_plain", plain_err)
            return None

    async def _edit_chunk(self, chat_id: str, message_id: str, body: str, is_html: bool) -> bool:
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=int(message_id),
                text=body,
                parse_mode="HTML" if is_html else None,
            )
            return True
        except Exception as e:
            error_str = str(e).lower()
            # Not an error - message content unchanged
            if "message is not modified" in error_str:
                return True
            if not _is_parse_error(e):
                self._note_error("edit_message", e)
                return False

        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=int(message_id),
                text=unescape_html(strip_html_tags(body)),
            )
            return True
        except Exception as plain_err:
            if "message is not modified" in str(plain_err).lower():
                return True
            self._note_error("edit_message_plain", plain_err)
            return False

    async def _sync_continuations(self, chat_id: str, primary_id: str, chunks: list[tuple[str, bool]]) -> bool:
        """Bring the overflow messages after primary_id in line with chunks."""
        if not chunks and primary_id not in self._continuations:
            return True
        sent = self._continuations.setdefault(primary_id, [])
        self._continuations.move_to_end(primary_id)
        while len(self._continuations) > _MESSAGE_CHAT_CACHE_MAX:
            self._continuations.popitem(last=False)

        ok = True
        for index, (body, is_html) in enumerate(chunks):
            if index < len(sent):
                message_id, last_body = sent[index]
                if body == last_body:
                    continue
                if await self._edit_chunk(chat_id, message_id, body, is_html):
                    sent[index] = (message_id, body)
                else:
                    ok = False
                continue
            message_id = await self._send_chunk(chat_id, body, is_html)
            if message_id is None:
                return False
            sent.append((message_id, body))
        return ok

    async def send_message(self, chat_id: str, text: str) -> Optional[str]:
        """Send a new message; returns its id or None.

        Text longer than one Telegram message continues in follow-up
        messages, which later edits of the first one keep up to date.
        """
        if not text.strip() or self._flood_blocked():
            return None

        chunks = self._render(text)
        message_id = await self._send_chunk(chat_id, *chunks[0])
        if message_id is not None and len(chunks) > 1:
            await self._sync_continuations(chat_id, message_id, chunks[1:])
        return message_id

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        """Edit a message; True when Telegram shows the new content."""
        if self._flood_blocked():
            return False

        chunks = self._render(text)
        if not await self._edit_chunk(chat_id, message_id, *chunks[0]):
            return False
        return await self._sync_continuations(chat_id, message_id, chunks[1:])

    async def add_reaction(self, message_id: str, emoji: str) -> Optional[str]:
        """React to a user's message. Telegram accepts only a fixed emoji set,
        so the platform-neutral emoji name is ignored."""
        chat_id = self._message_chats.get(message_id)
        if chat_id is None:
            return None
        try:
            await self.bot.set_message_reaction(
                chat_id=chat_id,
                message_id=int(message_id),
                reaction=[ReactionTypeEmoji(REACTION_EMOJI)],
            )
            return REACTION_EMOJI
        except Exception as e:
            _log.debug("add_reaction failed: %s", e)
            return None

    async def remove_reaction(self, message_id: str, reaction_id: str) -> None:
        chat_id = self._message_chats.get(message_id)
        if chat_id is None:
            return
        try:
            await self.bot.set_message_reaction(chat_id=chat_id, message_id=int(message_id), reaction=None)
        except Exception as e:
            _log.debug("remove_reaction failed: %s", e)
