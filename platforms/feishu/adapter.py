"""Feishu/Lark chat adapter (lark-oapi).

Outbound messages are interactive cards patched in place as the transcript
grows. Inbound text arrives either over the SDK's WebSocket long connection,
which runs in a daemon thread and hands events back to the asyncio loop, or
as HTTP event callbacks served by aiohttp in webhook mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Optional

import lark_oapi as lark
from aiohttp import web
from lark_oapi.api.im.v1 import (
    CreateMessageReactionRequest,
    CreateMessageReactionRequestBody,
    CreateMessageRequest,
    CreateMessageRequestBody,
    DeleteMessageReactionRequest,
    Emoji,
    P2ImMessageReceiveV1,
    PatchMessageRequest,
    PatchMessageRequestBody,
)
from lark_oapi.core.model import RawRequest

from config import (
    FEISHU_ENCRYPT_KEY,
    FEISHU_MODE,
    FEISHU_VERIFICATION_TOKEN,
    FEISHU_WEBHOOK_HOST,
    FEISHU_WEBHOOK_PATH,
    FEISHU_WEBHOOK_PORT,
    UNKNOWN_HEADING_POLICY,
)
from ..protocol import ChatAdapter, IncomingMessageHandler
from .renderer import render_markdown_card

_log = logging.getLogger("opencode-bridge.feishu")

_DEDUP_MAX = 1000
_WS_RESTART_DELAY = 5

MODE_WS = "ws"
MODE_WEBHOOK = "webhook"


def _extract_text(message: Any) -> str:
    """Pull plain text out of a text message's JSON content."""
    try:
        parsed = json.loads(message.content or "")
    except (json.JSONDecodeError, TypeError):
        return message.content or ""
    if not isinstance(parsed, dict):
        return ""
    text = parsed.get("text", "")
    if not isinstance(text, str):
        return ""
    for mention in message.mentions or []:
        if mention.key:
            text = text.replace(mention.key, "")
    return text.strip()


class FeishuAdapter(ChatAdapter):
    """Feishu/Lark implementation of the ChatAdapter protocol."""

    provider = "feishu"

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        domain: str = "feishu",
        client: Any = None,
        mode: str = FEISHU_MODE,
        webhook_host: str = FEISHU_WEBHOOK_HOST,
        webhook_port: int = FEISHU_WEBHOOK_PORT,
        webhook_path: str = FEISHU_WEBHOOK_PATH,
        encrypt_key: str = FEISHU_ENCRYPT_KEY,
        verification_token: str = FEISHU_VERIFICATION_TOKEN,
        unknown_heading_policy: str = UNKNOWN_HEADING_POLICY,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._domain_name = domain.lower()
        self._client = client
        self._mode = mode.strip().lower()
        self._webhook_host = webhook_host
        self._webhook_port = webhook_port
        self._webhook_path = webhook_path
        self._encrypt_key = encrypt_key or ""
        self._verification_token = verification_token or ""
        self._dispatcher_handler: Any = None
        self._runner: Optional[web.AppRunner] = None
        self._ws_client: Any = None
        self._ws_thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_message: Optional[IncomingMessageHandler] = None
        self._running = False
        self._dedup: OrderedDict[str, None] = OrderedDict()
        self._unknown_heading_policy = unknown_heading_policy
        if self._domain_name == "lark":
            self.provider = "lark"

    def _domain(self) -> str:
        if self._domain_name == "lark":
            return lark.LARK_DOMAIN
        return lark.FEISHU_DOMAIN

    def _api(self) -> Any:
        if self._client is None:
            self._client = (
                lark.Client.builder()
                .app_id(self._app_id)
                .app_secret(self._app_secret)
                .domain(self._domain())
                .log_level(lark.LogLevel.INFO)
                .build()
            )
        return self._client

    def _event_handler(self) -> Any:
        """EventDispatcherHandler shared by the WS and webhook paths."""
        if self._dispatcher_handler is None:
            self._dispatcher_handler = (
                lark.EventDispatcherHandler.builder(self._encrypt_key, self._verification_token)
                .register_p2_im_message_receive_v1(self._on_message_sync)
                .build()
            )
        return self._dispatcher_handler

    # ── lifecycle ──

    async def start(self, on_message: IncomingMessageHandler) -> None:
        if not self._app_id or not self._app_secret:
            raise ValueError("Feishu app_id / app_secret not configured")
        if self._mode not in (MODE_WS, MODE_WEBHOOK):
            raise ValueError(f"Unknown Feishu mode: {self._mode!r} (expected 'ws' or 'webhook')")
        self._on_message = on_message
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._api()
        self._event_handler()

        if self._mode == MODE_WEBHOOK:
            await self._start_webhook()
            return

        self._ws_client = lark.ws.Client(
            self._app_id,
            self._app_secret,
            event_handler=self._event_handler(),
            log_level=lark.LogLevel.INFO,
            domain=self._domain(),
        )

        def _run_ws() -> None:
            while self._running:
                try:
                    self._ws_client.start()
                except Exception as exc:
                    _log.warning("Feishu WebSocket error: %s", exc)
                if self._running:
                    time.sleep(_WS_RESTART_DELAY)

        self._ws_thread = threading.Thread(target=_run_ws, name="feishu-ws", daemon=True)
        self._ws_thread.start()
        _log.info("Feishu bot started (WebSocket long connection)")

    async def _start_webhook(self) -> None:
        runner = web.AppRunner(self.create_webhook_app())
        await runner.setup()
        site = web.TCPSite(runner, self._webhook_host, self._webhook_port)
        await site.start()
        self._runner = runner
        _log.info(
            "Feishu bot started (HTTP webhook on %s:%s%s)",
            self._webhook_host, self._webhook_port, self._webhook_path,
        )

    def create_webhook_app(self) -> web.Application:
        """aiohttp app receiving event callbacks on the webhook path."""
        app = web.Application()
        app.router.add_post(self._webhook_path, self._handle_webhook)
        return app

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        raw = RawRequest()
        raw.uri = request.path
        raw.body = await request.read()
        raw.headers = dict(request.headers)
        # Decrypts, verifies and answers url_verification; message events
        # come back through _on_message_sync.
        resp = self._event_handler().do(raw)
        return web.Response(
            body=resp.content or b"",
            status=resp.status_code or 200,
            headers=resp.headers or None,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        stop_ws = getattr(self._ws_client, "stop", None)
        if stop_ws is not None:
            try:
                stop_ws()
            except Exception as exc:
                _log.warning("Error stopping WS client: %s", exc)
        _log.info("Feishu bot stopped")

    # ── inbound ──

    def _on_message_sync(self, data: P2ImMessageReceiveV1) -> None:
        """Called by the event handler (WS thread or webhook); schedule on the asyncio loop."""
        if self._loop and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self._handle_event(data), self._loop)

    async def _handle_event(self, data: P2ImMessageReceiveV1) -> None:
        try:
            event = data.event
            message = event.message
            sender = event.sender

            mid = message.message_id
            if mid in self._dedup:
                return
            self._dedup[mid] = None
            while len(self._dedup) > _DEDUP_MAX:
                self._dedup.popitem(last=False)

            if sender.sender_type == "bot":
                return
            if message.message_type != "text":
                _log.debug("Ignoring %s message %s", message.message_type, mid)
                return

            text = _extract_text(message)
            sender_id = sender.sender_id.open_id if sender.sender_id else ""
            if self._on_message is not None:
                await self._on_message(message.chat_id, text, mid, sender_id)
        except Exception:
            _log.exception("Error handling Feishu message")

    # ── outbound ──

    async def _call(self, method: Any, request: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, method, request)

    async def send_message(self, chat_id: str, text: str) -> Optional[str]:
        card = render_markdown_card(text, self._unknown_heading_policy)
        req = (
            CreateMessageRequest.builder()
            .receive_id_type("chat_id")
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(chat_id)
                .msg_type("interactive")
                .content(card)
                .build()
            )
            .build()
        )
        try:
            resp = await self._call(self._api().im.v1.message.create, req)
        except Exception as exc:
            _log.warning("Feishu send failed chat=%s: %s", chat_id, exc)
            return None
        if not resp.success():
            _log.warning("Feishu send failed: code=%s, msg=%s", resp.code, resp.msg)
            return None
        message_id = getattr(getattr(resp, "data", None), "message_id", None)
        return str(message_id) if message_id else None

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        card = render_markdown_card(text, self._unknown_heading_policy)
        req = (
            PatchMessageRequest.builder()
            .message_id(message_id)
            .request_body(PatchMessageRequestBody.builder().content(card).build())
            .build()
        )
        try:
            resp = await self._call(self._api().im.v1.message.patch, req)
        except Exception as exc:
            _log.warning("Feishu patch failed msg=%s: %s", message_id, exc)
            return False
        if not resp.success():
            _log.warning("Feishu patch failed: code=%s, msg=%s", resp.code, resp.msg)
            return False
        return True

    async def add_reaction(self, message_id: str, emoji: str) -> Optional[str]:
        req = (
            CreateMessageReactionRequest.builder()
            .message_id(message_id)
            .request_body(
                CreateMessageReactionRequestBody.builder()
                .reaction_type(Emoji.builder().emoji_type(emoji).build())
                .build()
            )
            .build()
        )
        try:
            resp = await self._call(self._api().im.v1.message_reaction.create, req)
        except Exception as exc:
            _log.warning("Error adding reaction: %s", exc)
            return None
        if not resp.success():
            _log.warning("Reaction failed: code=%s, msg=%s", resp.code, resp.msg)
            return None
        reaction_id = getattr(getattr(resp, "data", None), "reaction_id", None)
        return str(reaction_id) if reaction_id else None

    async def remove_reaction(self, message_id: str, reaction_id: str) -> None:
        req = (
            DeleteMessageReactionRequest.builder()
            .message_id(message_id)
            .reaction_id(reaction_id)
            .build()
        )
        try:
            resp = await self._call(self._api().im.v1.message_reaction.delete, req)
        except Exception as exc:
            _log.warning("Error removing reaction: %s", exc)
            return
        if not resp.success():
            _log.debug("Reaction removal failed: code=%s, msg=%s", resp.code, resp.msg)
