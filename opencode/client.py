"""HTTP client for the OpenCode assistant server.

Event streams are server-sent events; every other call is JSON over HTTP.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp

from config import OPENCODE_BASE_URL, OPENCODE_DIRECTORY, OPENCODE_REQUEST_TIMEOUT
from core.errors import AssistantAPIError

_log = logging.getLogger("opencode-bridge.opencode")


class SSEDecoder:
    """Incremental decoder for a text/event-stream body.

    Feed it one line at a time; it returns a frame when a blank line closes
    one. Named frames (``event:`` present) come back as
    ``{"event": name, "data": payload}``; unnamed frames are the payload.
    """

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[Any]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[Any]:
        event, data = self._event, self._data
        self._event, self._data = None, []
        if not data:
            return None
        raw = "\n".join(data)
        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError:
            _log.debug("Non-JSON SSE data: %r", raw[:200])
            payload = raw
        if event:
            return {"event": event, "data": payload}
        return payload


class OpencodeClient:
    """OpenCode server client implementing the bridge's AssistantClient."""

    def __init__(
        self,
        base_url: str = OPENCODE_BASE_URL,
        *,
        directory: Optional[str] = OPENCODE_DIRECTORY,
        timeout: float = OPENCODE_REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._directory = directory
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _params(self) -> dict[str, str]:
        return {"directory": self._directory} if self._directory else {}

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}{path}"
        async with self._http().request(
            method, url, json=payload, params=self._params(), timeout=self._timeout,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise AssistantAPIError(resp.status, body[:500] or resp.reason or "request failed", path)
            if resp.status == 204 or resp.content_length == 0:
                return None
            try:
                return await resp.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError):
                return None

    async def create_session(self, title: str) -> str:
        data = await self._request("POST", "/session", {"title": title})
        session_id = data.get("id") if isinstance(data, dict) else None
        return session_id if isinstance(session_id, str) else ""

    async def prompt(self, session_id: str, parts: list[dict[str, Any]]) -> None:
        """Submit parts without waiting for the assistant to finish."""
        await self._request("POST", f"/session/{session_id}/prompt_async", {"parts": parts})

    async def subscribe(self) -> AsyncIterator[Any]:
        return await self._open_stream("/event")

    async def subscribe_global(self) -> AsyncIterator[Any]:
        return await self._open_stream("/global/event")

    async def _open_stream(self, path: str) -> AsyncIterator[Any]:
        """Connect to an SSE endpoint and return an iterator over its frames."""
        url = f"{self._base_url}{path}"
        resp = await self._http().get(
            url,
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._timeout.total),
        )
        if resp.status >= 400:
            body = await resp.text()
            resp.release()
            raise AssistantAPIError(resp.status, body[:500] or "stream failed", path)
        return self._iter_stream(resp)

    @staticmethod
    async def _iter_stream(resp: aiohttp.ClientResponse) -> AsyncIterator[Any]:
        decoder = SSEDecoder()
        try:
            async for raw_line in resp.content:
                frame = decoder.feed(raw_line.decode("utf-8", errors="replace"))
                if frame is not None:
                    yield frame
            frame = decoder.feed("")
            if frame is not None:
                yield frame
        finally:
            resp.release()
