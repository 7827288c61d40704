from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from config import RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY, STOP_GRACE_SECONDS
from core.envelope import should_forward, summarize_observed_event, unwrap_observed_event
from core.event_dispatch import EventDispatcher
from core.types import AssistantClient

_log = logging.getLogger("opencode-bridge.event_flow")

Subscribe = Callable[[], Awaitable[AsyncIterator[Any]]]

# The global stream repeats every bus event; only these are taken from it.
GLOBAL_EVENT_PREFIXES = ("permission.", "question.")


def is_global_event_type(event_type: str) -> bool:
    return event_type.startswith(GLOBAL_EVENT_PREFIXES)


def backoff_delay(retry_count: int, base: float = RECONNECT_BASE_DELAY, maximum: float = RECONNECT_MAX_DELAY) -> float:
    """Reconnect delay: base * (retry_count + 1), capped at maximum."""
    return min(base * (retry_count + 1), maximum)


class EventStreamConnector:
    """Keeps the session and global event streams connected.

    Each stream is consumed by its own task, strictly in arrival order. A
    stream that raises or closes is reconnected with linear backoff; the
    retry counter of that stream resets once it connects again.
    """

    def __init__(
        self,
        client: AssistantClient,
        dispatcher: EventDispatcher,
        *,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        stop_grace: float = STOP_GRACE_SECONDS,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._stop_grace = stop_grace
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: list[asyncio.Task] = []
        self._started = False
        self.retry_counts: dict[str, int] = {}

    @property
    def started(self) -> bool:
        return self._started

    @property
    def stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def start(self) -> None:
        """Launch the stream loops. A second call before stop() is a no-op."""
        if self._started:
            _log.debug("Event listener already started, skip")
            return
        self._started = True
        self._stop_event = asyncio.Event()
        _log.info("Starting assistant event subscription")

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(
                self._run("session", self._client.subscribe, flush_on_disconnect=True),
                name="event-stream-session",
            )
        ]
        subscribe_global = getattr(self._client, "subscribe_global", None)
        if callable(subscribe_global):
            self._tasks.append(
                loop.create_task(
                    self._run(
                        "global", subscribe_global, flush_on_disconnect=False, accept=is_global_event_type,
                    ),
                    name="event-stream-global",
                )
            )

    async def stop(self) -> None:
        """Stop both loops and clear all dispatch state.

        In-flight network calls are given a grace period to finish; loops
        still blocked after it are cancelled.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        self._started = False

        tasks, self._tasks = self._tasks, []
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._stop_grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._dispatcher.reset()
        _log.info("Assistant event subscription stopped")

    async def handle_observed_event(
        self,
        raw: Any,
        source: str = "hook",
        accept: Optional[Callable[[str], bool]] = None,
    ) -> None:
        """Normalize, filter and dispatch a single raw event.

        `accept` narrows the forwarded types further for one stream.
        """
        event = unwrap_observed_event(raw)
        if event is None:
            _log.debug("%s event unparsed: %r", source, raw)
            return
        if not should_forward(event.type):
            return
        if accept is not None and not accept(event.type):
            return
        _log.info("%s event observed %s", source, summarize_observed_event(event))
        await self._dispatcher.handle(event)

    def _delay(self, retry_count: int) -> float:
        return backoff_delay(retry_count, self._base_delay, self._max_delay)

    async def _sleep_or_stop(self, delay: float) -> None:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _run(
        self,
        name: str,
        subscribe: Subscribe,
        *,
        flush_on_disconnect: bool,
        accept: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.retry_counts[name] = 0
        while not self.stopping:
            stream: Optional[AsyncIterator[Any]] = None
            try:
                stream = await subscribe()
                _log.info("Connected to assistant %s event stream", name)
                self.retry_counts[name] = 0

                async for raw in stream:
                    if self.stopping:
                        break
                    await self.handle_observed_event(raw, source=name, accept=accept)

                if self.stopping:
                    return
                _log.warning("Assistant %s event stream closed", name)
            except asyncio.CancelledError:
                raise
            except Exception:
                if self.stopping:
                    return
                _log.exception("Assistant %s event stream disconnected", name)
            finally:
                await self._close_stream(stream)

            if flush_on_disconnect:
                try:
                    await self._dispatcher.flush_all()
                except Exception:
                    _log.exception("Flush after %s stream disconnect failed", name)

            delay = self._delay(self.retry_counts[name])
            self.retry_counts[name] += 1
            _log.info("Reconnecting %s event stream in %.1fs", name, delay)
            await self._sleep_or_stop(delay)

    @staticmethod
    async def _close_stream(stream: Optional[AsyncIterator[Any]]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            _log.debug("Closing event stream failed", exc_info=True)
