from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeAdapter, FakeClient, _iterate
from core.authorization import AuthorizationGate
from core.buffers import MessageBufferStore
from core.delivery import FlushEngine
from core.event_dispatch import EventDispatcher
from core.event_flow import EventStreamConnector, backoff_delay, is_global_event_type
from core.session_store import SessionRegistry
from core.types import ObservedEvent, SessionContext


async def _wait_for_condition(predicate, timeout: float = 1.0) -> None:
    async def _wait() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout=timeout)


def _dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.handle = AsyncMock()
    dispatcher.flush_all = AsyncMock(return_value=0)
    dispatcher.reset = MagicMock()
    return dispatcher


def _connector(client: Any, dispatcher: MagicMock, **kwargs: Any) -> EventStreamConnector:
    kwargs.setdefault("base_delay", 0.01)
    kwargs.setdefault("max_delay", 0.05)
    kwargs.setdefault("stop_grace", 0.1)
    return EventStreamConnector(client, dispatcher, **kwargs)


def test_backoff_delay_is_linear_and_capped() -> None:
    assert backoff_delay(0, 5, 60) == 5
    assert backoff_delay(1, 5, 60) == 10
    assert backoff_delay(11, 5, 60) == 60
    assert backoff_delay(50, 5, 60) == 60


def test_global_event_types() -> None:
    assert is_global_event_type("permission.asked")
    assert is_global_event_type("question.rejected")
    assert not is_global_event_type("message.part.delta")
    assert not is_global_event_type("session.idle")


@pytest.mark.asyncio
async def test_handle_observed_event_filters_and_normalizes() -> None:
    dispatcher = _dispatcher()
    connector = _connector(FakeClient(), dispatcher)

    await connector.handle_observed_event({"type": "server.heartbeat", "properties": {}})
    await connector.handle_observed_event({"nothing": "here"})
    dispatcher.handle.assert_not_awaited()

    await connector.handle_observed_event({"event": "session.idle", "data": {"sessionID": "s1"}})
    dispatcher.handle.assert_awaited_once_with(ObservedEvent("session.idle", {"sessionID": "s1"}))


@pytest.mark.asyncio
async def test_reconnects_after_failure_and_flushes() -> None:
    client = FakeClient()
    client.streams = [
        ConnectionError("refused"),
        [{"type": "session.idle", "properties": {"sessionID": "s1"}}],
    ]
    dispatcher = _dispatcher()
    connector = _connector(client, dispatcher)

    await connector.start()
    try:
        await _wait_for_condition(lambda: dispatcher.handle.await_count >= 1)
        assert client.subscribe_calls >= 2
        assert dispatcher.flush_all.await_count >= 1
    finally:
        await connector.stop()
    dispatcher.reset.assert_called_once()
    assert not connector.started


@pytest.mark.asyncio
async def test_events_dispatched_in_arrival_order() -> None:
    client = FakeClient()
    client.streams = [[
        {"type": "message.part.delta", "properties": {"delta": str(i)}} for i in range(5)
    ]]
    dispatcher = _dispatcher()
    connector = _connector(client, dispatcher)

    await connector.start()
    try:
        await _wait_for_condition(lambda: dispatcher.handle.await_count >= 5)
    finally:
        await connector.stop()
    deltas = [call.args[0].properties["delta"] for call in dispatcher.handle.await_args_list]
    assert deltas == ["0", "1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_start_twice_is_noop() -> None:
    client = FakeClient()
    client.subscribe = AsyncMock(side_effect=ConnectionError("down"))
    connector = _connector(client, _dispatcher(), base_delay=1.0, max_delay=1.0)

    await connector.start()
    tasks = list(connector._tasks)
    await connector.start()
    assert connector._tasks == tasks
    assert len(tasks) == 1
    await connector.stop()


@pytest.mark.asyncio
async def test_global_stream_gets_its_own_loop() -> None:
    client = FakeClient()
    client.subscribe = AsyncMock(side_effect=ConnectionError("down"))
    client.subscribe_global = AsyncMock(side_effect=ConnectionError("down"))
    dispatcher = _dispatcher()
    connector = _connector(client, dispatcher, base_delay=1.0, max_delay=1.0)

    await connector.start()
    try:
        await _wait_for_condition(lambda: client.subscribe_global.await_count >= 1)
        assert len(connector._tasks) == 2
        assert connector.retry_counts["global"] == 1
    finally:
        await connector.stop()
    # Only the session stream flushes buffers on disconnect.
    assert dispatcher.flush_all.await_count == 1


@pytest.mark.asyncio
async def test_stop_cancels_hung_stream_after_grace() -> None:
    hang = asyncio.Event()
    closed: list[bool] = []

    async def never_ending() -> AsyncIterator[Any]:
        try:
            await hang.wait()
            yield {"type": "session.idle", "properties": {}}
        finally:
            closed.append(True)

    client = FakeClient()
    client.subscribe = AsyncMock(return_value=never_ending())
    dispatcher = _dispatcher()
    connector = _connector(client, dispatcher, stop_grace=0.05)

    await connector.start()
    await _wait_for_condition(lambda: client.subscribe.await_count >= 1)
    await asyncio.sleep(0.01)
    await asyncio.wait_for(connector.stop(), timeout=1.0)

    assert connector.stopping
    assert closed == [True]
    dispatcher.handle.assert_not_awaited()
    dispatcher.reset.assert_called_once()


@pytest.mark.asyncio
async def test_global_stream_only_carries_permission_and_question_events() -> None:
    adapter = FakeAdapter()
    registry = SessionRegistry()
    registry.register("s1", "tg", SessionContext(chat_id="c1", sender_id="u1"))
    buffers = MessageBufferStore()
    gate = AuthorizationGate(60)
    dispatcher = EventDispatcher(
        registry, buffers, FlushEngine(buffers, sleep=AsyncMock()), gate, {"tg": adapter}.get,
    )
    part = {"id": "p1", "type": "text", "sessionID": "s1", "messageID": "m1", "text": ""}
    delta = {"sessionID": "s1", "messageID": "m1", "partID": "p1", "field": "text", "delta": "Hello"}
    bus_events = [
        {"type": "message.part.updated", "properties": {"part": part}},
        {"type": "message.part.delta", "properties": delta},
    ]
    permission = {"type": "permission.asked", "properties": {"sessionID": "s1", "title": "bash"}}

    client = FakeClient()
    client.streams = [bus_events]
    client.subscribe_global = AsyncMock(side_effect=[
        _iterate([{"directory": "/work", "payload": event} for event in bus_events + [permission]]),
        ConnectionError("done"),
    ])
    connector = _connector(client, dispatcher, base_delay=1.0, max_delay=1.0)

    await connector.start()
    try:
        await _wait_for_condition(lambda: gate.pending("tg:c1") is not None)
        await _wait_for_condition(lambda: "m1" in buffers and buffers.get("m1").main_text == "Hello")
        await asyncio.sleep(0.05)
        assert buffers.get("m1").main_text == "Hello"
    finally:
        await connector.stop()
