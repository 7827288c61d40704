"""Tests for core/delivery.py."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeAdapter
from core.buffers import MessageBufferStore
from core.delivery import (
    DEFAULT_POLICY,
    PROVIDER_POLICIES,
    FlushEngine,
    policy_for,
    safe_edit_with_retry,
)
from core.session_store import SessionRegistry
from core.types import SessionContext


class _Clock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _engine(clock: _Clock) -> tuple[FlushEngine, MessageBufferStore, AsyncMock]:
    buffers = MessageBufferStore()
    sleep = AsyncMock()
    return FlushEngine(buffers, clock=clock, sleep=sleep), buffers, sleep


class TestPolicy:
    def test_known_providers(self):
        assert policy_for("feishu").fallback_to_send is False
        assert policy_for("Lark") == PROVIDER_POLICIES["lark"]
        assert policy_for("telegram").min_edit_interval == pytest.approx(0.12)

    def test_unknown_provider_uses_default(self):
        assert policy_for("discord") == DEFAULT_POLICY
        assert policy_for(None) == DEFAULT_POLICY


class TestSafeEditWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        adapter = FakeAdapter()
        result = await safe_edit_with_retry(adapter, "c1", "pm1", "hello", sleep=AsyncMock())
        assert result == "pm1"
        assert len(adapter.edits) == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        adapter = FakeAdapter()
        adapter.edit_results = [False, True]
        sleep = AsyncMock()
        result = await safe_edit_with_retry(adapter, "c1", "pm1", "hello", sleep=sleep)
        assert result == "pm1"
        assert len(adapter.edits) == 2
        sleep.assert_awaited_once_with(PROVIDER_POLICIES["telegram"].retry_delay)

    @pytest.mark.asyncio
    async def test_telegram_falls_back_to_send(self):
        adapter = FakeAdapter("telegram")
        adapter.edit_results = [False, False]
        result = await safe_edit_with_retry(adapter, "c1", "pm1", "hello", sleep=AsyncMock())
        assert result == "pm1"  # id of the substitute message
        assert adapter.sent == [("c1", "hello")]

    @pytest.mark.asyncio
    async def test_feishu_never_sends_substitute(self):
        adapter = FakeAdapter("feishu")
        adapter.edit_results = [False, False]
        sleep = AsyncMock()
        result = await safe_edit_with_retry(adapter, "c1", "pm1", "hello", sleep=sleep)
        assert result is None
        assert adapter.sent == []
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_exceptions_count_as_failure(self):
        adapter = FakeAdapter("feishu")
        adapter.edit_message = AsyncMock(side_effect=RuntimeError("boom"))
        result = await safe_edit_with_retry(adapter, "c1", "pm1", "hello", sleep=AsyncMock())
        assert result is None
        assert adapter.edit_message.await_count == 2


class TestFlushEngine:
    @pytest.mark.asyncio
    async def test_first_flush_sends(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter()
        buffers.get_or_create("m1", "s1").main_text = "Hello"

        assert await engine.flush(adapter, "c1", "m1")
        buffer = buffers.get("m1")
        assert buffer.platform_msg_id == "pm1"
        assert buffer.last_display_hash is not None
        assert buffer.last_flushed_at == clock.now
        assert adapter.sent == [("c1", "Hello")]

    @pytest.mark.asyncio
    async def test_no_content_no_call(self):
        engine, buffers, _ = _engine(_Clock())
        adapter = FakeAdapter()
        buffers.get_or_create("m1", "s1")
        assert not await engine.flush(adapter, "c1", "m1", force=True)
        assert adapter.sent == []

    @pytest.mark.asyncio
    async def test_unknown_buffer(self):
        engine, _, _ = _engine(_Clock())
        assert not await engine.flush(FakeAdapter(), "c1", "missing", force=True)

    @pytest.mark.asyncio
    async def test_unchanged_content_is_not_edited(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter()
        buffers.get_or_create("m1", "s1").main_text = "Hello"
        await engine.flush(adapter, "c1", "m1")

        clock.now += 10
        assert await engine.flush(adapter, "c1", "m1", force=True)
        assert adapter.edits == []

    @pytest.mark.asyncio
    async def test_throttle_window(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter("feishu")
        buffer = buffers.get_or_create("m1", "s1")
        buffer.main_text = "Hello"
        await engine.flush(adapter, "c1", "m1")

        buffer.main_text = "Hello world"
        clock.now += 1.0
        assert not await engine.flush(adapter, "c1", "m1")
        assert adapter.edits == []

        clock.now += 2.0
        assert await engine.flush(adapter, "c1", "m1")
        assert adapter.edits == [("c1", "pm1", "Hello world")]

    @pytest.mark.asyncio
    async def test_force_bypasses_throttle(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter("feishu")
        buffer = buffers.get_or_create("m1", "s1")
        buffer.main_text = "Hello"
        await engine.flush(adapter, "c1", "m1")

        buffer.main_text = "Hello again"
        assert await engine.flush(adapter, "c1", "m1", force=True, final=True)
        assert len(adapter.edits) == 1
        assert buffer.finished is True

    @pytest.mark.asyncio
    async def test_failed_send_consumes_throttle_budget(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter()
        adapter.send_result = ""
        buffer = buffers.get_or_create("m1", "s1")
        buffer.main_text = "Hello"

        assert not await engine.flush(adapter, "c1", "m1")
        assert buffer.platform_msg_id is None
        assert buffer.last_update_time == clock.now
        assert buffer.last_display_hash is None

    @pytest.mark.asyncio
    async def test_fallback_send_replaces_message_id(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter("telegram")
        buffer = buffers.get_or_create("m1", "s1")
        buffer.main_text = "Hello"
        await engine.flush(adapter, "c1", "m1")

        adapter.edit_results = [False, False]
        buffer.main_text = "Hello world"
        assert await engine.flush(adapter, "c1", "m1", force=True)
        assert buffer.platform_msg_id == "pm2"

    @pytest.mark.asyncio
    async def test_dropped_edit_keeps_old_hash(self):
        clock = _Clock()
        engine, buffers, _ = _engine(clock)
        adapter = FakeAdapter("feishu")
        buffer = buffers.get_or_create("m1", "s1")
        buffer.main_text = "Hello"
        await engine.flush(adapter, "c1", "m1")
        first_hash = buffer.last_display_hash

        adapter.edit_results = [False, False]
        buffer.main_text = "Hello world"
        assert not await engine.flush(adapter, "c1", "m1", force=True)
        assert buffer.platform_msg_id == "pm1"
        assert buffer.last_display_hash == first_hash

    @pytest.mark.asyncio
    async def test_no_concurrent_send_for_same_message(self):
        engine, buffers, _ = _engine(_Clock())
        release = asyncio.Event()
        adapter = FakeAdapter()
        calls: list[str] = []

        async def slow_send(chat_id: str, text: str):
            calls.append(text)
            await release.wait()
            return "pm-slow"

        adapter.send_message = slow_send
        buffers.get_or_create("m1", "s1").main_text = "Hello"

        first = asyncio.create_task(engine.flush(adapter, "c1", "m1", force=True))
        await asyncio.sleep(0)
        assert ("c1", "new:m1") in engine.in_flight
        assert not await engine.flush(adapter, "c1", "m1", force=True)

        release.set()
        assert await first
        assert calls == ["Hello"]
        assert engine.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_flush_all(self):
        engine, buffers, _ = _engine(_Clock())
        adapter = FakeAdapter()
        registry = SessionRegistry()
        registry.register("s1", "tg", SessionContext(chat_id="c1", sender_id="u1"))
        registry.set_active_message("s1", "m1")
        registry.set_active_message("orphan", "m9")
        buffers.get_or_create("m1", "s1").main_text = "Hello"

        flushed = await engine.flush_all(registry, {"tg": adapter}.get)
        assert flushed == 1
        assert adapter.sent == [("c1", "Hello")]
