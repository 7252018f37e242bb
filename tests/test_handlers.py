"""Tests for hatimer.handlers — registration order and concurrent dispatch."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from hatimer.errors import HandlerError
from hatimer.handlers import HandlerRegistry
from hatimer.models import Event


class TestRegistration:
    def test_register_appends_in_order(self):
        registry = HandlerRegistry()
        first, second = MagicMock(), MagicMock()
        registry.register("t", first)
        registry.register("t", second)
        assert registry.handlers_for("t") == [first, second]
        assert registry.has_handlers("t")
        assert len(registry) == 2

    def test_instances_do_not_share_handlers(self):
        a, b = HandlerRegistry(), HandlerRegistry()
        a.register("t", MagicMock())
        assert not b.has_handlers("t")

    def test_unregister(self):
        registry = HandlerRegistry()
        handler = MagicMock()
        registry.register("t", handler)
        assert registry.unregister("t", handler) is True
        assert registry.unregister("t", handler) is False
        assert registry.event_types == []


class TestDispatch:
    @pytest.mark.asyncio
    async def test_calls_all_handlers_with_arg(self):
        registry = HandlerRegistry()
        async_handler = AsyncMock()
        sync_handler = MagicMock(return_value=None)
        registry.register("t", async_handler)
        registry.register("t", sync_handler)

        errors = await registry.dispatch(Event(event_type="t", arg={"x": 1}))

        assert errors == []
        async_handler.assert_awaited_once_with({"x": 1})
        sync_handler.assert_called_once_with({"x": 1})

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self):
        registry = HandlerRegistry()
        started: list[str] = []
        release = asyncio.Event()

        def make(name):
            async def handler(arg):
                started.append(name)
                await release.wait()

            return handler

        registry.register("t", make("a"))
        registry.register("t", make("b"))

        task = asyncio.create_task(registry.dispatch(Event(event_type="t")))
        await asyncio.sleep(0.01)
        assert started == ["a", "b"]
        assert not task.done()

        release.set()
        assert await task == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_siblings(self):
        registry = HandlerRegistry()
        ok = AsyncMock()
        registry.register("t", AsyncMock(side_effect=ValueError("bad arg")))
        registry.register("t", ok)

        errors = await registry.dispatch(Event(event_type="t", arg=1, id="evt-1"))

        ok.assert_awaited_once_with(1)
        assert len(errors) == 1
        assert isinstance(errors[0], HandlerError)
        assert isinstance(errors[0].cause, ValueError)
        assert errors[0].context.event_id == "evt-1"

    @pytest.mark.asyncio
    async def test_no_handlers(self):
        assert await HandlerRegistry().dispatch(Event(event_type="nobody")) == []
