"""Tests for hatimer.poller — cycles, races, undeliverable policies, lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hatimer.errors import HandlerError
from hatimer.handlers import HandlerRegistry
from hatimer.poller import PollLoop
from hatimer.script import SliceExecutor
from hatimer.settings import UndeliverablePolicy
from hatimer.sharding import ShardRouter
from hatimer.store import EventStore
from tests._support.timing import wait_until


def make_loop(redis, clock, *, shards=1, registry=None, **kwargs):
    router = ShardRouter("jobs", shards)
    store = EventStore(redis, router, clock=clock)
    loop = PollLoop(
        store,
        router,
        registry if registry is not None else HandlerRegistry(),
        SliceExecutor(),
        clock=clock,
        **kwargs,
    )
    return loop, store


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_delivers_due_event(self, redis, clock, lua):
        registry = HandlerRegistry()
        handler = AsyncMock()
        registry.register("t", handler)
        loop, store = make_loop(redis, clock, registry=registry)

        await store.add("t", {"bar": 1}, 0)
        assert await loop.run_cycle() == 1

        handler.assert_awaited_once_with({"bar": 1})
        assert loop.stats.events_delivered == 1
        assert await redis.keys("jobs:msg:*") == []

    @pytest.mark.asyncio
    async def test_not_due_yet(self, redis, clock, lua):
        registry = HandlerRegistry()
        handler = AsyncMock()
        registry.register("t", handler)
        loop, store = make_loop(redis, clock, registry=registry)

        await store.add("t", None, "1s")
        assert await loop.run_cycle() == 0
        clock.advance(1000)
        assert await loop.run_cycle() == 1
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delivered_once(self, redis, clock, lua):
        registry = HandlerRegistry()
        handler = AsyncMock()
        registry.register("t", handler)
        loop, store = make_loop(redis, clock, registry=registry)

        await store.add("t", None, 0)
        await loop.run_cycle()
        await loop.run_cycle()
        assert handler.await_count == 1

    @pytest.mark.asyncio
    async def test_oldest_first_up_to_pull_count(self, redis, clock, lua):
        delivered: list[int] = []
        registry = HandlerRegistry()
        registry.register("t", delivered.append)
        loop, store = make_loop(redis, clock, registry=registry, pull_count=2)

        for n, delay in enumerate([30, 10, 20]):
            await store.add("t", n, delay)
        clock.advance(100)

        assert await loop.run_cycle() == 2
        assert sorted(delivered) == [1, 2]
        assert await loop.run_cycle() == 1
        assert delivered[-1] == 0

    @pytest.mark.asyncio
    async def test_missing_record_is_skipped(self, redis, clock, lua):
        loop, store = make_loop(redis, clock)
        await redis.zadd("jobs:0", {"orphan": clock.now})

        assert await loop.run_cycle() == 1
        assert loop.stats.events_skipped == 1

    @pytest.mark.asyncio
    async def test_removed_before_due_is_never_delivered(self, redis, clock, lua):
        registry = HandlerRegistry()
        handler = AsyncMock()
        registry.register("t", handler)
        loop, store = make_loop(redis, clock, registry=registry)

        event = await store.add("t", None, 50)
        await store.remove(event.id)
        clock.advance(100)

        assert await loop.run_cycle() == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_rotates_over_shards(self, redis, clock, lua):
        delivered: list[int] = []
        registry = HandlerRegistry()
        registry.register("t", delivered.append)
        loop, store = make_loop(redis, clock, shards=8, registry=registry)

        for n in range(40):
            await store.add("t", n, 0)
        for _ in range(8):
            await loop.run_cycle()

        assert sorted(delivered) == list(range(40))
        assert await store.pending_count() == 0


class TestRacingInstances:
    @pytest.mark.asyncio
    async def test_two_pollers_never_deliver_twice(self, redis, other_redis, clock, lua):
        received: list[int] = []

        def make_registry():
            registry = HandlerRegistry()
            registry.register("t", received.append)
            return registry

        loop_a, store = make_loop(redis, clock, registry=make_registry(), pull_count=5)
        loop_b, _ = make_loop(other_redis, clock, registry=make_registry(), pull_count=5)

        for n in range(30):
            await store.add("t", n, 0)

        for _ in range(4):
            await asyncio.gather(loop_a.run_cycle(), loop_b.run_cycle())

        assert sorted(received) == list(range(30))


class TestUndeliverable:
    @pytest.mark.asyncio
    async def test_drop(self, redis, clock, lua):
        loop, store = make_loop(redis, clock)
        await store.add("nobody", 1, 0)

        await loop.run_cycle()

        assert loop.stats.events_undeliverable == 1
        assert await store.pending_count() == 0
        assert await redis.keys("jobs:*") == []

    @pytest.mark.asyncio
    async def test_requeue_until_handler_registered(self, redis, clock, lua):
        registry = HandlerRegistry()
        loop, store = make_loop(
            redis,
            clock,
            registry=registry,
            undeliverable_policy=UndeliverablePolicy.REQUEUE,
            idle_interval_ms=100,
        )
        event = await store.add("late-bound", {"n": 1}, 0)

        await loop.run_cycle()
        assert await store.due_at(event.id) == clock.now + 100

        handler = AsyncMock()
        registry.register("late-bound", handler)
        clock.advance(100)
        await loop.run_cycle()
        handler.assert_awaited_once_with({"n": 1})

    @pytest.mark.asyncio
    async def test_dead_letter(self, redis, clock, lua):
        loop, store = make_loop(redis, clock, undeliverable_policy="dead_letter")
        event = await store.add("nobody", [1], 0)

        await loop.run_cycle()

        entries = await store.dead_letters()
        assert [e["id"] for e in entries] == [event.id]
        assert entries[0]["event"] == "nobody"


class TestErrorReporting:
    @pytest.mark.asyncio
    async def test_handler_error_reported(self, redis, clock, lua):
        reported: list[Exception] = []
        registry = HandlerRegistry()
        registry.register("t", AsyncMock(side_effect=RuntimeError("handler broke")))
        loop, store = make_loop(redis, clock, registry=registry, on_error=reported.append)

        await store.add("t", None, 0)
        await loop.run_cycle()

        assert len(reported) == 1
        assert isinstance(reported[0], HandlerError)
        assert loop.stats.handler_failures == 1

    @pytest.mark.asyncio
    async def test_cycle_failure_swallowed_and_reported(self, clock):
        reported: list[Exception] = []
        redis = AsyncMock()
        redis.evalsha.side_effect = RedisConnectionError("refused")
        loop, _ = make_loop(redis, clock, on_error=reported.append)

        await loop._safe_cycle()

        assert loop.stats.cycle_failures == 1
        assert loop.stats.last_error == "refused"
        assert isinstance(reported[0], RedisConnectionError)

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_block_other_ids(self, redis, clock, lua):
        reported: list[Exception] = []
        registry = HandlerRegistry()
        handler = AsyncMock()
        registry.register("t", handler)
        loop, store = make_loop(redis, clock, registry=registry, on_error=reported.append)

        await store.add("t", "good", 0)
        await redis.zadd("jobs:0", {"broken": clock.now})
        await redis.set("jobs:msg:broken", "{not json")

        assert await loop.run_cycle() == 2
        handler.assert_awaited_once_with("good")
        assert len(reported) == 1

    @pytest.mark.asyncio
    async def test_async_error_callback(self, clock):
        callback = AsyncMock()
        redis = AsyncMock()
        redis.evalsha.side_effect = RedisConnectionError("refused")
        loop, _ = make_loop(redis, clock, on_error=callback)

        await loop._safe_cycle()
        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_raising_error_callback_is_contained(self, clock):
        redis = AsyncMock()
        redis.evalsha.side_effect = RedisConnectionError("refused")
        loop, _ = make_loop(redis, clock, on_error=MagicMock(side_effect=ValueError("cb")))

        await loop._safe_cycle()
        assert loop.stats.cycle_failures == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_polls_until_stopped(self, redis, lua):
        handler = AsyncMock()
        registry = HandlerRegistry()
        registry.register("t", handler)
        router = ShardRouter("jobs")
        store = EventStore(redis, router)
        loop = PollLoop(store, router, registry, SliceExecutor(), idle_interval_ms=10)

        loop.start()
        assert loop.state == "running"
        await store.add("t", "hello", 0)

        assert await wait_until(lambda: handler.await_count == 1)
        assert loop.health()["healthy"] is True

        loop.stop()
        await asyncio.wait_for(loop.wait_stopped(), timeout=1)
        assert loop.state == "stopped"
        assert loop.health()["healthy"] is False

    @pytest.mark.asyncio
    async def test_stop_cancels_idle_wait(self, clock):
        redis = AsyncMock()
        redis.evalsha.return_value = []
        loop, _ = make_loop(redis, clock, idle_interval_ms=60_000)

        loop.start()
        await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(loop.wait_stopped(), timeout=1)

    @pytest.mark.asyncio
    async def test_stop_lets_inflight_cycle_finish(self, redis, lua):
        release = asyncio.Event()
        finished: list[str] = []

        async def slow(arg):
            await release.wait()
            finished.append(arg)

        registry = HandlerRegistry()
        registry.register("t", slow)
        router = ShardRouter("jobs")
        store = EventStore(redis, router)
        loop = PollLoop(store, router, registry, SliceExecutor(), idle_interval_ms=10)

        await store.add("t", "in-flight", 0)
        loop.start()
        assert await wait_until(lambda: loop.stats.events_pulled == 1)

        loop.stop()
        release.set()
        await asyncio.wait_for(loop.wait_stopped(), timeout=1)
        assert finished == ["in-flight"]

    @pytest.mark.asyncio
    async def test_loop_survives_failing_cycles(self, clock):
        calls = 0

        async def evalsha(*args):
            nonlocal calls
            calls += 1
            if calls <= 2:
                raise RedisConnectionError("down")
            return []

        redis = AsyncMock()
        redis.evalsha.side_effect = evalsha
        loop, _ = make_loop(redis, clock, idle_interval_ms=1)

        loop.start()
        assert await wait_until(lambda: loop.stats.cycles >= 4)
        loop.stop()
        await loop.wait_stopped()
        assert loop.stats.cycle_failures == 2

    @pytest.mark.asyncio
    async def test_double_start_ignored(self, clock):
        redis = AsyncMock()
        redis.evalsha.return_value = []
        loop, _ = make_loop(redis, clock, idle_interval_ms=50)

        loop.start()
        task = loop._task
        loop.start()
        assert loop._task is task
        loop.stop()
        await loop.wait_stopped()

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, clock):
        loop, _ = make_loop(AsyncMock(), clock)
        loop.stop()
        await loop.wait_stopped()
        assert loop.state == "stopped"

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, clock):
        redis = AsyncMock()
        redis.evalsha.return_value = []
        loop, _ = make_loop(redis, clock, idle_interval_ms=60_000)

        for _ in range(2):
            loop.start()
            await asyncio.sleep(0.01)
            loop.stop()
            await asyncio.wait_for(loop.wait_stopped(), timeout=1)

        assert loop.stats.cycles == 2
