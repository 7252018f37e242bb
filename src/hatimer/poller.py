"""
Poll loop: the single active scheduling task of an installed HATimer.

Manifesto:
    Every process polls; none is special. Any of them can die and the others
    keep draining the queue. A failing cycle must never kill the loop, but it
    must not vanish either, so failures go to structured logs and to an
    injectable ``on_error`` callback.

Architecture:
    ::

        start() ──► task: _run()
                      │
                      ▼
              ┌──────────────── run_cycle() ───────────────────┐
              │ 1. router.next_shard_key()      (INCR seq)     │
              │ 2. slicer.pull(shard, now, n)   (Lua, atomic)  │
              │ 3. gather(_deliver(id) for id in ids):         │
              │      store.resolve(id) ─► None: skip           │
              │      registry.dispatch(event)                  │
              │      no handlers ─► undeliverable policy       │
              └────────────────────────────────────────────────┘
                      │ success or failure (reported, swallowed)
                      ▼
              running? ── wait(stop_event, idle interval) ──► next cycle
                      │
                   stopped ──► task exits

    ``stop()`` sets the stop event, which ends the idle wait at once. A cycle
    already in progress, with its redis calls and handler invocations, runs
    to completion.

Tags:
    asyncio, polling, dispatch, high-availability, hatimer

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from hatimer.delay import now_ms
from hatimer.errors import HATimerError
from hatimer.handlers import HandlerRegistry
from hatimer.logging import bind_context, get_logger
from hatimer.models import Event
from hatimer.script import SliceExecutor
from hatimer.settings import UndeliverablePolicy
from hatimer.sharding import ShardRouter
from hatimer.store import EventStore

logger = get_logger(__name__)

ErrorCallback = Callable[[Exception], Awaitable[None] | None]


@dataclass
class PollStats:
    """Counters for one poll loop."""

    cycles: int = 0
    events_pulled: int = 0
    events_delivered: int = 0
    events_skipped: int = 0
    events_undeliverable: int = 0
    handler_failures: int = 0
    cycle_failures: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "events_pulled": self.events_pulled,
            "events_delivered": self.events_delivered,
            "events_skipped": self.events_skipped,
            "events_undeliverable": self.events_undeliverable,
            "handler_failures": self.handler_failures,
            "cycle_failures": self.cycle_failures,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_error": self.last_error,
        }


class PollLoop:
    """Repeatedly pulls due ids from one shard per cycle and dispatches them."""

    def __init__(
        self,
        store: EventStore,
        router: ShardRouter,
        registry: HandlerRegistry,
        slicer: SliceExecutor,
        *,
        pull_count: int = 64,
        idle_interval_ms: int = 1000,
        undeliverable_policy: UndeliverablePolicy = UndeliverablePolicy.DROP,
        clock: Callable[[], float] = now_ms,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.store = store
        self.router = router
        self.registry = registry
        self.slicer = slicer
        self.pull_count = pull_count
        self.idle_interval_ms = idle_interval_ms
        self.undeliverable_policy = UndeliverablePolicy(undeliverable_policy)
        self.on_error = on_error
        self._clock = clock

        self._stats = PollStats()
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # === Lifecycle ===

    def start(self) -> None:
        """Start polling. Must be called from a running event loop."""
        if self._running:
            logger.warning("poll_loop_already_running", queue=self.router.queue_name)
            return

        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._running = True
        self._task = loop.create_task(self._run(), name=f"hatimer-poll:{self.router.queue_name}")
        logger.info(
            "poll_loop_started",
            queue=self.router.queue_name,
            shards=self.router.queue_split_count,
            idle_interval_ms=self.idle_interval_ms,
        )

    def stop(self) -> None:
        """Stop after the current cycle; cancels only the idle wait."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        logger.info("poll_loop_stopping", queue=self.router.queue_name)

    async def wait_stopped(self) -> None:
        """Wait for the loop task to exit (after ``stop()``)."""
        if self._task is not None:
            await self._task

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def stats(self) -> PollStats:
        return self._stats

    def health(self) -> dict[str, Any]:
        """Loop status for health endpoints and the CLI."""
        return {
            "healthy": self._running and self._task is not None and not self._task.done(),
            "state": self.state,
            "queue": self.router.queue_name,
            "shards": self.router.queue_split_count,
            "idle_interval_ms": self.idle_interval_ms,
            "stats": self._stats.to_dict(),
        }

    async def _run(self) -> None:
        bind_context(queue=self.router.queue_name)
        while self._running:
            await self._safe_cycle()
            if not self._running:
                break
            await self._idle()
        logger.info("poll_loop_stopped", queue=self.router.queue_name)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.idle_interval_ms / 1000)
        except asyncio.TimeoutError:
            pass

    # === Cycle ===

    async def _safe_cycle(self) -> None:
        try:
            await self.run_cycle()
        except Exception as e:
            self._stats.cycle_failures += 1
            self._stats.last_error = str(e)
            logger.exception("poll_cycle_failed", queue=self.router.queue_name, error=str(e))
            await self._report(e)

    async def run_cycle(self) -> int:
        """Run one poll cycle and return the number of ids pulled.

        Shard selection and slice failures raise. Failures while delivering
        individual ids are reported through ``on_error`` once every id has
        settled.
        """
        self._stats.cycles += 1
        self._stats.last_cycle_at = datetime.now(UTC)

        shard_key = await self.router.next_shard_key(self.store.redis)
        ids = await self.slicer.pull(self.store.redis, shard_key, self._clock(), self.pull_count)
        if not ids:
            return 0

        self._stats.events_pulled += len(ids)
        logger.debug("events_pulled", shard_key=shard_key, count=len(ids))

        outcomes = await asyncio.gather(
            *[self._deliver(event_id) for event_id in ids],
            return_exceptions=True,
        )
        for event_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, Exception):
                self._stats.last_error = str(outcome)
                logger.error(
                    "event_delivery_failed",
                    event_id=event_id,
                    shard_key=shard_key,
                    error=str(outcome),
                )
                await self._report(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
        return len(ids)

    async def _deliver(self, event_id: str) -> None:
        event = await self.store.resolve(event_id)
        if event is None:
            # Removed concurrently, or marker written before its record
            self._stats.events_skipped += 1
            logger.debug("event_record_missing", event_id=event_id)
            return

        if not self.registry.has_handlers(event.event_type):
            await self._undeliverable(event)
            return

        errors = await self.registry.dispatch(event)
        self._stats.events_delivered += 1
        self._stats.handler_failures += len(errors)
        for error in errors:
            await self._report(error)

    async def _undeliverable(self, event: Event) -> None:
        self._stats.events_undeliverable += 1
        policy = self.undeliverable_policy

        if policy is UndeliverablePolicy.REQUEUE:
            await self.store.requeue(event, self._clock() + self.idle_interval_ms)
        elif policy is UndeliverablePolicy.DEAD_LETTER:
            await self.store.dead_letter(event)

        logger.warning(
            "event_undeliverable",
            event_id=event.id,
            event_type=event.event_type,
            policy=policy.value,
        )

    async def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            result = self.on_error(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(
                "error_callback_failed",
                error=str(e),
                original_error=error.to_dict() if isinstance(error, HATimerError) else str(error),
            )


__all__ = ["PollLoop", "PollStats", "ErrorCallback"]
