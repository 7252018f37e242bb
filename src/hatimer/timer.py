"""HATimer: the caller-facing delayed-event dispatcher.

Example::

    import redis.asyncio as aioredis
    from hatimer import HATimer

    timer = HATimer(queue_name="billing", queue_split_count=8)

    async def charge(arg):
        await billing.charge(arg["invoice_id"])

    timer.register_handler("charge", charge)
    timer.install(aioredis.from_url("redis://localhost:6379/0"))

    event_id = await timer.add_event("charge", {"invoice_id": 42}, "15m")
    await timer.remove_event(event_id)      # changed our mind
    ...
    await timer.aclose()

Any number of processes may install a timer on the same queue. Each pulls
due events independently; the atomic slice script guarantees a given event
is pulled by only one of them.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from hatimer.delay import Delay, now_ms
from hatimer.errors import NotInstalledError
from hatimer.handlers import Handler, HandlerRegistry
from hatimer.logging import get_logger
from hatimer.models import RemoveResult
from hatimer.poller import ErrorCallback, PollLoop
from hatimer.script import SliceExecutor
from hatimer.settings import TimerSettings
from hatimer.sharding import ShardRouter
from hatimer.store import EventStore

logger = get_logger(__name__)


def create_redis(settings: TimerSettings) -> Any:
    """Async redis client for ``settings.redis_url``."""
    import redis.asyncio as aioredis

    return aioredis.from_url(settings.redis_url, decode_responses=True)


class HATimer:
    """Schedule payloads for delayed delivery to registered handlers.

    Args:
        settings: Full configuration; defaults to ``TimerSettings()`` (env).
        on_error: Called with every failure the poll loop swallows.
        clock: Millisecond wall clock, injectable for tests.
        **overrides: Individual ``TimerSettings`` fields, e.g. ``queue_name``.
    """

    def __init__(
        self,
        settings: TimerSettings | None = None,
        *,
        on_error: ErrorCallback | None = None,
        clock: Callable[[], float] = now_ms,
        **overrides: Any,
    ) -> None:
        if settings is None:
            settings = TimerSettings(**overrides)
        elif overrides:
            settings = TimerSettings(**{**settings.model_dump(), **overrides})

        self.settings = settings
        self.router = ShardRouter(settings.queue_name, settings.queue_split_count)
        self.registry = HandlerRegistry()
        self.slicer = SliceExecutor()
        self.on_error = on_error
        self._clock = clock

        self._store: EventStore | None = None
        self._poller: PollLoop | None = None
        self._installed = False

    # === Lifecycle ===

    def install(self, redis: Any, *, poll: bool = True) -> None:
        """Attach to a store connection and start polling.

        With ``poll=False`` the timer only schedules and removes events
        (producer processes). Polling must be started from within a running
        event loop.
        """
        if self._installed:
            logger.warning("timer_already_installed", queue=self.router.queue_name)
            return

        self._store = EventStore(redis, self.router, clock=self._clock)
        self._poller = PollLoop(
            self._store,
            self.router,
            self.registry,
            self.slicer,
            pull_count=self.settings.pull_count_per_cycle,
            idle_interval_ms=self.settings.idle_poll_interval_ms,
            undeliverable_policy=self.settings.undeliverable_policy,
            clock=self._clock,
            on_error=self.on_error,
        )
        self._installed = True
        if poll:
            self._poller.start()
        logger.info("timer_installed", queue=self.router.queue_name, polling=poll)

    def uninstall(self) -> None:
        """Stop polling. An in-flight cycle is allowed to finish."""
        if not self._installed:
            return
        self._installed = False
        if self._poller is not None:
            self._poller.stop()
        logger.info("timer_uninstalled", queue=self.router.queue_name)

    async def aclose(self) -> None:
        """Uninstall and wait for the poll task to exit."""
        self.uninstall()
        if self._poller is not None:
            await self._poller.wait_stopped()

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def poller(self) -> PollLoop | None:
        return self._poller

    def _require_store(self, operation: str) -> EventStore:
        if self._store is None:
            raise NotInstalledError(operation)
        return self._store

    # === Events ===

    async def add_event(self, event_type: str, arg: Any, delay: Delay) -> str:
        """Schedule ``arg`` for ``event_type`` after ``delay`` and return its id.

        Raises:
            InvalidDelayError: ``delay`` is not a valid duration; nothing is written.
            StoreUnavailableError: Redis could not be reached.
        """
        event = await self._require_store("add_event").add(event_type, arg, delay)
        return event.id

    async def remove_event(self, event_id: str) -> RemoveResult:
        """Cancel a scheduled event. Missing events are not an error."""
        return await self._require_store("remove_event").remove(event_id)

    async def purge(self) -> None:
        """Delete every pending event of this queue across all shards."""
        await self._require_store("purge").purge()

    def register_handler(self, event_type: str, handler: Handler) -> None:
        """Add ``handler`` for ``event_type``; may be called before install."""
        self.registry.register(event_type, handler)

    def unregister_handler(self, event_type: str, handler: Handler) -> bool:
        return self.registry.unregister(event_type, handler)

    # === Inspection ===

    async def pending_count(self) -> int:
        return await self._require_store("pending_count").pending_count()

    async def shard_sizes(self) -> dict[str, int]:
        return await self._require_store("shard_sizes").shard_sizes()

    async def dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._require_store("dead_letters").dead_letters(limit)

    def health(self) -> dict[str, Any]:
        if self._poller is None:
            return {"healthy": False, "state": "stopped", "queue": self.router.queue_name}
        return self._poller.health()

    def __repr__(self) -> str:
        state = "installed" if self._installed else "uninstalled"
        return f"HATimer(queue={self.router.queue_name!r}, shards={self.router.queue_split_count}, {state})"


__all__ = ["HATimer", "create_redis"]
