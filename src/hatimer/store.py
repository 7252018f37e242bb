"""
Event store: message records and due markers in Redis.

Manifesto:
    An event lives as two keys: the JSON message record and a member of one
    shard's sorted set scored by its due time. The two writes in
    ``add`` are not transactional, so the record is written first and a
    poller that pulls an id without a record just skips it.

Operations:
    add       validate delay + payload, SET record, ZADD marker
    remove    ZREM marker from shard_for_id(id), DEL record, never fails on miss
    purge     DEL every record (SCAN) and every shard key
    resolve   GET record, DEL it, decode (poll loop only)

Store failures in caller-facing operations surface as
``StoreUnavailableError`` (connection/timeout) or ``StoreError``.

Tags:
    redis, sorted-set, storage, hatimer
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from hatimer.delay import Delay, now_ms, resolve_due_at
from hatimer.errors import StoreError, StoreUnavailableError
from hatimer.logging import get_logger
from hatimer.models import Event, RemoveResult
from hatimer.sharding import ShardRouter

logger = get_logger(__name__)

_PURGE_BATCH = 500


@contextmanager
def translate_store_errors(operation: str, queue: str, **context: Any) -> Iterator[None]:
    """Re-raise redis-py exceptions as hatimer store errors."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailableError(
            f"{operation} failed, store unavailable: {exc}", cause=exc
        ).with_context(queue=queue, **context) from exc
    except RedisError as exc:
        raise StoreError(f"{operation} failed: {exc}", cause=exc).with_context(
            queue=queue, **context
        ) from exc


class EventStore:
    """Reads and writes events for one queue through an async redis client."""

    def __init__(
        self,
        redis: Any,
        router: ShardRouter,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.redis = redis
        self.router = router
        self._clock = clock

    @property
    def queue(self) -> str:
        return self.router.queue_name

    # === Scheduling ===

    async def add(self, event_type: str, arg: Any, delay: Delay) -> Event:
        """Schedule ``arg`` for ``event_type`` after ``delay``.

        Delay and payload are validated before the first write, so a
        rejected call leaves no keys behind.
        """
        due_at = resolve_due_at(delay, self._clock())
        event = Event(event_type=event_type, arg=arg, due_at=due_at)
        record = event.to_record()
        shard_key = self.router.key_for_id(event.id)

        with translate_store_errors("add_event", self.queue, event_id=event.id, shard_key=shard_key):
            await self.redis.set(self.router.message_key(event.id), record)
            await self.redis.zadd(shard_key, {event.id: due_at})

        logger.debug(
            "event_added",
            queue=self.queue,
            event_id=event.id,
            event_type=event_type,
            shard_key=shard_key,
            due_at=due_at,
        )
        return event

    async def remove(self, event_id: str) -> RemoveResult:
        """Delete the marker and record of ``event_id``; zero matches is fine."""
        shard_key = self.router.key_for_id(event_id)
        with translate_store_errors("remove_event", self.queue, event_id=event_id, shard_key=shard_key):
            markers = await self.redis.zrem(shard_key, event_id)
            records = await self.redis.delete(self.router.message_key(event_id))

        result = RemoveResult(
            event_id=event_id,
            marker_removed=bool(markers),
            record_removed=bool(records),
        )
        if not result.marker_removed:
            # Already pulled by a poller, or never scheduled
            logger.debug("remove_marker_missing", queue=self.queue, event_id=event_id)
        return result

    async def purge(self) -> int:
        """Delete every message record and shard of the queue. Returns keys deleted."""
        deleted = 0
        with translate_store_errors("purge", self.queue):
            batch: list[Any] = []
            async for key in self.redis.scan_iter(match=self.router.message_pattern):
                batch.append(key)
                if len(batch) >= _PURGE_BATCH:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
            deleted += await self.redis.delete(*self.router.all_shard_keys())

        logger.info("queue_purged", queue=self.queue, keys_deleted=deleted)
        return deleted

    # === Delivery ===

    async def resolve(self, event_id: str) -> Event | None:
        """Fetch and delete the record of a pulled id, or None if it is gone."""
        key = self.router.message_key(event_id)
        with translate_store_errors("resolve", self.queue, event_id=event_id):
            raw = await self.redis.get(key)
            if raw is None:
                return None
            await self.redis.delete(key)
        return Event.from_record(event_id, raw)

    async def requeue(self, event: Event, due_at: float) -> None:
        """Write ``event`` back with a new due time, keeping its id."""
        event.due_at = due_at
        record = event.to_record()
        shard_key = self.router.key_for_id(event.id)
        with translate_store_errors("requeue", self.queue, event_id=event.id, shard_key=shard_key):
            await self.redis.set(self.router.message_key(event.id), record)
            await self.redis.zadd(shard_key, {event.id: due_at})

    async def dead_letter(self, event: Event) -> None:
        """Append an undeliverable event to ``<queue>:dead``."""
        entry = json.dumps(
            {
                "id": event.id,
                "event": event.event_type,
                "arg": event.arg,
                "failed_at": self._clock(),
            }
        )
        with translate_store_errors("dead_letter", self.queue, event_id=event.id):
            await self.redis.rpush(self.router.dead_letter_key, entry)

    async def dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        """Oldest ``limit`` dead-lettered entries."""
        if limit < 1:
            return []
        with translate_store_errors("dead_letters", self.queue):
            raw = await self.redis.lrange(self.router.dead_letter_key, 0, limit - 1)
        return [json.loads(item) for item in raw]

    # === Inspection ===

    async def due_at(self, event_id: str) -> float | None:
        """Due time of a still-pending event, or None."""
        with translate_store_errors("due_at", self.queue, event_id=event_id):
            score = await self.redis.zscore(self.router.key_for_id(event_id), event_id)
        return None if score is None else float(score)

    async def pending_count(self) -> int:
        """Number of due markers across all shards."""
        total = 0
        with translate_store_errors("pending_count", self.queue):
            for key in self.router.all_shard_keys():
                total += int(await self.redis.zcard(key))
        return total

    async def shard_sizes(self) -> dict[str, int]:
        """Markers per shard key."""
        with translate_store_errors("shard_sizes", self.queue):
            return {key: int(await self.redis.zcard(key)) for key in self.router.all_shard_keys()}


__all__ = ["EventStore", "translate_store_errors"]
