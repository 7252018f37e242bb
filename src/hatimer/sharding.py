"""Shard routing and key layout.

Due markers are spread over ``queue_split_count`` sorted sets so that
pollers in different processes rarely contend on the same key. Two distinct
strategies pick a shard:

- ``shard_for_id`` hashes the event id. Scheduling and removal both use it,
  so ``remove_event`` always finds the marker ``add_event`` wrote.
- ``next_shard`` rotates through shards using a shared INCR counter. Only the
  poll loop uses it, so polling stays even across shards however the ids
  happen to hash.

Key layout (stable across instances of one deployment)::

    <queue>:msg:<id>     message record (JSON string)
    <queue>:<index>      due-marker sorted set, member=id score=due_at
    <queue>:seq          poll rotation counter
    <queue>:dead         dead-letter list
"""

from __future__ import annotations

import zlib
from typing import Any


class ShardRouter:
    """Maps event ids and poll cycles to shard keys for one queue."""

    def __init__(self, queue_name: str, queue_split_count: int = 1) -> None:
        self.queue_name = queue_name
        self.queue_split_count = max(1, queue_split_count)

    # === Key layout ===

    def shard_key(self, index: int) -> str:
        return f"{self.queue_name}:{index}"

    def message_key(self, event_id: str) -> str:
        return f"{self.queue_name}:msg:{event_id}"

    @property
    def message_pattern(self) -> str:
        return f"{self.queue_name}:msg:*"

    @property
    def sequence_key(self) -> str:
        return f"{self.queue_name}:seq"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.queue_name}:dead"

    def all_shard_keys(self) -> list[str]:
        return [self.shard_key(i) for i in range(self.queue_split_count)]

    # === Shard selection ===

    def shard_for_id(self, event_id: str) -> int:
        """Deterministic shard for an event id.

        Uses the leading 8 hex digits of the id (the random prefix of a
        UUID4). Ids without a hex prefix fall back to CRC32 of their bytes.
        """
        try:
            value = int(event_id[:8], 16)
        except ValueError:
            value = zlib.crc32(event_id.encode("utf-8"))
        return value % self.queue_split_count

    def key_for_id(self, event_id: str) -> str:
        return self.shard_key(self.shard_for_id(event_id))

    async def next_shard(self, redis: Any) -> int:
        """Shard to poll next.

        With a single shard this is always 0 and costs no round trip.
        """
        if self.queue_split_count == 1:
            return 0
        sequence = await redis.incr(self.sequence_key)
        return int(sequence) % self.queue_split_count

    async def next_shard_key(self, redis: Any) -> str:
        return self.shard_key(await self.next_shard(redis))

    def __repr__(self) -> str:
        return f"ShardRouter(queue={self.queue_name!r}, shards={self.queue_split_count})"
