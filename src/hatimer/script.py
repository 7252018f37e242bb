"""
Atomic slice executor: server-side Lua with SHA1 caching and body fallback.

Manifesto:
    The slice script is the only mutual exclusion between pollers. Two
    processes polling the same shard must never both receive an id, so
    select-and-remove happens in one script that Redis runs atomically.

Architecture:
    ::

        AtomicScript.run(keys, args)
            │
            ├── EVALSHA sha ──────────────► result          (state: cached)
            │
            └── NOSCRIPT ─► ScriptNotCachedError
                              │
                              └── EVAL body ─► result       (state: unknown → cached)

        Any other redis error propagates unchanged.

    The hash lives in memory only. The server can drop its script cache
    (SCRIPT FLUSH, restart, failover), so the EVAL fallback is never removed.

Tags:
    lua, redis, evalsha, atomicity, hatimer
"""

from __future__ import annotations

import hashlib
from enum import Enum
from importlib import resources
from typing import Any

from redis.exceptions import NoScriptError, ResponseError

from hatimer.errors import ScriptNotCachedError
from hatimer.logging import get_logger

logger = get_logger(__name__)


class ScriptState(str, Enum):
    """Whether the server is believed to hold the script body."""

    UNKNOWN = "unknown"
    CACHED = "cached"


def _is_noscript(exc: ResponseError) -> bool:
    return isinstance(exc, NoScriptError) or str(exc).startswith("NOSCRIPT")


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class AtomicScript:
    """A Lua script evaluated by hash, uploaded on demand."""

    def __init__(self, body: str, name: str = "script") -> None:
        self.name = name
        self.body = body
        self.sha = hashlib.sha1(body.encode("utf-8")).hexdigest()
        self.state = ScriptState.UNKNOWN

    @classmethod
    def from_resource(cls, name: str) -> AtomicScript:
        """Load ``hatimer/lua/<name>.lua`` shipped with the package."""
        body = (resources.files("hatimer") / "lua" / f"{name}.lua").read_text(encoding="utf-8")
        return cls(body, name=name)

    async def load(self, redis: Any) -> str:
        """Register the body explicitly (SCRIPT LOAD)."""
        sha = _decode(await redis.script_load(self.body))
        self.state = ScriptState.CACHED
        logger.debug("script_loaded", script=self.name, sha=sha)
        return sha

    async def _evalsha(self, redis: Any, keys: list[str], args: list[Any]) -> Any:
        try:
            return await redis.evalsha(self.sha, len(keys), *keys, *args)
        except ResponseError as exc:
            if _is_noscript(exc):
                raise ScriptNotCachedError(self.sha, cause=exc) from exc
            raise

    async def run(self, redis: Any, keys: list[str], args: list[Any]) -> Any:
        """Evaluate the script, falling back to EVAL when the hash is unknown."""
        try:
            result = await self._evalsha(redis, keys, args)
        except ScriptNotCachedError:
            if self.state is ScriptState.CACHED:
                logger.info("script_evicted", script=self.name, sha=self.sha)
            self.state = ScriptState.UNKNOWN
            result = await redis.eval(self.body, len(keys), *keys, *args)
        self.state = ScriptState.CACHED
        return result


class SliceExecutor:
    """Pops up to ``count`` due ids from a shard in one atomic step."""

    def __init__(self, script: AtomicScript | None = None) -> None:
        self.script = script or AtomicScript.from_resource("slice")

    async def pull(self, redis: Any, shard_key: str, cutoff: float, count: int) -> list[str]:
        """Ids with score ≤ ``cutoff``, ascending by score, removed from the shard."""
        raw = await self.script.run(redis, [shard_key], [repr(float(cutoff)), int(count)])
        return [_decode(item) for item in raw or []]


__all__ = ["ScriptState", "AtomicScript", "SliceExecutor"]
