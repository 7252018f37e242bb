"""
CLI utility helpers — output formatting and timer construction.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console

from hatimer.errors import HATimerError
from hatimer.settings import TimerSettings
from hatimer.timer import HATimer, create_redis

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def build_settings(queue: str | None, shards: int | None) -> TimerSettings:
    """Environment settings with command-line overrides applied."""
    overrides: dict[str, Any] = {}
    if queue is not None:
        overrides["queue_name"] = queue
    if shards is not None:
        overrides["queue_split_count"] = shards
    return TimerSettings(**overrides)


def redis_factory(settings: TimerSettings) -> Any:
    """Create the store client. Patched in tests."""
    return create_redis(settings)


def run_with_timer(
    settings: TimerSettings,
    operation: Callable[[HATimer], Awaitable[T]],
    *,
    poll: bool = False,
) -> T:
    """Install a timer, run ``operation`` and tear everything down.

    Store and validation errors exit with code 1.
    """

    async def _main() -> T:
        redis = redis_factory(settings)
        timer = HATimer(settings)
        timer.install(redis, poll=poll)
        try:
            return await operation(timer)
        finally:
            await timer.aclose()
            await redis.aclose()

    try:
        return asyncio.run(_main())
    except HATimerError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=1) from e


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def parse_json_arg(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        err_console.print(f"[bold red]Invalid JSON argument:[/bold red] {e}")
        raise typer.Exit(code=1) from e
