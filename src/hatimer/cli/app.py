"""
Root Typer application for the hatimer CLI.

Every command reads ``HATIMER_*`` settings from the environment; ``--queue``
and ``--shards`` override them for one invocation.
"""

from __future__ import annotations

import asyncio
from typing import Any

import typer
from rich.table import Table

from hatimer.cli import utils
from hatimer.cli.utils import console, err_console
from hatimer.logging import configure_logging
from hatimer.timer import HATimer

app = typer.Typer(
    name="hatimer",
    help="hatimer — distributed delayed-event dispatcher on Redis.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

QueueOption = typer.Option(None, "--queue", "-q", help="Queue name (HATIMER_QUEUE_NAME)")
ShardsOption = typer.Option(None, "--shards", help="Shard count (HATIMER_QUEUE_SPLIT_COUNT)")


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("hatimer")
        except PackageNotFoundError:
            from hatimer import __version__ as v
        typer.echo(f"hatimer {v}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Log level (default WARNING; watch uses HATIMER_LOG_LEVEL)",
    ),
) -> None:
    """hatimer CLI — schedule, cancel and watch delayed events."""
    ctx.obj = {"log_level": log_level}
    # stdout carries command output; keep logs out of it unless asked
    configure_logging(level=log_level or "WARNING", json_format=False)


@app.command("add")
def add(
    event_type: str = typer.Argument(..., help="Event type handlers are registered for"),
    delay: str = typer.Option("0", "--delay", "-d", help='Delay, e.g. "250", "20ms", "1.5m"'),
    arg: str = typer.Option("null", "--arg", "-a", help="JSON payload"),
    queue: str | None = QueueOption,
    shards: int | None = ShardsOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Schedule an event and print its id."""
    settings = utils.build_settings(queue, shards)
    payload = utils.parse_json_arg(arg)

    event_id = utils.run_with_timer(settings, lambda timer: timer.add_event(event_type, payload, delay))

    if json_out:
        utils.print_json({"id": event_id, "event_type": event_type, "queue": settings.queue_name})
    else:
        console.print(f"[green]Scheduled[/green] {event_type} (id={event_id})")


@app.command("remove")
def remove(
    event_id: str = typer.Argument(..., help="Id returned by 'add'"),
    queue: str | None = QueueOption,
    shards: int | None = ShardsOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Cancel a scheduled event."""
    settings = utils.build_settings(queue, shards)
    result = utils.run_with_timer(settings, lambda timer: timer.remove_event(event_id))

    if json_out:
        utils.print_json(
            {
                "id": event_id,
                "marker_removed": result.marker_removed,
                "record_removed": result.record_removed,
            }
        )
    elif result.found:
        console.print(f"[green]Removed[/green] {event_id}")
    else:
        console.print(f"[yellow]Not found[/yellow] {event_id} (already delivered or never scheduled)")


@app.command("purge")
def purge(
    queue: str | None = QueueOption,
    shards: int | None = ShardsOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every pending event of the queue."""
    settings = utils.build_settings(queue, shards)
    if not yes:
        typer.confirm(f"Purge all pending events of queue '{settings.queue_name}'?", abort=True)

    utils.run_with_timer(settings, lambda timer: timer.purge())
    console.print(f"[green]Purged[/green] {settings.queue_name}")


@app.command("pending")
def pending(
    queue: str | None = QueueOption,
    shards: int | None = ShardsOption,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show pending event counts per shard."""
    settings = utils.build_settings(queue, shards)

    sizes = utils.run_with_timer(settings, lambda timer: timer.shard_sizes())

    if json_out:
        utils.print_json({"queue": settings.queue_name, "shards": sizes, "total": sum(sizes.values())})
        return

    table = Table(title=f"Pending: {settings.queue_name}")
    table.add_column("Shard key")
    table.add_column("Pending", justify="right")
    for key, count in sizes.items():
        table.add_row(key, str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{sum(sizes.values())}[/bold]")
    console.print(table)


@app.command("dead")
def dead(
    queue: str | None = QueueOption,
    limit: int = typer.Option(20, "--limit", "-n", min=1),
) -> None:
    """List dead-lettered events (undeliverable_policy=dead_letter)."""
    settings = utils.build_settings(queue, None)
    entries = utils.run_with_timer(settings, lambda timer: timer.dead_letters(limit))
    utils.print_json(entries)


@app.command("watch")
def watch(
    ctx: typer.Context,
    event_types: list[str] = typer.Argument(..., help="Event types to print when delivered"),
    queue: str | None = QueueOption,
    shards: int | None = ShardsOption,
    duration: float | None = typer.Option(None, "--for", help="Stop after N seconds"),
) -> None:
    """Poll the queue and print delivered events until interrupted."""
    settings = utils.build_settings(queue, shards)
    log_level = (ctx.obj or {}).get("log_level") or settings.log_level
    configure_logging(level=log_level, json_format=settings.json_logs)

    def _echo(event_type: str):
        def handler(arg: Any) -> None:
            console.print(f"[cyan]{event_type}[/cyan] {arg!r}")

        return handler

    def _report(error: Exception) -> None:
        err_console.print(f"[red]{error}[/red]")

    async def _main() -> None:
        redis = utils.redis_factory(settings)
        timer = HATimer(settings, on_error=_report)
        for event_type in event_types:
            timer.register_handler(event_type, _echo(event_type))
        timer.install(redis)
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await timer.aclose()
            await redis.aclose()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        err_console.print("stopped")


if __name__ == "__main__":
    app()
