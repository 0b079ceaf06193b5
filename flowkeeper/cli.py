"""Command line interface for flowkeeper workers and administration."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer

from flowkeeper.config import load_config
from flowkeeper.contracts import Event
from flowkeeper.errors import FlowkeeperError
from flowkeeper.storage import Storage, get_storage
from flowkeeper.worker import Worker

T = TypeVar("T")

app = typer.Typer(help="CLI for flowkeeper workflow storage")

db_app = typer.Typer(help="Commands for the database schema")
worker_app = typer.Typer(help="Commands for running workers")
reaper_app = typer.Typer(help="Commands for reclaiming abandoned workflows")
workflow_app = typer.Typer(help="Commands for inspecting and retiring workflows")
event_app = typer.Typer(help="Commands for publishing events")

app.add_typer(db_app, name="db")
app.add_typer(worker_app, name="worker")
app.add_typer(reaper_app, name="reaper")
app.add_typer(workflow_app, name="workflow")
app.add_typer(event_app, name="event")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level (default from config)"),
) -> None:
    """flowkeeper CLI entry point."""
    level = log_level or load_config().log_level
    logging.basicConfig(
        level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _run(action: Callable[[Storage], Awaitable[T]]) -> T:
    async def runner() -> T:
        storage = get_storage()
        try:
            return await action(storage)
        finally:
            await storage.close()

    try:
        return asyncio.run(runner())
    except FlowkeeperError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)


@db_app.command("init")
def db_init() -> None:
    """Create the workflow, event, subscription, host and log tables."""
    _run(lambda storage: storage.init_db())
    typer.echo("Schema created")


@db_app.command("check")
def db_check() -> None:
    """Verify every table exists; exits with code 2 otherwise."""
    _run(lambda storage: storage.verify_schema())
    typer.echo("Schema OK")


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    workflow_type: str = typer.Option("", "--type", help="Only run workflows of this type"),
    modules: List[str] = typer.Option(
        [], "--import", help="Module registering workflow types; may repeat"
    ),
) -> None:
    """
    Run a worker that executes due workflows.

    Workflow classes must be registered before the worker starts, so pass the
    modules defining them with --import.

    Example:
        flowkeeper worker run --import shop.workflows --lifespan 300
    """
    for module in modules:
        importlib.import_module(module)

    async def action(storage: Storage) -> None:
        await storage.verify_schema()
        await Worker(storage, type_filter=workflow_type).run(lifespan=lifespan)

    _run(action)


@reaper_app.command("sweep")
def reaper_sweep() -> None:
    """Heartbeat this host and unlock workflows whose owner is gone."""
    report = _run(lambda storage: storage.reaper.sweep())
    typer.echo(
        f"restarted={len(report.restarted)} failed={len(report.failed)} "
        f"still_running={len(report.skipped)}"
    )


@workflow_app.command("due")
def workflow_due(
    workflow_type: str = typer.Option("", "--type", help="Only list this type"),
    limit: int = typer.Option(100, help="Maximum number of ids"),
) -> None:
    """List ids of workflows ready to run, earliest schedule first."""
    ids = _run(lambda storage: storage.workflows.list_due(workflow_type, limit=limit))
    if not ids:
        typer.echo("No workflows due")
        return
    for workflow_id in ids:
        typer.echo(str(workflow_id))


@workflow_app.command("events")
def workflow_events(workflow_id: int) -> None:
    """Show the undelivered events of a workflow."""
    events = _run(lambda storage: storage.events.events_for(workflow_id))
    if not events:
        typer.echo("No active events")
        return
    for event in events:
        typer.echo(f"{event.event_id}\t{event.type}\t{event.created_at}\t{event.context}")


@workflow_app.command("finish")
def workflow_finish(workflow_id: int) -> None:
    """Retire a workflow with its events and subscriptions."""
    result = _run(lambda storage: storage.workflows.finish(workflow_id))
    if not result:
        typer.secho(f"Workflow {workflow_id} not finished: {result.error.value}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} finished")


def _parse_pairs(pairs: List[str]) -> dict[str, str]:
    key_data: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--key")
        key_data[key] = value
    return key_data


@event_app.command("publish")
def event_publish(
    event_type: str,
    keys: List[str] = typer.Option([], "--key", help="Routing pair key=value; may repeat"),
    context: str = typer.Option("", help="Opaque event payload"),
) -> None:
    """
    Route an event to every workflow subscribed to it.

    Example:
        flowkeeper event publish order --key region=EU --context '{"id": 7}'
    """
    event = Event(type=event_type, context=context, key_data=_parse_pairs(keys))
    result = _run(lambda storage: storage.events.route(event))
    if not result:
        typer.secho(f"Routing failed: {result.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if result.value == 0:
        typer.echo("No subscribers")
    else:
        typer.echo(f"Delivered to {result.value} workflows")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
