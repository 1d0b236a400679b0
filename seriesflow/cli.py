"""Command line interface for the seriesflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from seriesflow.config import load_config
from seriesflow.contracts import (
    ProgressStatus,
    SeriesStatus,
    TriggerContext,
    VisitorSignal,
)
from seriesflow.definitions import load_definitions, store_definitions
from seriesflow.engine import SeriesEngine
from seriesflow.persistence import get_repository
from seriesflow.readiness import check_readiness
from seriesflow.transports import DEFAULT_SIGNAL_TOPIC, get_transport
from seriesflow.worker import SignalWorker

app = typer.Typer(help="CLI for seriesflow visitor lifecycle series")

# Command groups
series_app = typer.Typer(help="Commands for managing series definitions")
progress_app = typer.Typer(help="Commands for inspecting visitor progress")
worker_app = typer.Typer(help="Commands for the signal ingestion worker")
signal_app = typer.Typer(help="Commands for emitting visitor signals")

app.add_typer(series_app, name="series")
app.add_typer(progress_app, name="progress")
app.add_typer(worker_app, name="worker")
app.add_typer(signal_app, name="signal")


def _engine(config_path: Optional[Path] = None) -> SeriesEngine:
    if config_path is None:
        config = load_config()
        repository = get_repository()
    else:
        config = load_config(str(config_path))
        repository = get_repository(config=config)
    return SeriesEngine(repository=repository, config=config)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for engine output"),
) -> None:
    """seriesflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@series_app.command("load")
def series_load(
    path: Path,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Load series definitions from a YAML file into the configured database.

    Each loaded series is checked for readiness; problems are reported but do
    not prevent loading.

    Example:
        seriesflow series load ./series/onboarding.yaml
    """
    if not path.exists():
        _fail("Specified path does not exist")

    try:
        definitions = load_definitions(path)
    except (ValidationError, KeyError) as e:
        _fail(f"Invalid series definition: {e}")

    engine = _engine(config)
    asyncio.run(store_definitions(engine.repository, definitions))

    for definition in definitions:
        series = definition.series
        report = check_readiness(series, definition.blocks)
        state = "ready" if report.is_ready else f"{len(report.blockers)} blocker(s)"
        typer.echo(
            f"{series.id}\t{series.name}\t{series.status.value}\t"
            f"{len(definition.blocks)} blocks\t{state}"
        )


@series_app.command("list")
def series_list(
    workspace: Optional[str] = None,
    status: Optional[SeriesStatus] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """List stored series, newest first."""
    engine = _engine(config)
    series = asyncio.run(
        engine.repository.list_series(workspace_id=workspace, status=status)
    )
    if not series:
        typer.echo("No series found")
        return
    for item in series:
        typer.echo(f"{item.id}\t{item.name}\t{item.status.value}")


@series_app.command("check")
def series_check(
    series_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Validate a stored series graph before activation.

    Exits with code 1 when any blocker is found.

    Example:
        seriesflow series check 6f1c...
    """
    engine = _engine(config)
    series = asyncio.run(engine.repository.get_series(series_id))
    if series is None:
        _fail("Series not found")
    blocks = asyncio.run(engine.repository.list_blocks(series_id))
    known_actions = engine.actions.names() or None
    report = check_readiness(series, blocks, known_actions)

    for issue in report.blockers:
        typer.secho(f"BLOCKER {issue.code}: {issue.message}", fg=typer.colors.RED)
    for issue in report.warnings:
        typer.secho(f"WARNING {issue.code}: {issue.message}", fg=typer.colors.YELLOW)

    if not report.is_ready:
        raise typer.Exit(code=1)
    typer.secho(f"Series {series.name} is ready", fg=typer.colors.GREEN)


@series_app.command("stats")
def series_stats(
    series_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Show progress counts per status for a series."""
    engine = _engine(config)
    stats = asyncio.run(engine.get_stats(series_id))
    for status, count in stats.items():
        typer.echo(f"{status}\t{count}")


@progress_app.command("list")
def progress_list(
    series: Optional[str] = None,
    visitor: Optional[str] = None,
    status: Optional[ProgressStatus] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    List progress records, optionally filtered by series, visitor or status.

    Example:
        seriesflow progress list --series 6f1c... --status waiting
    """
    engine = _engine(config)
    records = asyncio.run(
        engine.repository.list_progress(
            series_id=series, visitor_id=visitor, status=status
        )
    )
    if not records:
        typer.echo("No progress found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.visitor_id}\t{record.status.value}\t"
            f"{record.current_block_id or '-'}"
        )


@progress_app.command("show")
def progress_show(
    progress_id: str,
    history_limit: Optional[int] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Show a progress record and its execution history."""
    engine = _engine(config)
    details = asyncio.run(engine.get_progress(progress_id, history_limit))
    if details is None:
        _fail("Progress not found")

    progress = details.progress
    typer.echo(f"Progress {progress.id}: {progress.status.value}")
    typer.echo(f"Visitor: {progress.visitor_id}  Series: {progress.series_id}")
    if progress.current_block_id:
        typer.echo(f"Current block: {progress.current_block_id}")
    if progress.wait_event_name or progress.wait_until:
        typer.echo(
            f"Waiting for: {progress.wait_event_name or '-'} until {progress.wait_until or '-'}"
        )
    if progress.last_execution_error:
        typer.echo(f"Last error: {progress.last_execution_error}")
    for entry in details.history:
        typer.echo(
            f"- {entry.created_at.isoformat()} {entry.action.value} "
            f"{entry.block_id or '-'}"
            + (f" {json.dumps(entry.result)}" if entry.result else "")
        )


@progress_app.command("exit")
def progress_exit(
    progress_id: str,
    reason: Optional[str] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Manually exit a visitor from a series."""
    engine = _engine(config)
    progress = asyncio.run(engine.exit_progress(progress_id, reason))
    if progress is None:
        _fail("Progress not found")
    typer.echo(f"Progress {progress.id}: {progress.status.value}")


@progress_app.command("goal")
def progress_goal(
    progress_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Manually mark a progress record as having reached its goal."""
    engine = _engine(config)
    progress = asyncio.run(engine.mark_goal_reached(progress_id))
    if progress is None:
        _fail("Progress not found")
    typer.echo(f"Progress {progress.id}: {progress.status.value}")


@app.command("sweep")
def sweep(
    once: bool = typer.Option(False, help="Run a single sweep and exit"),
    interval: Optional[float] = None,
    lifespan: Optional[float] = None,
    series_limit: Optional[int] = None,
    waiting_limit: Optional[int] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Resume waiting progress whose deadline has passed.

    Example:
        seriesflow sweep --once
        seriesflow sweep --interval 30 --lifespan 3600
    """
    engine = _engine(config)
    if once:
        summary = asyncio.run(
            engine.process_waiting_progress(series_limit, waiting_limit)
        )
        typer.echo(
            f"scanned={summary.scanned} resumed={summary.resumed} "
            f"timed_out={summary.timed_out} skipped={summary.skipped}"
        )
        return

    if not engine.runtime_enabled:
        _fail("Series runtime is disabled")
    typer.echo("Starting backstop sweep")
    asyncio.run(engine.scheduler.run(interval_seconds=interval, lifespan=lifespan))


@worker_app.command("run")
def worker_run(
    topic: str = DEFAULT_SIGNAL_TOPIC,
    lifespan: Optional[float] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Consume visitor signals from the configured transport.

    Example:
        seriesflow worker run --lifespan 300
    """
    engine = _engine(config)
    transport = get_transport(config=engine.config)
    worker = SignalWorker(transport, engine, topic=topic)
    typer.echo(f"Starting signal worker on topic: {topic}")
    asyncio.run(worker.start(lifespan=lifespan))
    typer.echo(f"Processed {worker.processed} signal(s)")


@signal_app.command("emit")
def signal_emit(
    workspace_id: str,
    visitor_id: str,
    event: Optional[str] = typer.Option(None, help="Event name for event signals"),
    attribute: Optional[str] = typer.Option(
        None, help="Attribute key for attribute or state changes"
    ),
    source: Optional[str] = typer.Option(
        None, help="Trigger source; defaults to 'event' or 'visitor_attribute_changed'"
    ),
    from_value: Optional[str] = None,
    to_value: Optional[str] = None,
    direct: bool = typer.Option(
        False, help="Ingest directly instead of publishing to the transport"
    ),
    topic: str = DEFAULT_SIGNAL_TOPIC,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Emit a visitor signal.

    Example:
        seriesflow signal emit ws_1 visitor_1 --event signed_up --direct
        seriesflow signal emit ws_1 visitor_1 --attribute plan --to-value pro
    """
    try:
        context = TriggerContext(
            source=source or ("event" if event else "visitor_attribute_changed"),
            event_name=event,
            attribute_key=attribute,
            from_value=from_value,
            to_value=to_value,
        )
    except ValidationError as e:
        _fail(f"Invalid signal: {e}")

    engine = _engine(config)
    if direct:
        outcome = asyncio.run(engine.ingest_signal(workspace_id, visitor_id, context))
        for result in outcome.enrollments:
            status = result.progress.status.value if result.progress else "-"
            typer.echo(
                f"{result.series_id}\t"
                f"{'entered' if result.entered else result.reason}\t{status}"
            )
        for progress in outcome.resumed:
            typer.echo(f"{progress.series_id}\tresumed\t{progress.status.value}")
        if not outcome.enrollments and not outcome.resumed:
            typer.echo("No series affected")
        return

    signal = VisitorSignal(
        workspace_id=workspace_id, visitor_id=visitor_id, context=context
    )
    transport = get_transport(config=engine.config)

    async def publish() -> None:
        await transport.connect()
        try:
            await transport.publish(topic, signal)
        finally:
            await transport.disconnect()

    asyncio.run(publish())
    typer.echo(f"Published signal {signal.message_id} to {topic}")


if __name__ == "__main__":
    app()
