# -*- coding: utf-8 -*-
"""Command line entry point for the event pipeline."""
import asyncio
import logging
import typing as t

import click
from pydantic import ValidationError
from rich.panel import Panel
from rich.text import Text

from pipeline.assistant import EventPipeline, build_pipeline
from pipeline.config import Settings
from pipeline.models import OriginStage
from pipeline.store import IdempotencyStore
from pipeline.utils import configure_logging, console, create_events_table, create_records_table


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid configuration\n{e}")
        raise SystemExit(1)


def _load_pipeline(settings: Settings) -> EventPipeline:
    missing = settings.missing()
    if missing:
        console.print(
            f"[red]Error:[/red] Missing required environment variables: {', '.join(missing)}"
        )
        raise SystemExit(1)
    return build_pipeline(settings)


async def _tick(pipeline: EventPipeline) -> None:
    new_events = await pipeline.detect_new_events()
    await pipeline.drain()

    stats = Text()
    stats.append("Visible events: ", style="white")
    stats.append(f"{len(pipeline.detector.current_events)}", style="bold green")
    stats.append("\nNew events: ", style="white")
    stats.append(f"{len(new_events)}", style="bold green")
    console.print(Panel(stats, title="🔎 Detection", border_style="green"))

    view = await pipeline.store.merge_history(pipeline.detector.current_events)
    if view:
        console.print(create_events_table(view))


async def _watch(pipeline: EventPipeline) -> None:
    await pipeline.start_monitoring()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        pipeline.stop_monitoring()
        await pipeline.drain()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Watch a calendar and plan follow-up work for new events."""
    configure_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
def tick() -> None:
    """Fetch the calendar once and process any new events."""
    pipeline = _load_pipeline(_settings())
    asyncio.run(_tick(pipeline))


@cli.command()
@click.option("--interval", type=float, default=None, help="Polling interval in seconds.")
def watch(interval: t.Optional[float]) -> None:
    """Poll the calendar until interrupted."""
    settings = _settings()
    if interval is not None:
        settings.poll_interval = interval
    pipeline = _load_pipeline(settings)

    console.print(
        Panel.fit(
            f"[bold blue]📅 Event Pipeline[/bold blue]\n"
            f"Polling every [bold]{settings.poll_interval:.0f}s[/bold], Ctrl+C to stop",
            border_style="blue",
        )
    )
    try:
        asyncio.run(_watch(pipeline))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")


@cli.command()
def status() -> None:
    """Show what the pipeline has recorded for each event."""
    store = IdempotencyStore(_settings().data_dir)

    async def load() -> tuple[dict, list[str]]:
        return await store.load_all_processing_records(), await store.processed_event_ids()

    records, processed = asyncio.run(load())
    if not records:
        console.print("[dim]No events processed yet.[/dim]")
        return
    console.print(create_records_table(records, processed))


@cli.command()
@click.argument("event_id", required=False)
@click.option(
    "--stage",
    type=click.Choice([stage.value for stage in OriginStage]),
    default=None,
    help="Reset only this stage.",
)
@click.option("--clear-processed", is_flag=True, help="Forget every processed event id instead.")
def reset(event_id: t.Optional[str], stage: t.Optional[str], clear_processed: bool) -> None:
    """Forget what the pipeline did for EVENT_ID so it runs again."""
    store = IdempotencyStore(_settings().data_dir)
    if clear_processed:
        asyncio.run(store.clear_processed())
        console.print("[green]✓[/green] Cleared the processed event list")
        return
    if not event_id:
        raise click.UsageError("Provide an EVENT_ID or --clear-processed.")
    asyncio.run(store.reset(event_id, OriginStage(stage) if stage else None))
    console.print(f"[green]✓[/green] Reset {stage or 'all stages'} for {event_id}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP service."""
    import uvicorn

    try:
        _settings().require_credentials()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    uvicorn.run("services.pipeline_service.app:app", host=host, port=port)


if __name__ == "__main__":
    cli()
