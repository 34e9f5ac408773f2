"""
MCP Gateway Server for the event pipeline.

Exposes the pipeline operations as MCP tools so an agent can trigger
detection, feed events through both stages, approve or reject tasks and
inspect the processing history. The pipeline is built from the environment
on first use.
"""
from __future__ import annotations

import typing as t

from fastmcp import FastMCP

from pipeline.assistant import EventPipeline, build_pipeline
from pipeline.models import OriginStage, TaskStatus
from pipeline.utils import create_records_table, render_text
from services.shared.models import EventModel, TaskModel

mcp = FastMCP("EventPipelineGateway")

_pipeline: t.Optional[EventPipeline] = None


def get_pipeline() -> EventPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: t.Optional[EventPipeline]) -> None:
    """Replace the pipeline the tools operate on."""
    global _pipeline
    _pipeline = pipeline


def _dump_events(events: t.Iterable[t.Any]) -> list[dict[str, t.Any]]:
    return [EventModel.from_domain(event).model_dump(mode="json", by_alias=True) for event in events]


# Raw tool functions, kept separate from their MCP registrations so they can
# be called directly.

async def _detect_new_events() -> list[dict[str, t.Any]]:
    """Run one detector tick and return the new events with their tasks."""
    pipeline = get_pipeline()
    new_events = await pipeline.detect_new_events()
    return _dump_events(await pipeline.store.merge_history(new_events))


async def _orchestrate_events(events: list[dict[str, t.Any]]) -> list[dict[str, t.Any]]:
    """Run both pipeline stages over the given events."""
    parsed = [EventModel.model_validate(event).to_domain() for event in events]
    return _dump_events(await get_pipeline().orchestrate(parsed))


async def _update_task_status(event_id: str, task_id: str, status: str) -> dict[str, t.Any]:
    """Move a task along its state machine.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidTransitionError: If the status change is not allowed
    """
    task = await get_pipeline().update_task_status(event_id, task_id, TaskStatus(status))
    return TaskModel.from_domain(task).model_dump(mode="json", by_alias=True)


async def _reset_event(event_id: str, stage: t.Optional[str] = None) -> str:
    await get_pipeline().reset_event(event_id, OriginStage(stage) if stage else None)
    return f"Reset {stage or 'all stages'} for event {event_id}"


async def _show_processing_status() -> str:
    pipeline = get_pipeline()
    records = await pipeline.processing_records()
    if not records:
        return "No events processed yet."
    processed = await pipeline.store.processed_event_ids()
    return format_processing_records(records, processed)


def format_processing_records(records: t.Mapping[str, t.Any], processed: t.Collection[str] = ()) -> str:
    """Render processing records as a plain-text table."""
    return render_text(create_records_table(records, processed))


@mcp.tool()
async def detect_new_events() -> list[dict[str, t.Any]]:
    """Check the calendar for events not seen before and process them."""
    return await _detect_new_events()


@mcp.tool()
async def orchestrate_events(events: list[dict[str, t.Any]]) -> list[dict[str, t.Any]]:
    """Plan tasks for a list of events and run birthday purchases where applicable."""
    return await _orchestrate_events(events)


@mcp.tool()
async def update_task_status(event_id: str, task_id: str, status: str) -> dict[str, t.Any]:
    """Approve, reject or complete a task (suggested, approved, executing, completed, issue)."""
    return await _update_task_status(event_id, task_id, status)


@mcp.tool()
async def reset_event(event_id: str, stage: t.Optional[str] = None) -> str:
    """Forget what the pipeline did for an event (optionally one stage: planning or birthday)."""
    return await _reset_event(event_id, stage)


@mcp.tool()
async def show_processing_status() -> str:
    """Displays the processing history of every event in a formatted table."""
    return await _show_processing_status()


if __name__ == "__main__":
    mcp.run()
