"""
FastAPI service for the event pipeline.

Exposes detection, orchestration, task status updates and the processing
history as REST endpoints. The calendar monitor runs inside the service's
event loop when PIPELINE_MONITOR_ENABLED is set.
"""
from __future__ import annotations

import logging
import typing as t
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request

from pipeline.assistant import EventPipeline, build_pipeline
from pipeline.config import Settings
from pipeline.errors import (
    CalendarAuthError,
    CalendarFetchError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from pipeline.models import Event
from pipeline.utils import configure_logging, utc_now
from services.shared.models import (
    EventModel,
    EventsResponse,
    MonitorStatusResponse,
    OrchestrateRequest,
    ProcessingRecordModel,
    ProcessingStatusResponse,
    ResetEventRequest,
    TaskModel,
    UpdateTaskStatusRequest,
)

logger = logging.getLogger(__name__)


def _events_response(events: t.Sequence[Event]) -> EventsResponse:
    return EventsResponse(
        count=len(events),
        events=[EventModel.from_domain(event) for event in events],
        fetched_at=utc_now(),
    )


def _calendar_error(e: CalendarFetchError) -> HTTPException:
    if isinstance(e, CalendarAuthError):
        return HTTPException(status_code=401, detail=f"Calendar authentication failed: {str(e)}")
    return HTTPException(status_code=502, detail=f"Error fetching calendar: {str(e)}")


def get_pipeline(request: Request) -> EventPipeline:
    return request.app.state.pipeline


def create_app(pipeline: t.Optional[EventPipeline] = None) -> FastAPI:
    """Create the service app.

    Args:
        pipeline: Pipeline to serve; built from the environment on startup
            when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize the pipeline on startup and stop background work on shutdown."""
        if app.state.pipeline is None:
            configure_logging()
            app.state.pipeline = build_pipeline(Settings.from_env())
        served: EventPipeline = app.state.pipeline
        if served.settings.monitor_enabled:
            missing = served.settings.missing()
            if missing:
                logger.warning("Not starting calendar monitor, missing: %s", ", ".join(missing))
            else:
                await served.start_monitoring()
        yield
        served.stop_monitoring()
        await served.drain()

    app = FastAPI(
        title="Event Pipeline Service",
        description="REST API for calendar change detection and event task planning",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health_check():
        """Health check endpoint for container orchestration."""
        return {"status": "healthy", "service": "event-pipeline-service"}

    @app.get("/events", response_model=EventsResponse)
    async def list_events(pipeline: EventPipeline = Depends(get_pipeline)) -> EventsResponse:
        """
        Fetch the calendar and return every event with its tasks.

        Events that have not been processed yet are orchestrated on the way.
        """
        try:
            events = await pipeline.current_events()
        except CalendarFetchError as e:
            raise _calendar_error(e)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error listing events: {str(e)}")
        return _events_response(events)

    @app.post("/detect-new-events", response_model=EventsResponse)
    async def detect_new_events(pipeline: EventPipeline = Depends(get_pipeline)) -> EventsResponse:
        """Run one detector tick and return the events seen for the first time."""
        try:
            new_events = await pipeline.detect_new_events()
            view = await pipeline.store.merge_history(new_events)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error detecting new events: {str(e)}")
        return _events_response(view)

    @app.post("/orchestrate", response_model=EventsResponse)
    async def orchestrate(
        request: OrchestrateRequest,
        pipeline: EventPipeline = Depends(get_pipeline),
    ) -> EventsResponse:
        """Run both pipeline stages over a caller-supplied event list."""
        try:
            events = await pipeline.orchestrate([event.to_domain() for event in request.events])
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error orchestrating events: {str(e)}")
        return _events_response(events)

    @app.post("/update-task-status", response_model=TaskModel)
    async def update_task_status(
        request: UpdateTaskStatusRequest,
        pipeline: EventPipeline = Depends(get_pipeline),
    ) -> TaskModel:
        """Approve, reject or otherwise move a task along its state machine."""
        try:
            task = await pipeline.update_task_status(request.event_id, request.task_id, request.status)
        except TaskNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error updating task: {str(e)}")
        return TaskModel.from_domain(task)

    @app.post("/reset-event")
    async def reset_event(
        request: ResetEventRequest,
        pipeline: EventPipeline = Depends(get_pipeline),
    ) -> dict[str, t.Any]:
        """Forget what the pipeline did for an event so it runs again."""
        try:
            await pipeline.reset_event(request.event_id, request.stage)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error resetting event: {str(e)}")
        return {
            "status": "reset",
            "eventId": request.event_id,
            "stage": request.stage.value if request.stage else None,
        }

    @app.get("/processing-status", response_model=ProcessingStatusResponse)
    async def processing_status(
        pipeline: EventPipeline = Depends(get_pipeline),
    ) -> ProcessingStatusResponse:
        """Return the stored processing record of every event."""
        try:
            records = await pipeline.processing_records()
            processed = await pipeline.store.processed_event_ids()
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Error reading processing status: {str(e)}")
        return ProcessingStatusResponse(
            processed_event_ids=processed,
            records=[ProcessingRecordModel.from_domain(record) for record in records.values()],
        )

    @app.post("/monitor/start", response_model=MonitorStatusResponse)
    async def start_monitor(pipeline: EventPipeline = Depends(get_pipeline)) -> MonitorStatusResponse:
        """Start polling the calendar in the background."""
        await pipeline.start_monitoring()
        return _monitor_status(pipeline)

    @app.post("/monitor/stop", response_model=MonitorStatusResponse)
    async def stop_monitor(pipeline: EventPipeline = Depends(get_pipeline)) -> MonitorStatusResponse:
        """Stop polling the calendar."""
        pipeline.stop_monitoring()
        return _monitor_status(pipeline)

    return app


def _monitor_status(pipeline: EventPipeline) -> MonitorStatusResponse:
    detector = pipeline.detector
    return MonitorStatusResponse(
        running=detector.running,
        poll_interval=detector.poll_interval,
        last_seen_count=len(detector.last_seen_event_ids),
    )


app = create_app()
