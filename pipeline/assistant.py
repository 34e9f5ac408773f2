"""The pipeline's operation surface, shared by the HTTP service, MCP and CLI."""
from __future__ import annotations

import logging
import typing as t

from pipeline.birthday import BirthdayStage
from pipeline.config import Settings
from pipeline.detector import ChangeDetector
from pipeline.models import (
    AutomationService,
    CalendarSource,
    Event,
    EventClassifier,
    OriginStage,
    ProcessingRecord,
    Task,
    TaskStatus,
)
from pipeline.orchestrator import Orchestrator
from pipeline.planning import PlanningStage
from pipeline.store import IdempotencyStore

logger = logging.getLogger(__name__)


class EventPipeline:
    """Wires detector, stages, orchestrator and store together."""

    def __init__(
        self,
        calendar: CalendarSource,
        classifier: EventClassifier,
        automation: AutomationService,
        settings: t.Optional[Settings] = None,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings

        self.store = IdempotencyStore(s.data_dir, claim_ttl=s.claim_ttl)
        self.planning = PlanningStage(self.store, classifier, classify_timeout=s.classifier_timeout)
        self.birthday = BirthdayStage(
            self.store,
            classifier,
            automation,
            classify_timeout=s.classifier_timeout,
            session_timeout=s.automation_session_timeout,
            completion_timeout=s.automation_completion_timeout,
        )
        self.orchestrator = Orchestrator(
            self.store,
            self.planning,
            self.birthday,
            settle_delay=s.settle_delay,
            await_specialized=s.await_specialized,
        )
        self.detector = ChangeDetector(
            calendar,
            on_new_events=self._on_new_events,
            poll_interval=s.poll_interval,
            fetch_timeout=s.calendar_timeout,
            excluded_titles=s.excluded_titles,
            lookahead_days=s.calendar_lookahead_days,
            max_results=s.calendar_max_results,
        )

    async def detect_new_events(self) -> list[Event]:
        """Run one detector tick; the new events are orchestrated as a side effect."""
        return await self.detector.tick()

    async def orchestrate(self, events: t.Sequence[Event]) -> list[Event]:
        return await self.orchestrator.orchestrate(events)

    async def current_events(self) -> list[Event]:
        """Fetch the calendar and orchestrate it, as a UI refresh does.

        Raises:
            CalendarFetchError: If the calendar cannot be fetched
        """
        events = await self.detector.fetch_current_events()
        return await self.orchestrate(events)

    async def update_task_status(self, event_id: str, task_id: str, status: TaskStatus) -> Task:
        """Move a stored task along the task state machine.

        Raises:
            TaskNotFoundError: If no stored task matches
            InvalidTransitionError: If the transition is not allowed
        """
        return await self.store.update_task(event_id, task_id, TaskStatus(status))

    async def reset_event(self, event_id: str, stage: t.Optional[OriginStage] = None) -> None:
        await self.store.reset(event_id, OriginStage(stage) if stage else None)

    async def processing_records(self) -> dict[str, ProcessingRecord]:
        return await self.store.load_all_processing_records()

    async def start_monitoring(self) -> None:
        await self.detector.start()

    def stop_monitoring(self) -> None:
        self.detector.stop()

    async def drain(self) -> None:
        await self.orchestrator.drain()

    async def _on_new_events(self, new_events: list[Event]) -> None:
        logger.info("Orchestrating after detecting %d new event(s)", len(new_events))
        await self.orchestrate(self.detector.current_events or new_events)


def build_pipeline(settings: t.Optional[Settings] = None) -> EventPipeline:
    """Build a pipeline talking to the real calendar, OpenAI and browser-use."""
    from collaborators.automation import BrowserUseClient
    from collaborators.calendar_client import GoogleCalendarClient
    from collaborators.classifier import OpenAIEventClassifier

    settings = settings or Settings.from_env()
    calendar = GoogleCalendarClient(
        access_token=settings.google_access_token or "",
        refresh_token=settings.google_refresh_token,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        timeout=settings.calendar_timeout,
    )
    classifier = OpenAIEventClassifier(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
    )
    automation = BrowserUseClient(
        api_key=settings.browser_use_api_key or "",
        api_url=settings.browser_use_api_url,
        live_url=settings.browser_use_live_url,
        timeout=settings.automation_session_timeout,
    )
    return EventPipeline(calendar, classifier, automation, settings)
