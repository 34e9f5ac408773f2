"""Planning stage: classify an event and derive its initial task set once."""
from __future__ import annotations

import asyncio
import logging
import typing as t
import uuid
from dataclasses import dataclass, field

from pipeline.models import (
    Event,
    EventClassifier,
    OriginStage,
    PlanningStatus,
    Task,
    TaskCategory,
    TaskStatus,
)
from pipeline.store import IdempotencyStore
from pipeline.utils import utc_now

logger = logging.getLogger(__name__)

PlanKind = t.Literal["skipped", "already_planned", "planned"]

# (category, title, description, needs_approval)
BIRTHDAY_TEMPLATE: list[tuple[TaskCategory, str, str, bool]] = [
    (
        TaskCategory.SHOPPING,
        "Order birthday outfit",
        "Order an outfit for the birthday from an online retailer. "
        "Recommendations are fetched with browser automation.",
        True,
    ),
    (
        TaskCategory.BOOKING,
        "Book venue",
        "Book a suitable venue for the birthday party.",
        True,
    ),
    (
        TaskCategory.COMMUNICATION,
        "Send invitations",
        "Send birthday invitations to all guests with RSVP and event details.",
        False,
    ),
]


@dataclass
class PlanResult:
    """Outcome of one plan() call."""
    kind: PlanKind
    tasks: list[Task] = field(default_factory=list)
    reason: str = ""

    @classmethod
    def skipped(cls, reason: str) -> PlanResult:
        return cls(kind="skipped", reason=reason)

    @classmethod
    def already_planned(cls, tasks: list[Task]) -> PlanResult:
        return cls(kind="already_planned", tasks=tasks)

    @classmethod
    def planned(cls, tasks: list[Task]) -> PlanResult:
        return cls(kind="planned", tasks=tasks)


def birthday_tasks(event: Event) -> list[Task]:
    """Build the fixed birthday task set for an event, each with a fresh id."""
    return [
        Task(
            id=f"{event.id}:planning:{uuid.uuid4().hex[:12]}",
            event_id=event.id,
            category=category,
            title=title,
            description=description,
            status=TaskStatus.SUGGESTED,
            needs_approval=needs_approval,
            origin_stage=OriginStage.PLANNING,
        )
        for category, title, description, needs_approval in BIRTHDAY_TEMPLATE
    ]


class PlanningStage:
    """Derives the initial tasks for birthday events, exactly once per event."""

    def __init__(
        self,
        store: IdempotencyStore,
        classifier: EventClassifier,
        classify_timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.classify_timeout = classify_timeout

    async def plan(self, event: Event, force: bool = False) -> PlanResult:
        """Plan an event.

        An event that already carries tasks is never modified. A stored
        ``completed`` or ``error`` status short-circuits the stage unless
        ``force`` is set, which is how an operator re-plans after a failure.

        Args:
            event: The event to plan
            force: Ignore a terminal planning status recorded earlier

        Returns:
            skipped(reason), already_planned(tasks) or planned(tasks)
        """
        if event.tasks:
            logger.debug("Event %s already has %d task(s), not planning", event.id, len(event.tasks))
            return PlanResult.already_planned(list(event.tasks))

        if not force:
            record = await self.store.load_processing_record(event.id)
            if record is not None and record.planning_status in (
                PlanningStatus.COMPLETED, PlanningStatus.ERROR,
            ):
                if record.planning_tasks:
                    return PlanResult.already_planned(record.planning_tasks)
                return PlanResult.skipped(f"previously {record.planning_status.value}")

        if event.scheduled_at < utc_now():
            logger.info("Event %r is in the past, skipping planning", event.title)
            await self.store.save_processing_record(
                event.id, event.title, planning_status=PlanningStatus.COMPLETED,
            )
            return PlanResult.skipped("past event")

        await self.store.save_processing_record(
            event.id, event.title, planning_status=PlanningStatus.PLANNING,
        )

        try:
            analysis = await asyncio.wait_for(
                self.classifier.classify(event), timeout=self.classify_timeout,
            )
        except Exception as e:
            logger.error("Classification failed for event %s: %s", event.id, e)
            await self.store.save_processing_record(
                event.id, event.title, planning_status=PlanningStatus.ERROR,
            )
            return PlanResult.skipped("error")

        if not analysis.is_birthday:
            logger.info("Event %r is %s, not birthday; skipping planning", event.title, analysis.event_type)
            await self.store.save_processing_record(
                event.id,
                event.title,
                planning_status=PlanningStatus.COMPLETED,
                event_type=analysis.event_type,
            )
            return PlanResult.skipped("not birthday")

        logger.info("Birthday event %r: %s", event.title, analysis.context or "no context")
        if analysis.missing_info:
            logger.info("Missing info for %s: %s", event.id, ", ".join(analysis.missing_info))

        tasks = birthday_tasks(event)
        await self.store.save_processing_record(
            event.id,
            event.title,
            planning_status=PlanningStatus.COMPLETED,
            planning_tasks=tasks,
            event_type=analysis.event_type,
        )
        for index, task in enumerate(tasks, 1):
            logger.info("  %d. %s (%s)", index, task.title, task.category.value)
        return PlanResult.planned(tasks)
