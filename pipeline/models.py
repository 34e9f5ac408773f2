"""
Data models for the event pipeline.

This module contains the dataclasses and enums shared by the detector, the two
pipeline stages, the orchestrator and the outer surfaces: calendar events, the
tasks attached to them, and the durable per-event processing record.
"""
from __future__ import annotations

import typing as t
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from pipeline.utils import parse_timestamp


class TaskCategory(str, Enum):
    """Kind of follow-up work a task represents."""
    SHOPPING = "shopping"
    BOOKING = "booking"
    COMMUNICATION = "communication"
    PREPARATION = "preparation"


class TaskStatus(str, Enum):
    """Approval/execution state of a task. See pipeline.task_states."""
    SUGGESTED = "suggested"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ISSUE = "issue"


class PlanningStatus(str, Enum):
    """Planning stage progress for one event."""
    IDLE = "idle"
    PLANNING = "planning"
    COMPLETED = "completed"
    ERROR = "error"


class OriginStage(str, Enum):
    """Pipeline stage that authored a task."""
    PLANNING = "planning"
    BIRTHDAY = "birthday"


class SpecializedStatus(str, Enum):
    """Why the birthday stage finished without creating a task."""
    SKIPPED = "skipped"
    ERROR = "error"


BIRTHDAY_EVENT_TYPE = "birthday"
EVENT_TYPES = ("birthday", "meeting", "conference", "dinner", "travel", "other")


@dataclass
class Suggestion:
    """A link or recommendation attached to a task (e.g. a shopping cart)."""
    id: str
    title: str
    description: str = ""
    link: str = ""


@dataclass
class Task:
    """A unit of follow-up work attached to an event."""
    id: str
    event_id: str
    category: TaskCategory
    title: str
    description: str
    status: TaskStatus
    needs_approval: bool
    origin_stage: OriginStage
    external_session_url: t.Optional[str] = None
    suggestions: list[Suggestion] = field(default_factory=list)

    def copy(self) -> Task:
        return replace(self, suggestions=list(self.suggestions))


@dataclass
class Event:
    """A calendar event as seen by the pipeline, with its attached tasks."""
    id: str
    title: str
    scheduled_at: datetime
    location: str = ""
    participants: list[str] = field(default_factory=list)
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    planning_status: t.Optional[PlanningStatus] = None

    def tasks_from(self, stage: OriginStage) -> list[Task]:
        """Return the tasks authored by the given stage."""
        return [task for task in self.tasks if task.origin_stage == stage]

    def specialized_task(self) -> t.Optional[Task]:
        """Return the birthday-stage task, if one is attached."""
        tasks = self.tasks_from(OriginStage.BIRTHDAY)
        return tasks[0] if tasks else None

    def copy(self) -> Event:
        """Shallow copy with its own task list, so views can be merged freely."""
        return replace(
            self,
            participants=list(self.participants),
            tasks=[task.copy() for task in self.tasks],
        )

    @classmethod
    def from_raw(cls, raw: t.Mapping[str, t.Any]) -> t.Optional[Event]:
        """Convert a raw calendar record into an Event.

        Accepts Google Calendar v3 event resources (``summary``,
        ``start.dateTime``/``start.date``, ``attendees``) as well as flat
        records (``title``, ``date``/``start``, ``participants``).

        Returns:
            The event, or None when the id, title or date is missing or invalid
        """
        event_id = raw.get("id")
        title = (raw.get("summary") or raw.get("title") or "").strip()

        start = raw.get("start")
        if isinstance(start, t.Mapping):
            start = start.get("dateTime") or start.get("date")
        scheduled_at = parse_timestamp(start or raw.get("date"))

        if not event_id or not title or scheduled_at is None:
            return None

        participants: list[str] = []
        for attendee in raw.get("attendees") or []:
            if isinstance(attendee, t.Mapping):
                name = attendee.get("displayName") or attendee.get("email")
                if name:
                    participants.append(str(name))
        participants.extend(str(p) for p in raw.get("participants") or [])

        return cls(
            id=str(event_id),
            title=title,
            scheduled_at=scheduled_at,
            location=raw.get("location") or "",
            participants=participants,
            description=raw.get("description") or "",
        )


@dataclass
class ProcessingRecord:
    """Durable record of what the pipeline has already done for one event."""
    event_id: str
    event_title: str
    planning_status: PlanningStatus = PlanningStatus.IDLE
    planning_tasks: list[Task] = field(default_factory=list)
    specialized_task: t.Optional[Task] = None
    specialized_status: t.Optional[SpecializedStatus] = None
    event_type: t.Optional[str] = None
    stage_claims: dict[str, str] = field(default_factory=dict)
    processed_at: str = ""
    last_updated: str = ""


@dataclass
class EventAnalysis:
    """Structured classification of an event returned by the language model."""
    event_type: str
    context: str = ""
    required_actions: list[str] = field(default_factory=list)
    missing_info: list[str] = field(default_factory=list)

    @property
    def is_birthday(self) -> bool:
        return self.event_type == BIRTHDAY_EVENT_TYPE


@dataclass
class AutomationResult:
    """Final outcome of a browser-automation task."""
    output: str
    success: bool = True
    message: str = ""


class AutomationRun(t.Protocol):
    """A started automation task whose session URL is known before completion."""
    session_url: t.Optional[str]

    async def completion(self) -> AutomationResult: ...


class CalendarSource(t.Protocol):
    async def fetch_events(
        self,
        time_min: t.Optional[datetime] = None,
        time_max: t.Optional[datetime] = None,
        limit: t.Optional[int] = None,
    ) -> list[dict[str, t.Any]]: ...


class EventClassifier(t.Protocol):
    async def classify(self, event: Event) -> EventAnalysis: ...


class AutomationService(t.Protocol):
    async def run_task(self, instruction: str) -> AutomationRun: ...
