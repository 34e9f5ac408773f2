"""
Shared Pydantic models for REST API and on-disk serialization.

This module contains Pydantic equivalents of the dataclass models in
pipeline.models. They give the persisted JSON documents and the HTTP payloads
one camelCase schema, and convert to and from the dataclasses used inside the
pipeline.
"""
from __future__ import annotations

import typing as t
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pipeline.models import (
    Event,
    OriginStage,
    PlanningStatus,
    ProcessingRecord,
    SpecializedStatus,
    Suggestion,
    Task,
    TaskCategory,
    TaskStatus,
)


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting snake_case input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuggestionModel(CamelModel):
    """A link or recommendation attached to a task."""
    id: str
    title: str
    description: str = ""
    link: str = ""


class TaskModel(CamelModel):
    """A task attached to an event."""
    id: str
    event_id: str
    category: TaskCategory
    title: str
    description: str = ""
    status: TaskStatus
    needs_approval: bool
    origin_stage: OriginStage
    external_session_url: t.Optional[str] = None
    suggestions: list[SuggestionModel] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, task: Task) -> TaskModel:
        return cls(
            id=task.id,
            event_id=task.event_id,
            category=task.category,
            title=task.title,
            description=task.description,
            status=task.status,
            needs_approval=task.needs_approval,
            origin_stage=task.origin_stage,
            external_session_url=task.external_session_url,
            suggestions=[SuggestionModel(**vars(s)) for s in task.suggestions],
        )

    def to_domain(self) -> Task:
        return Task(
            id=self.id,
            event_id=self.event_id,
            category=self.category,
            title=self.title,
            description=self.description,
            status=self.status,
            needs_approval=self.needs_approval,
            origin_stage=self.origin_stage,
            external_session_url=self.external_session_url,
            suggestions=[Suggestion(**s.model_dump()) for s in self.suggestions],
        )


class EventModel(CamelModel):
    """A calendar event with its tasks, as exchanged with the UI."""
    id: str
    title: str
    scheduled_at: datetime
    location: str = ""
    participants: list[str] = Field(default_factory=list)
    description: str = ""
    tasks: list[TaskModel] = Field(default_factory=list)
    planning_status: t.Optional[PlanningStatus] = None

    @classmethod
    def from_domain(cls, event: Event) -> EventModel:
        return cls(
            id=event.id,
            title=event.title,
            scheduled_at=event.scheduled_at,
            location=event.location,
            participants=list(event.participants),
            description=event.description,
            tasks=[TaskModel.from_domain(task) for task in event.tasks],
            planning_status=event.planning_status,
        )

    def to_domain(self) -> Event:
        scheduled_at = self.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        return Event(
            id=self.id,
            title=self.title,
            scheduled_at=scheduled_at,
            location=self.location,
            participants=list(self.participants),
            description=self.description,
            tasks=[task.to_domain() for task in self.tasks],
            planning_status=self.planning_status,
        )


class ProcessingRecordModel(CamelModel):
    """Durable per-event processing record."""
    event_id: str
    event_title: str = ""
    planning_status: PlanningStatus = PlanningStatus.IDLE
    planning_tasks: list[TaskModel] = Field(default_factory=list)
    specialized_task: t.Optional[TaskModel] = None
    specialized_status: t.Optional[SpecializedStatus] = None
    event_type: t.Optional[str] = None
    stage_claims: dict[str, str] = Field(default_factory=dict)
    processed_at: str = ""
    last_updated: str = ""

    @classmethod
    def from_domain(cls, record: ProcessingRecord) -> ProcessingRecordModel:
        return cls(
            event_id=record.event_id,
            event_title=record.event_title,
            planning_status=record.planning_status,
            planning_tasks=[TaskModel.from_domain(t_) for t_ in record.planning_tasks],
            specialized_task=(
                TaskModel.from_domain(record.specialized_task)
                if record.specialized_task else None
            ),
            specialized_status=record.specialized_status,
            event_type=record.event_type,
            stage_claims=dict(record.stage_claims),
            processed_at=record.processed_at,
            last_updated=record.last_updated,
        )

    def to_domain(self) -> ProcessingRecord:
        return ProcessingRecord(
            event_id=self.event_id,
            event_title=self.event_title,
            planning_status=self.planning_status,
            planning_tasks=[task.to_domain() for task in self.planning_tasks],
            specialized_task=self.specialized_task.to_domain() if self.specialized_task else None,
            specialized_status=self.specialized_status,
            event_type=self.event_type,
            stage_claims=dict(self.stage_claims),
            processed_at=self.processed_at,
            last_updated=self.last_updated,
        )


# Persisted documents
class EventHistoryDocument(CamelModel):
    """Contents of event-history.json."""
    events: dict[str, ProcessingRecordModel] = Field(default_factory=dict)
    last_updated: str = ""


class ProcessedEventsDocument(CamelModel):
    """Contents of processed-events.json."""
    processed_event_ids: list[str] = Field(default_factory=list)
    last_updated: str = ""


# Request/Response Models for API endpoints
class OrchestrateRequest(CamelModel):
    """Request model for orchestrating the current event list."""
    events: list[EventModel]


class EventsResponse(CamelModel):
    """Response model carrying an event list with tasks attached."""
    count: int
    events: list[EventModel]
    fetched_at: datetime


class UpdateTaskStatusRequest(CamelModel):
    """Request model for moving a task along the state machine."""
    event_id: str
    task_id: str
    status: TaskStatus


class ResetEventRequest(CamelModel):
    """Request model for resetting what the pipeline did for an event."""
    event_id: str
    stage: t.Optional[OriginStage] = None


class ProcessingStatusResponse(CamelModel):
    """Response model for the stored processing records."""
    processed_event_ids: list[str]
    records: list[ProcessingRecordModel]


class MonitorStatusResponse(CamelModel):
    """Response model for the calendar monitor state."""
    running: bool
    poll_interval: float
    last_seen_count: int
