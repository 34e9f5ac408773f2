"""Idempotency store backed by two JSON documents.

``processed-events.json`` lists the events whose pipeline run has finished.
``event-history.json`` maps event ids to their ProcessingRecord: planning
status, planning tasks, the birthday-stage task and the stage claim table.

Every read-modify-write cycle runs under one store-wide ``asyncio.Lock`` and
each document is replaced atomically, so concurrent callers in the same
process never interleave and a reader never sees a partial write. A missing
or unreadable document loads as empty.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import typing as t
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from pipeline import task_states
from pipeline.errors import TaskNotFoundError
from pipeline.models import (
    Event,
    OriginStage,
    PlanningStatus,
    ProcessingRecord,
    SpecializedStatus,
    Task,
    TaskStatus,
)
from pipeline.utils import utc_now
from services.shared.models import (
    EventHistoryDocument,
    ProcessedEventsDocument,
    ProcessingRecordModel,
)

logger = logging.getLogger(__name__)

PROCESSED_EVENTS_FILE = "processed-events.json"
EVENT_HISTORY_FILE = "event-history.json"

_RECORD_FIELDS = frozenset({
    "planning_status",
    "planning_tasks",
    "specialized_task",
    "specialized_status",
    "event_type",
})

DocumentT = t.TypeVar("DocumentT", EventHistoryDocument, ProcessedEventsDocument)


class IdempotencyStore:
    """File-backed record of which events each stage has already handled."""

    def __init__(self, data_dir: t.Union[str, Path], claim_ttl: float = 900.0) -> None:
        """
        Args:
            data_dir: Directory holding the two JSON documents
            claim_ttl: Seconds after which an unreleased stage claim is
                treated as abandoned (the process died mid-stage)
        """
        self.data_dir = Path(data_dir)
        self.claim_ttl = claim_ttl
        self._lock = asyncio.Lock()

    @property
    def history_path(self) -> Path:
        return self.data_dir / EVENT_HISTORY_FILE

    @property
    def processed_path(self) -> Path:
        return self.data_dir / PROCESSED_EVENTS_FILE

    # Processed-event list

    async def has_processed(self, event_id: str) -> bool:
        async with self._lock:
            doc = await self._read(self.processed_path, ProcessedEventsDocument)
        return event_id in doc.processed_event_ids

    async def mark_processed(self, event_id: str) -> None:
        async with self._lock:
            doc = await self._read(self.processed_path, ProcessedEventsDocument)
            if event_id in doc.processed_event_ids:
                return
            doc.processed_event_ids.append(event_id)
            doc.last_updated = _now_iso()
            await self._write(self.processed_path, doc)
        logger.info("Marked event %s as processed", event_id)

    async def processed_event_ids(self) -> list[str]:
        async with self._lock:
            doc = await self._read(self.processed_path, ProcessedEventsDocument)
        return list(doc.processed_event_ids)

    async def clear_processed(self) -> None:
        """Forget every processed event id. The history document is untouched."""
        async with self._lock:
            await self._write(
                self.processed_path,
                ProcessedEventsDocument(last_updated=_now_iso()),
            )
        logger.info("Cleared all processed events")

    # Processing records

    async def save_processing_record(
        self,
        event_id: str,
        event_title: t.Optional[str] = None,
        **changes: t.Any,
    ) -> ProcessingRecord:
        """Upsert the record for an event.

        Only the fields passed in ``changes`` are replaced; everything else
        keeps its stored value. A single call is written as one document, so
        tasks and their planning status always land together.

        Args:
            event_id: The event the record belongs to
            event_title: Current title, refreshed on every write when given
            **changes: Any of planning_status, planning_tasks,
                specialized_task, specialized_status, event_type

        Returns:
            The merged record as stored
        """
        _check_fields(changes)
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
            record = _record_from(doc, event_id, event_title)
            _apply_changes(record, changes)
            await self._store_record(doc, record)
        return record

    async def load_processing_record(self, event_id: str) -> t.Optional[ProcessingRecord]:
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
        stored = doc.events.get(event_id)
        return stored.to_domain() if stored else None

    async def load_all_processing_records(self) -> dict[str, ProcessingRecord]:
        """Load every record; an absent or corrupt document yields an empty map."""
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
        return {event_id: stored.to_domain() for event_id, stored in doc.events.items()}

    # Stage claims

    async def claim_stage(self, event_id: str, stage: OriginStage, event_title: str = "") -> bool:
        """Atomically take the (event, stage) lock.

        The claim is refused while another live claim exists, and for the
        birthday stage whenever a birthday task or outcome is already
        recorded, which keeps the stage at-most-once across restarts.

        Returns:
            True if the caller now owns the claim
        """
        stage = OriginStage(stage)
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
            record = _record_from(doc, event_id, event_title or None)

            if stage is OriginStage.BIRTHDAY and (
                record.specialized_task is not None or record.specialized_status is not None
            ):
                return False

            claimed_at = record.stage_claims.get(stage.value)
            if claimed_at and not self._claim_expired(claimed_at):
                return False
            if claimed_at:
                logger.warning(
                    "Reclaiming abandoned %s claim on event %s (claimed at %s)",
                    stage.value, event_id, claimed_at,
                )

            record.stage_claims[stage.value] = _now_iso()
            await self._store_record(doc, record)
        return True

    async def release_stage(self, event_id: str, stage: OriginStage, **changes: t.Any) -> None:
        """Drop the (event, stage) claim.

        Any record ``changes`` are written in the same document update, so a
        stage outcome and the release of its claim land together.
        """
        stage = OriginStage(stage)
        _check_fields(changes)
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
            stored = doc.events.get(event_id)
            if stored is None or (stage.value not in stored.stage_claims and not changes):
                return
            record = stored.to_domain()
            record.stage_claims.pop(stage.value, None)
            _apply_changes(record, changes)
            await self._store_record(doc, record)

    def _claim_expired(self, claimed_at: str) -> bool:
        try:
            when = datetime.fromisoformat(claimed_at)
        except ValueError:
            return True
        return utc_now() - when > timedelta(seconds=self.claim_ttl)

    # Tasks

    async def update_task(self, event_id: str, task_id: str, status: TaskStatus) -> Task:
        """Move a stored task along the state machine and persist it.

        Raises:
            TaskNotFoundError: If the event has no stored task with this id
            InvalidTransitionError: If the status change is not a legal edge
        """
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
            stored = doc.events.get(event_id)
            if stored is None:
                raise TaskNotFoundError(f"No processing record for event '{event_id}'")
            record = stored.to_domain()

            candidates = list(record.planning_tasks)
            if record.specialized_task is not None:
                candidates.append(record.specialized_task)
            task = next((c for c in candidates if c.id == task_id), None)
            if task is None:
                raise TaskNotFoundError(f"Task '{task_id}' not found for event '{event_id}'")

            task_states.advance(task, status)
            await self._store_record(doc, record)
        logger.info("Task %s of event %s moved to %s", task_id, event_id, task.status.value)
        return task.copy()

    # Reset

    async def reset(self, event_id: str, stage: t.Optional[OriginStage] = None) -> None:
        """Forget what the pipeline did for an event so it can run again.

        Args:
            event_id: Event to reset
            stage: Reset only this stage; None drops the whole record
        """
        stage = OriginStage(stage) if stage else None
        async with self._lock:
            doc = await self._read(self.history_path, EventHistoryDocument)
            stored = doc.events.get(event_id)
            if stored is not None:
                if stage is None:
                    del doc.events[event_id]
                    doc.last_updated = _now_iso()
                    await self._write(self.history_path, doc)
                else:
                    record = stored.to_domain()
                    if stage is OriginStage.PLANNING:
                        record.planning_status = PlanningStatus.IDLE
                        record.planning_tasks = []
                        record.event_type = None
                    else:
                        record.specialized_task = None
                        record.specialized_status = None
                    record.stage_claims.pop(stage.value, None)
                    await self._store_record(doc, record)

            processed = await self._read(self.processed_path, ProcessedEventsDocument)
            if event_id in processed.processed_event_ids:
                processed.processed_event_ids.remove(event_id)
                processed.last_updated = _now_iso()
                await self._write(self.processed_path, processed)
        logger.info("Reset %s for event %s", stage.value if stage else "all stages", event_id)

    # Rehydration

    async def merge_history(self, events: t.Iterable[Event]) -> list[Event]:
        """Attach stored tasks and planning status to live calendar events."""
        records = await self.load_all_processing_records()
        return [merge_record(event, records.get(event.id)) for event in events]

    # Internal helpers

    async def _store_record(self, doc: EventHistoryDocument, record: ProcessingRecord) -> None:
        now = _now_iso()
        record.last_updated = now
        if not record.processed_at:
            record.processed_at = now
        doc.events[record.event_id] = ProcessingRecordModel.from_domain(record)
        doc.last_updated = now
        await self._write(self.history_path, doc)

    async def _read(self, path: Path, model: type[DocumentT]) -> DocumentT:
        return await asyncio.to_thread(_read_document, path, model)

    async def _write(self, path: Path, doc: EventHistoryDocument | ProcessedEventsDocument) -> None:
        await asyncio.to_thread(_write_document, path, doc)


def merge_record(event: Event, record: t.Optional[ProcessingRecord]) -> Event:
    """Return a copy of ``event`` with the stored tasks and status merged in.

    Tasks present on both sides keep whichever copy is further along the
    state machine, so a merge never moves a task backward.
    """
    merged = event.copy()
    if record is None:
        return merged

    stored_tasks = list(record.planning_tasks)
    if record.specialized_task is not None:
        stored_tasks.append(record.specialized_task)

    by_id = {task.id: index for index, task in enumerate(merged.tasks)}
    for stored in stored_tasks:
        if stored.id in by_id:
            index = by_id[stored.id]
            merged.tasks[index] = task_states.most_advanced(stored.copy(), merged.tasks[index])
        elif stored.origin_stage is OriginStage.BIRTHDAY and merged.specialized_task() is not None:
            # At most one birthday task per event.
            continue
        else:
            merged.tasks.append(stored.copy())

    if merged.planning_status is None and record.planning_status is not PlanningStatus.IDLE:
        merged.planning_status = record.planning_status
    return merged


def _check_fields(changes: t.Mapping[str, t.Any]) -> None:
    unknown = set(changes) - _RECORD_FIELDS
    if unknown:
        raise TypeError(f"Unknown processing record field(s): {sorted(unknown)}")


def _apply_changes(record: ProcessingRecord, changes: t.Mapping[str, t.Any]) -> None:
    if "planning_status" in changes:
        record.planning_status = PlanningStatus(changes["planning_status"])
    if "planning_tasks" in changes:
        record.planning_tasks = [task.copy() for task in changes["planning_tasks"]]
    if "specialized_task" in changes:
        task = changes["specialized_task"]
        record.specialized_task = task.copy() if task is not None else None
    if "specialized_status" in changes:
        status = changes["specialized_status"]
        record.specialized_status = SpecializedStatus(status) if status is not None else None
    if "event_type" in changes:
        record.event_type = changes["event_type"]


def _record_from(
    doc: EventHistoryDocument,
    event_id: str,
    event_title: t.Optional[str],
) -> ProcessingRecord:
    stored = doc.events.get(event_id)
    if stored is None:
        return ProcessingRecord(event_id=event_id, event_title=event_title or "")
    record = stored.to_domain()
    if event_title:
        record.event_title = event_title
    return record


def _read_document(path: Path, model: type[DocumentT]) -> DocumentT:
    try:
        return model.model_validate_json(path.read_bytes())
    except FileNotFoundError:
        return model()
    except (OSError, ValidationError, ValueError) as e:
        logger.warning("Could not read %s, treating it as empty: %s", path, e)
        return model()


def _write_document(path: Path, doc: EventHistoryDocument | ProcessedEventsDocument) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = doc.model_dump_json(by_alias=True, indent=2)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _now_iso() -> str:
    return utc_now().isoformat()
