"""Orchestration of the planning and birthday stages across an event list.

Each event's progress is derived from the idempotency store alone:

    unclassified -> planned -> specialized_pending -> specialized_done
          \\-> skipped   (classified non-birthday, past, or planning error)

A planned event whose birthday re-classification failed or disagreed is
also ``skipped`` until its birthday stage is reset.

A single dispatcher advances every event one pass at a time: the planning
pass moves ``unclassified`` events forward, the specialized pass launches the
birthday stage for ``planned`` ones. Whole passes are serialized per process,
so the detector timer and a caller refresh never race on the same event.
"""
from __future__ import annotations

import asyncio
import logging
import typing as t
from enum import Enum

from pipeline.birthday import BirthdayStage
from pipeline.models import Event, OriginStage, PlanningStatus, ProcessingRecord, Task
from pipeline.planning import PlanningStage
from pipeline.store import IdempotencyStore, merge_record
from pipeline.task_states import is_terminal

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Progress of one event through the pipeline."""
    UNCLASSIFIED = "unclassified"
    SKIPPED = "skipped"
    PLANNED = "planned"
    SPECIALIZED_PENDING = "specialized_pending"
    SPECIALIZED_DONE = "specialized_done"


class Orchestrator:
    """Sequences the planning stage, then the birthday stage, over events."""

    def __init__(
        self,
        store: IdempotencyStore,
        planning: PlanningStage,
        birthday: BirthdayStage,
        settle_delay: float = 0.0,
        await_specialized: bool = True,
    ) -> None:
        """
        Args:
            store: The idempotency store, the single authority on progress
            planning: Planning stage
            birthday: Birthday stage
            settle_delay: Pause between the two passes, for dependent views
            await_specialized: Wait for birthday runs to finish. When False
                the specialized pass returns once each run has emitted its
                executing task and the run continues in the background.
        """
        self.store = store
        self.planning = planning
        self.birthday = birthday
        self.settle_delay = settle_delay
        self.await_specialized = await_specialized

        self._lock = asyncio.Lock()
        self._jobs: dict[str, asyncio.Task] = {}

    def state_of(self, event: Event, record: t.Optional[ProcessingRecord]) -> PipelineState:
        """Derive an event's pipeline state from its stored record and view."""
        specialized = record.specialized_task if record else None
        if specialized is None:
            specialized = event.specialized_task()
        if specialized is not None:
            if is_terminal(specialized.status):
                return PipelineState.SPECIALIZED_DONE
            return PipelineState.SPECIALIZED_PENDING
        if self.birthday.is_in_flight(event.id):
            return PipelineState.SPECIALIZED_PENDING
        if record is not None and record.specialized_status is not None:
            return PipelineState.SKIPPED

        if event.tasks_from(OriginStage.PLANNING):
            return PipelineState.PLANNED
        if event.tasks:
            # Tasks from elsewhere: the event is never planned over.
            return PipelineState.SKIPPED
        if record is not None and record.planning_status in (
            PlanningStatus.COMPLETED, PlanningStatus.ERROR,
        ):
            return PipelineState.SKIPPED
        return PipelineState.UNCLASSIFIED

    async def orchestrate(self, events: t.Sequence[Event]) -> list[Event]:
        """Advance every event as far as it can go and return the updated view.

        Args:
            events: The full current event list (not only new events)

        Returns:
            Copies of the events with stored and newly created tasks attached
        """
        async with self._lock:
            records = await self.store.load_all_processing_records()
            view: list[Event] = []
            seen: set[str] = set()
            for event in events:
                if event.id in seen:
                    continue
                seen.add(event.id)
                view.append(merge_record(event, records.get(event.id)))

            for event in view:
                await self._dispatch(event, records.get(event.id), OriginStage.PLANNING)

            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)

            records = await self.store.load_all_processing_records()
            for event in view:
                await self._dispatch(event, records.get(event.id), OriginStage.BIRTHDAY)

        return view

    async def drain(self) -> None:
        """Wait for background birthday runs to finish."""
        jobs = [job for job in self._jobs.values() if not job.done()]
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    async def _dispatch(
        self,
        event: Event,
        record: t.Optional[ProcessingRecord],
        stage: OriginStage,
    ) -> None:
        state = self.state_of(event, record)
        try:
            if stage is OriginStage.PLANNING and state is PipelineState.UNCLASSIFIED:
                await self._plan(event)
            elif stage is OriginStage.BIRTHDAY and state is PipelineState.PLANNED:
                await self._specialize(event)
            elif stage is OriginStage.BIRTHDAY and state is PipelineState.SPECIALIZED_PENDING:
                _attach(event, self.birthday.live_task(event.id))
        except Exception:
            logger.exception("%s stage failed for event %s", stage.value.capitalize(), event.id)
            if stage is OriginStage.PLANNING:
                event.planning_status = PlanningStatus.ERROR

    async def _plan(self, event: Event) -> None:
        event.planning_status = PlanningStatus.PLANNING
        result = await self.planning.plan(event)
        if result.kind == "planned":
            for task in result.tasks:
                _attach(event, task)
            event.planning_status = PlanningStatus.COMPLETED
        elif result.reason == "error":
            event.planning_status = PlanningStatus.ERROR
        else:
            event.planning_status = PlanningStatus.COMPLETED

    async def _specialize(self, event: Event) -> None:
        loop = asyncio.get_running_loop()
        created: asyncio.Future = loop.create_future()

        def on_created(task: Task) -> None:
            if not created.done():
                created.set_result(task)

        job = asyncio.create_task(self._run_birthday(event.copy(), on_created))
        self._jobs[event.id] = job
        job.add_done_callback(lambda _: self._jobs.pop(event.id, None))

        if self.await_specialized:
            await job
        else:
            await asyncio.wait({job, created}, return_when=asyncio.FIRST_COMPLETED)

        if job.done():
            _attach(event, job.result())
        else:
            _attach(event, self.birthday.live_task(event.id))

    async def _run_birthday(
        self,
        event: Event,
        on_created: t.Callable[[Task], None],
    ) -> t.Optional[Task]:
        try:
            return await self.birthday.run(event, on_task_created=on_created)
        except Exception:
            logger.exception("Birthday stage failed for event %s", event.id)
            return None


def _attach(event: Event, task: t.Optional[Task]) -> None:
    """Add or replace a task on the event view by id."""
    if task is None:
        return
    for index, existing in enumerate(event.tasks):
        if existing.id == task.id:
            event.tasks[index] = task
            return
    event.tasks.append(task)
