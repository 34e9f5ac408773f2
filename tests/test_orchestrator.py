"""Tests for orchestration of the two pipeline stages."""
import asyncio

import pytest

from conftest import make_event
from pipeline.models import OriginStage, PlanningStatus, TaskStatus
from pipeline.orchestrator import PipelineState
from pipeline.store import IdempotencyStore


def _by_id(events):
    return {event.id: event for event in events}


@pytest.mark.asyncio
async def test_birthday_event_runs_both_stages(make_orchestrator, classifier, automation) -> None:
    orchestrator = make_orchestrator()

    view = await orchestrator.orchestrate([make_event()])

    event = view[0]
    assert event.planning_status is PlanningStatus.COMPLETED
    assert len(event.tasks_from(OriginStage.PLANNING)) == 3
    specialized = event.specialized_task()
    assert specialized.status is TaskStatus.COMPLETED
    assert automation.runs == 1
    # Once to plan, once more to confirm before purchasing.
    assert classifier.calls["evt-1"] == 2


@pytest.mark.asyncio
async def test_repeated_orchestration_is_idempotent(make_orchestrator, classifier, automation) -> None:
    orchestrator = make_orchestrator()
    first = await orchestrator.orchestrate([make_event()])
    second = await orchestrator.orchestrate([make_event()])

    assert [task.id for task in second[0].tasks] == [task.id for task in first[0].tasks]
    assert automation.runs == 1
    assert classifier.calls["evt-1"] == 2


@pytest.mark.asyncio
async def test_non_birthday_event_gets_no_tasks(make_orchestrator, classifier, automation) -> None:
    orchestrator = make_orchestrator()
    event = make_event("evt-2", "Dentist")

    view = await orchestrator.orchestrate([event])
    await orchestrator.orchestrate([event])

    assert view[0].tasks == []
    assert view[0].planning_status is PlanningStatus.COMPLETED
    assert classifier.calls["evt-2"] == 1
    assert automation.runs == 0


@pytest.mark.asyncio
async def test_duplicate_events_are_processed_once(make_orchestrator, automation) -> None:
    orchestrator = make_orchestrator()

    view = await orchestrator.orchestrate([make_event(), make_event(), make_event("evt-2", "Lunch")])

    assert [event.id for event in view] == ["evt-1", "evt-2"]
    assert automation.runs == 1


@pytest.mark.asyncio
async def test_concurrent_orchestration_starts_one_purchase(make_orchestrator, automation) -> None:
    orchestrator = make_orchestrator()

    results = await asyncio.gather(*(orchestrator.orchestrate([make_event()]) for _ in range(4)))

    assert automation.runs == 1
    task_ids = {result[0].specialized_task().id for result in results}
    assert len(task_ids) == 1


@pytest.mark.asyncio
async def test_one_failing_event_does_not_block_others(make_orchestrator, classifier, automation) -> None:
    classifier.event_types["evt-3"] = "birthday"
    classifier.failing.add("evt-1")
    orchestrator = make_orchestrator()

    view = _by_id(await orchestrator.orchestrate([
        make_event("evt-1"),
        make_event("evt-2", "Standup"),
        make_event("evt-3", "Nephew's birthday"),
    ]))

    assert view["evt-1"].planning_status is PlanningStatus.ERROR
    assert view["evt-1"].tasks == []
    assert view["evt-2"].planning_status is PlanningStatus.COMPLETED
    assert view["evt-3"].specialized_task().status is TaskStatus.COMPLETED
    assert "boys outfit" in automation.instructions[0]


@pytest.mark.asyncio
async def test_planning_crash_is_contained(make_orchestrator, automation) -> None:
    orchestrator = make_orchestrator()

    async def explode(event, force=False):
        raise RuntimeError("disk full")

    orchestrator.planning.plan = explode
    view = await orchestrator.orchestrate([make_event()])

    assert view[0].planning_status is PlanningStatus.ERROR
    assert automation.runs == 0


@pytest.mark.asyncio
async def test_background_mode_returns_executing_task(make_orchestrator, store, automation) -> None:
    automation.hold = True
    orchestrator = make_orchestrator(await_specialized=False)

    view = await orchestrator.orchestrate([make_event()])

    specialized = view[0].specialized_task()
    assert specialized.status is TaskStatus.EXECUTING

    # A refresh while the purchase runs shows the same task and starts nothing new.
    refreshed = await orchestrator.orchestrate([make_event()])
    assert refreshed[0].specialized_task().id == specialized.id
    assert automation.runs == 1

    automation.release()
    await orchestrator.drain()

    record = await store.load_processing_record("evt-1")
    assert record.specialized_task.id == specialized.id
    assert record.specialized_task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_restart_reuses_stored_results(make_orchestrator, tmp_path, classifier, automation) -> None:
    data_dir = tmp_path / "shared"
    first = await make_orchestrator(store_=IdempotencyStore(data_dir)).orchestrate([make_event()])

    restarted = make_orchestrator(store_=IdempotencyStore(data_dir))
    view = await restarted.orchestrate([make_event()])

    assert [task.id for task in view[0].tasks] == [task.id for task in first[0].tasks]
    assert automation.runs == 1
    assert classifier.calls["evt-1"] == 2


@pytest.mark.asyncio
async def test_approved_task_survives_reorchestration(make_orchestrator, store) -> None:
    orchestrator = make_orchestrator()
    view = await orchestrator.orchestrate([make_event()])
    task = view[0].tasks_from(OriginStage.PLANNING)[0]

    await store.update_task("evt-1", task.id, TaskStatus.APPROVED)

    # The caller still holds the stale suggested copy.
    refreshed = await orchestrator.orchestrate(view)
    statuses = {t_.id: t_.status for t_ in refreshed[0].tasks}
    assert statuses[task.id] is TaskStatus.APPROVED


@pytest.mark.asyncio
async def test_state_of(make_orchestrator, store) -> None:
    orchestrator = make_orchestrator()
    event = make_event()
    assert orchestrator.state_of(event, None) is PipelineState.UNCLASSIFIED

    await orchestrator.orchestrate([make_event("evt-2", "Dentist")])
    record = await store.load_processing_record("evt-2")
    assert orchestrator.state_of(make_event("evt-2", "Dentist"), record) is PipelineState.SKIPPED

    view = await orchestrator.orchestrate([event])
    record = await store.load_processing_record("evt-1")
    assert orchestrator.state_of(view[0], record) is PipelineState.SPECIALIZED_DONE


@pytest.mark.asyncio
async def test_birthday_reclassification_runs_once(make_orchestrator, store, classifier, automation) -> None:
    orchestrator = make_orchestrator()
    await orchestrator.orchestrate([make_event()])
    await store.reset("evt-1", OriginStage.BIRTHDAY)
    classifier.event_types["evt-1"] = "other"
    before = classifier.calls["evt-1"]

    for _ in range(5):
        view = await orchestrator.orchestrate([make_event()])

    assert classifier.calls["evt-1"] - before == 1
    assert automation.runs == 1
    assert view[0].specialized_task() is None
    record = await store.load_processing_record("evt-1")
    assert orchestrator.state_of(view[0], record) is PipelineState.SKIPPED
