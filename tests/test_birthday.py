"""Tests for the birthday purchase stage."""
import asyncio

import pytest

from conftest import CART_URL, FakeAutomation, FakeClassifier, make_event
from pipeline.birthday import BirthdayStage, extract_cart_url, select_recipient
from pipeline.errors import AutomationError
from pipeline.models import AutomationResult, OriginStage, SpecializedStatus, TaskStatus
from pipeline.store import IdempotencyStore


@pytest.mark.parametrize("title, keyword, query", [
    ("Emma's daughter birthday", "daughter", "girls dress"),
    ("Nephew turns 6", "nephew", "boys outfit"),
    ("Son and daughter joint party", "daughter", "girls dress"),
    ("Kids birthday bash", "kids", "girls dress"),
    ("Personal trainer birthday", "child", "girls dress"),
    ("Mason's BOY birthday", "boy", "boys outfit"),
])
def test_select_recipient(title: str, keyword: str, query: str) -> None:
    recipient = select_recipient(title)
    assert recipient.keyword == keyword
    assert recipient.product_query == query


def test_extract_cart_url() -> None:
    assert extract_cart_url(f"Done! Cart: {CART_URL}.") == CART_URL
    assert extract_cart_url("See https://smile.amazon.com/cart/view for details") == (
        "https://smile.amazon.com/cart/view"
    )
    assert extract_cart_url("Added to cart") is None
    assert extract_cart_url("") is None


@pytest.mark.asyncio
async def test_successful_run_completes_task(store, classifier, automation) -> None:
    created, updated = [], []
    stage = BirthdayStage(store, classifier, automation)

    task = await stage.run(make_event(), on_task_created=created.append, on_task_updated=updated.append)

    assert task.status is TaskStatus.COMPLETED
    assert task.origin_stage is OriginStage.BIRTHDAY
    assert task.needs_approval
    assert task.external_session_url == "https://live.example.test/session/1"
    assert task.suggestions[0].link == CART_URL
    assert "girls dress" in automation.instructions[0]

    assert [t_.status for t_ in created] == [TaskStatus.EXECUTING]
    assert created[0].external_session_url is None
    assert updated[0].external_session_url == task.external_session_url
    assert updated[-1].status is TaskStatus.COMPLETED

    record = await store.load_processing_record("evt-1")
    assert record.specialized_task == task
    assert record.stage_claims == {}
    assert await store.has_processed("evt-1")
    assert not stage.is_in_flight("evt-1")


@pytest.mark.asyncio
async def test_failed_automation_marks_issue(store, classifier) -> None:
    automation = FakeAutomation(AutomationResult(output="", success=False, message="Out of stock"))
    stage = BirthdayStage(store, classifier, automation)

    task = await stage.run(make_event())

    assert task.status is TaskStatus.ISSUE
    assert "Out of stock" in task.description
    assert task.suggestions == []
    assert await store.has_processed("evt-1")


@pytest.mark.asyncio
async def test_automation_error_marks_issue(store, classifier, automation) -> None:
    automation.error = AutomationError("service unavailable")
    stage = BirthdayStage(store, classifier, automation)

    task = await stage.run(make_event())

    assert task.status is TaskStatus.ISSUE
    assert "service unavailable" in task.description
    assert (await store.load_processing_record("evt-1")).specialized_task.status is TaskStatus.ISSUE


@pytest.mark.asyncio
async def test_completion_timeout_marks_issue(store, classifier, automation) -> None:
    automation.hold = True
    stage = BirthdayStage(store, classifier, automation, completion_timeout=0.01)

    task = await stage.run(make_event())

    assert task.status is TaskStatus.ISSUE
    assert "timed out" in task.description


@pytest.mark.asyncio
async def test_failure_is_not_retried(store, classifier, automation) -> None:
    automation.error = AutomationError("down")
    stage = BirthdayStage(store, classifier, automation)
    await stage.run(make_event())

    automation.error = None
    assert await stage.run(make_event()) is None
    assert automation.runs == 1


@pytest.mark.asyncio
async def test_concurrent_runs_start_one_automation(store, classifier, automation) -> None:
    automation.hold = True
    stage = BirthdayStage(store, classifier, automation)
    event = make_event()

    first = asyncio.create_task(stage.run(event))
    while stage.live_task("evt-1") is None:
        await asyncio.sleep(0)

    second = await stage.run(event)
    assert second.status is TaskStatus.EXECUTING
    assert stage.is_in_flight("evt-1")

    automation.release()
    final = await first
    assert final.status is TaskStatus.COMPLETED
    assert final.id == second.id
    assert automation.runs == 1


@pytest.mark.asyncio
async def test_gather_of_runs_starts_one_automation(store, classifier, automation) -> None:
    stage = BirthdayStage(store, classifier, automation)
    await asyncio.gather(*(stage.run(make_event()) for _ in range(3)))
    assert automation.runs == 1


@pytest.mark.asyncio
async def test_recorded_task_blocks_new_process(tmp_path, classifier, automation) -> None:
    await BirthdayStage(IdempotencyStore(tmp_path), classifier, automation).run(make_event())

    # A fresh process sharing the same data directory.
    restarted = BirthdayStage(IdempotencyStore(tmp_path), classifier, automation)
    assert await restarted.run(make_event()) is None
    assert automation.runs == 1


@pytest.mark.asyncio
async def test_event_with_birthday_task_is_skipped(store, classifier, automation) -> None:
    stage = BirthdayStage(store, classifier, automation)
    done = await stage.run(make_event())

    event = make_event()
    event.tasks.append(done)
    assert await stage.run(event) is None
    assert classifier.calls["evt-1"] == 1


@pytest.mark.asyncio
async def test_non_birthday_reclassification_skips(store, automation) -> None:
    classifier = FakeClassifier(default="dinner")
    stage = BirthdayStage(store, classifier, automation)

    assert await stage.run(make_event()) is None
    assert automation.runs == 0
    record = await store.load_processing_record("evt-1")
    assert record.stage_claims == {}
    assert record.specialized_task is None
    assert record.specialized_status is SpecializedStatus.SKIPPED
    assert record.event_type == "dinner"
    assert await store.has_processed("evt-1")

    assert await stage.run(make_event()) is None
    assert classifier.calls["evt-1"] == 1


@pytest.mark.asyncio
async def test_classification_error_is_terminal(store, classifier, automation) -> None:
    classifier.failing.add("evt-1")
    stage = BirthdayStage(store, classifier, automation)
    assert await stage.run(make_event()) is None

    record = await store.load_processing_record("evt-1")
    assert record.specialized_status is SpecializedStatus.ERROR
    assert record.stage_claims == {}

    classifier.failing.clear()
    assert await stage.run(make_event()) is None
    assert classifier.calls["evt-1"] == 1
    assert automation.runs == 0


@pytest.mark.asyncio
async def test_reset_allows_rerun_after_classification_error(store, classifier, automation) -> None:
    classifier.failing.add("evt-1")
    stage = BirthdayStage(store, classifier, automation)
    await stage.run(make_event())

    classifier.failing.clear()
    await store.reset("evt-1", OriginStage.BIRTHDAY)
    task = await stage.run(make_event())

    assert task.status is TaskStatus.COMPLETED
    assert (await store.load_processing_record("evt-1")).specialized_status is None
