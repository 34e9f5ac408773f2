"""Tests for the pipeline REST service."""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeAutomation, FakeCalendar, FakeClassifier, raw_event
from pipeline.assistant import EventPipeline
from pipeline.errors import CalendarAuthError, CalendarFetchError
from services.pipeline_service.app import create_app


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar([
        raw_event("evt-1", "Emma's daughter birthday"),
        raw_event("evt-2", "Standup"),
    ])


@pytest.fixture
def pipeline(calendar, settings) -> EventPipeline:
    return EventPipeline(
        calendar,
        FakeClassifier(event_types={"evt-1": "birthday"}),
        FakeAutomation(),
        settings,
    )


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


def _planning_task_id(client: TestClient) -> str:
    events = client.get("/events").json()["events"]
    birthday = next(event for event in events if event["id"] == "evt-1")
    return next(task["id"] for task in birthday["tasks"] if task["originStage"] == "planning")


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_events_are_orchestrated(client: TestClient) -> None:
    response = client.get("/events")

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    birthday, standup = body["events"]
    assert birthday["planningStatus"] == "completed"
    assert len(birthday["tasks"]) == 4
    specialized = [task for task in birthday["tasks"] if task["originStage"] == "birthday"]
    assert specialized[0]["status"] == "completed"
    assert specialized[0]["suggestions"][0]["link"].startswith("https://www.amazon.com/")
    assert standup["tasks"] == []


@pytest.mark.parametrize("error, status_code", [
    (CalendarFetchError("offline"), 502),
    (CalendarAuthError("expired"), 401),
])
def test_calendar_errors(client: TestClient, calendar: FakeCalendar, error: Exception, status_code: int) -> None:
    calendar.error = error
    response = client.get("/events")
    assert response.status_code == status_code


def test_detect_new_events(client: TestClient) -> None:
    first = client.post("/detect-new-events").json()
    assert first["count"] == 2
    assert any(event["tasks"] for event in first["events"])

    second = client.post("/detect-new-events").json()
    assert second["count"] == 0


def test_orchestrate_supplied_events(client: TestClient) -> None:
    response = client.post("/orchestrate", json={
        "events": [{"id": "evt-9", "title": "Team lunch", "scheduledAt": "2099-01-01T12:00:00Z"}],
    })

    assert response.status_code == 200
    event = response.json()["events"][0]
    assert event["tasks"] == []
    assert event["planningStatus"] == "completed"


def test_update_task_status(client: TestClient) -> None:
    task_id = _planning_task_id(client)
    payload = {"eventId": "evt-1", "taskId": task_id, "status": "approved"}

    response = client.post("/update-task-status", json=payload)
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    conflict = client.post("/update-task-status", json=payload)
    assert conflict.status_code == 409

    missing = client.post("/update-task-status", json={**payload, "taskId": "nope"})
    assert missing.status_code == 404

    invalid = client.post("/update-task-status", json={**payload, "status": "done"})
    assert invalid.status_code == 422


def test_processing_status_and_reset(client: TestClient) -> None:
    client.get("/events")

    status = client.get("/processing-status").json()
    assert status["processedEventIds"] == ["evt-1"]
    records = {record["eventId"]: record for record in status["records"]}
    assert records["evt-1"]["specializedTask"]["status"] == "completed"
    assert records["evt-2"]["eventType"] == "other"

    response = client.post("/reset-event", json={"eventId": "evt-1", "stage": "birthday"})
    assert response.status_code == 200
    assert response.json()["stage"] == "birthday"

    status = client.get("/processing-status").json()
    assert status["processedEventIds"] == []
    records = {record["eventId"]: record for record in status["records"]}
    assert records["evt-1"]["specializedTask"] is None
    assert len(records["evt-1"]["planningTasks"]) == 3


def test_monitor_start_and_stop(client: TestClient) -> None:
    started = client.post("/monitor/start").json()
    assert started["running"] is True
    assert started["lastSeenCount"] == 2

    stopped = client.post("/monitor/stop").json()
    assert stopped["running"] is False
