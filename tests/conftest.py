"""Shared fakes and fixtures for the pipeline tests."""
import asyncio
import typing as t
from datetime import timedelta

import pytest

from pipeline.birthday import BirthdayStage
from pipeline.config import Settings
from pipeline.errors import ClassificationError
from pipeline.models import AutomationResult, Event, EventAnalysis
from pipeline.orchestrator import Orchestrator
from pipeline.planning import PlanningStage
from pipeline.store import IdempotencyStore
from pipeline.utils import utc_now

CART_URL = "https://www.amazon.com/gp/cart/view.html?ref_=nav_cart"


class FakeCalendar:
    """Calendar returning a mutable list of raw events."""

    def __init__(self, events: t.Optional[list[dict]] = None) -> None:
        self.events = list(events or [])
        self.error: t.Optional[Exception] = None
        self.calls = 0

    async def fetch_events(self, time_min=None, time_max=None, limit=None) -> list[dict]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [dict(event) for event in self.events]


class FakeClassifier:
    """Classifier answering from a per-event-id table."""

    def __init__(self, event_types: t.Optional[dict[str, str]] = None, default: str = "other") -> None:
        self.event_types = dict(event_types or {})
        self.default = default
        self.failing: set[str] = set()
        self.calls: dict[str, int] = {}

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def classify(self, event: Event) -> EventAnalysis:
        self.calls[event.id] = self.calls.get(event.id, 0) + 1
        if event.id in self.failing:
            raise ClassificationError(f"classifier down for {event.id}")
        return EventAnalysis(
            event_type=self.event_types.get(event.id, self.default),
            context="test event",
            missing_info=["Budget"],
        )


class FakeRun:
    def __init__(self, session_url: t.Optional[str], result: AutomationResult, gate: t.Optional[asyncio.Event]) -> None:
        self.session_url = session_url
        self.result = result
        self.gate = gate

    async def completion(self) -> AutomationResult:
        if self.gate is not None:
            await self.gate.wait()
        return self.result


class FakeAutomation:
    """Automation service that records every started task.

    Set ``hold`` to make runs block in completion() until ``release()``.
    """

    def __init__(self, result: t.Optional[AutomationResult] = None) -> None:
        self.result = result or AutomationResult(
            output=f"Added a dress to the cart: {CART_URL}",
            success=True,
            message="Item added to cart.",
        )
        self.error: t.Optional[Exception] = None
        self.hold = False
        self.gate = asyncio.Event()
        self.instructions: list[str] = []

    @property
    def runs(self) -> int:
        return len(self.instructions)

    def release(self) -> None:
        self.gate.set()

    async def run_task(self, instruction: str) -> FakeRun:
        self.instructions.append(instruction)
        if self.error is not None:
            raise self.error
        return FakeRun(
            session_url=f"https://live.example.test/session/{self.runs}",
            result=self.result,
            gate=self.gate if self.hold else None,
        )


def make_event(event_id: str = "evt-1", title: str = "Emma's daughter birthday", days: float = 7) -> Event:
    return Event(
        id=event_id,
        title=title,
        scheduled_at=utc_now() + timedelta(days=days),
        location="Home",
        participants=["emma@example.test"],
    )


def raw_event(event_id: str, title: str, days: float = 7) -> dict:
    """A Google Calendar v3 event resource."""
    return {
        "id": event_id,
        "summary": title,
        "start": {"dateTime": (utc_now() + timedelta(days=days)).isoformat()},
        "attendees": [{"email": "guest@example.test"}],
    }


@pytest.fixture
def store(tmp_path) -> IdempotencyStore:
    return IdempotencyStore(tmp_path / "data")


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier(event_types={"evt-1": "birthday"})


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        settle_delay=0.0,
        await_specialized=True,
        poll_interval=3600.0,
    )


@pytest.fixture
def make_orchestrator(store, classifier, automation):
    """Factory building an orchestrator over the shared fakes."""

    def factory(
        await_specialized: bool = True,
        store_: t.Optional[IdempotencyStore] = None,
        completion_timeout: float = 600.0,
    ) -> Orchestrator:
        active = store_ or store
        planning = PlanningStage(active, classifier)
        birthday = BirthdayStage(active, classifier, automation, completion_timeout=completion_timeout)
        return Orchestrator(active, planning, birthday, await_specialized=await_specialized)

    return factory
