"""Birthday stage: one browser-automation purchase per birthday event.

The stage picks a product query from the event title, starts a browser
automation session that searches a shop and adds an item to the cart, and
records the outcome as a birthday-origin task. Success and failure are both
terminal for the event, and so is a re-classification that fails or finds
something other than a birthday.
"""
from __future__ import annotations

import asyncio
import logging
import re
import typing as t
import uuid
from dataclasses import dataclass

from pipeline import task_states
from pipeline.models import (
    AutomationService,
    Event,
    EventClassifier,
    OriginStage,
    SpecializedStatus,
    Suggestion,
    Task,
    TaskCategory,
    TaskStatus,
)
from pipeline.store import IdempotencyStore

logger = logging.getLogger(__name__)

FEMALE_KEYWORDS = ("daughter", "niece", "girl", "girls")
MALE_KEYWORDS = ("son", "nephew", "boy", "boys")
NEUTRAL_KEYWORDS = ("child", "kid", "kids")

GIRLS_QUERY = "girls dress"
BOYS_QUERY = "boys outfit"

_CART_URL_PATTERNS = (
    re.compile(r"https?://www\.amazon\.com/gp/cart/view\.html[^\s\"'<>)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s\"'<>)\]]*amazon[^\s\"'<>)\]]*/cart[^\s\"'<>)\]]*", re.IGNORECASE),
)

TaskCallback = t.Callable[[Task], None]


@dataclass(frozen=True)
class Recipient:
    """Who the gift is for and what to search for."""
    keyword: str
    product_query: str
    gender: str


def select_recipient(title: str) -> Recipient:
    """Pick the recipient and product query from keywords in an event title.

    Female keywords win over male ones, which win over neutral ones. Neutral
    keywords and titles with no keyword at all fall back to the girls query.
    """
    lowered = title.lower()
    for keywords, query, gender in (
        (FEMALE_KEYWORDS, GIRLS_QUERY, "girls"),
        (MALE_KEYWORDS, BOYS_QUERY, "boys"),
        (NEUTRAL_KEYWORDS, GIRLS_QUERY, "girls"),
    ):
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                return Recipient(keyword=keyword, product_query=query, gender=gender)
    return Recipient(keyword="child", product_query=GIRLS_QUERY, gender="girls")


def build_instruction(recipient: Recipient) -> str:
    return (
        f'Navigate to amazon.com, search for "{recipient.product_query}" for a {recipient.keyword}, '
        f"select the first appropriate result, and add it to cart. "
        f"Return the cart URL or confirmation message."
    )


def extract_cart_url(output: str) -> t.Optional[str]:
    """Return the first cart URL in the automation output, if any."""
    for pattern in _CART_URL_PATTERNS:
        match = pattern.search(output or "")
        if match:
            return match.group(0).rstrip(".,;:")
    return None


class BirthdayStage:
    """Runs the purchase automation at most once per birthday event."""

    def __init__(
        self,
        store: IdempotencyStore,
        classifier: EventClassifier,
        automation: AutomationService,
        classify_timeout: float = 30.0,
        session_timeout: float = 15.0,
        completion_timeout: float = 600.0,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.automation = automation
        self.classify_timeout = classify_timeout
        self.session_timeout = session_timeout
        self.completion_timeout = completion_timeout

        # Derived, per-process caches; the store claim is the authority.
        self._in_flight: set[str] = set()
        self._live_tasks: dict[str, Task] = {}

    def is_in_flight(self, event_id: str) -> bool:
        return event_id in self._in_flight

    def live_task(self, event_id: str) -> t.Optional[Task]:
        """The task of an in-flight run, once it has been created."""
        task = self._live_tasks.get(event_id)
        return task.copy() if task else None

    async def run(
        self,
        event: Event,
        on_task_created: t.Optional[TaskCallback] = None,
        on_task_updated: t.Optional[TaskCallback] = None,
    ) -> t.Optional[Task]:
        """Process a birthday event.

        Args:
            event: The event, with its current tasks attached
            on_task_created: Called with the ``executing`` task before the
                automation is started
            on_task_updated: Called when the session URL is known and again
                with the final task

        Returns:
            The final task, the live task of a run already in flight, or None
            when the stage had nothing to do
        """
        # Check-and-set with no await in between.
        if event.id in self._in_flight:
            logger.debug("Birthday stage already running for event %s", event.id)
            return self.live_task(event.id)
        if event.specialized_task() is not None:
            logger.debug("Event %s already has a birthday task", event.id)
            return None
        self._in_flight.add(event.id)

        claimed = False
        outcome: dict[str, t.Any] = {}
        try:
            claimed = await self.store.claim_stage(event.id, OriginStage.BIRTHDAY, event.title)
            if not claimed:
                logger.info("Birthday stage already claimed or done for event %s", event.id)
                return None

            try:
                analysis = await asyncio.wait_for(
                    self.classifier.classify(event), timeout=self.classify_timeout,
                )
            except Exception as e:
                logger.error("Could not verify event %s as a birthday: %s", event.id, e)
                outcome = {"specialized_status": SpecializedStatus.ERROR}
                return None
            if not analysis.is_birthday:
                logger.info("Event %r is %s, not birthday; skipping", event.title, analysis.event_type)
                outcome = {
                    "specialized_status": SpecializedStatus.SKIPPED,
                    "event_type": analysis.event_type,
                }
                return None

            return await self._execute(event, on_task_created, on_task_updated)
        finally:
            self._in_flight.discard(event.id)
            self._live_tasks.pop(event.id, None)
            if claimed:
                # Terminal outcomes stay recorded until the stage is reset.
                await self.store.release_stage(event.id, OriginStage.BIRTHDAY, **outcome)
                if outcome:
                    await self.store.mark_processed(event.id)

    async def _execute(
        self,
        event: Event,
        on_task_created: t.Optional[TaskCallback],
        on_task_updated: t.Optional[TaskCallback],
    ) -> Task:
        recipient = select_recipient(event.title)
        logger.info("Recipient %s, product %r", recipient.keyword, recipient.product_query)

        task = Task(
            id=f"{event.id}:birthday:{uuid.uuid4().hex[:12]}",
            event_id=event.id,
            category=TaskCategory.SHOPPING,
            title=f"Order {recipient.product_query} for {recipient.keyword}",
            description=(
                f"Order a {recipient.product_query} for {recipient.keyword} "
                f"from Amazon for the birthday event."
            ),
            status=TaskStatus.EXECUTING,
            needs_approval=True,
            origin_stage=OriginStage.BIRTHDAY,
        )
        self._live_tasks[event.id] = task
        await self.store.save_processing_record(event.id, event.title, specialized_task=task)
        _notify(on_task_created, task)

        try:
            run = await asyncio.wait_for(
                self.automation.run_task(build_instruction(recipient)),
                timeout=self.session_timeout,
            )
            if run.session_url:
                task.external_session_url = run.session_url
                await self.store.save_processing_record(event.id, event.title, specialized_task=task)
                _notify(on_task_updated, task)
                logger.info("Automation session for %s: %s", event.id, run.session_url)

            result = await asyncio.wait_for(run.completion(), timeout=self.completion_timeout)
        except asyncio.TimeoutError:
            self._finish_with_issue(task, "automation timed out")
        except Exception as e:
            self._finish_with_issue(task, str(e) or type(e).__name__)
        else:
            if result.success:
                cart_url = extract_cart_url(result.output)
                task_states.advance(task, TaskStatus.COMPLETED)
                task.description += f"\n\n{result.message or 'Item added to cart.'}"
                if cart_url:
                    task.suggestions = [Suggestion(
                        id=f"suggestion-cart-{task.id}",
                        title="View Amazon Cart",
                        description="Item has been added to your Amazon cart",
                        link=cart_url,
                    )]
                logger.info("Birthday task %s completed (cart: %s)", task.id, cart_url or "not provided")
            else:
                self._finish_with_issue(task, result.message or result.output or "automation failed")

        await self.store.save_processing_record(event.id, event.title, specialized_task=task)
        await self.store.mark_processed(event.id)
        _notify(on_task_updated, task)
        return task.copy()

    @staticmethod
    def _finish_with_issue(task: Task, reason: str) -> None:
        task_states.advance(task, TaskStatus.ISSUE)
        task.description += f"\n\nError: {reason}"
        logger.error("Birthday task %s failed: %s", task.id, reason)


def _notify(callback: t.Optional[TaskCallback], task: Task) -> None:
    if callback is None:
        return
    try:
        callback(task.copy())
    except Exception:
        logger.exception("Task callback failed for %s", task.id)
