"""Calendar change detection by polling.

The detector fetches the current event set on a fixed interval, diffs the ids
against the set seen on the previous successful tick and hands only the new
events to its callback. The seen set lives in memory: after a restart every
visible event is reported as new once, and the idempotency store absorbs that.
"""
from __future__ import annotations

import asyncio
import logging
import typing as t
from datetime import timedelta

from pipeline.errors import CalendarAuthError
from pipeline.models import CalendarSource, Event
from pipeline.utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5 * 60.0
DEFAULT_FETCH_TIMEOUT = 15.0

NewEventsCallback = t.Callable[[list[Event]], t.Awaitable[None]]


class ChangeDetector:
    """Polls a calendar and reports events whose ids were not seen before."""

    def __init__(
        self,
        calendar: CalendarSource,
        on_new_events: t.Optional[NewEventsCallback] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        excluded_titles: t.Sequence[str] = (),
        lookahead_days: t.Optional[int] = None,
        max_results: t.Optional[int] = None,
    ) -> None:
        self.calendar = calendar
        self.on_new_events = on_new_events
        self.poll_interval = poll_interval
        self.fetch_timeout = fetch_timeout
        self.excluded_titles = [title.lower() for title in excluded_titles if title]
        self.lookahead_days = lookahead_days
        self.max_results = max_results

        self.last_seen_event_ids: set[str] = set()
        self.current_events: list[Event] = []

        self._tick_lock = asyncio.Lock()
        self._loop_task: t.Optional[asyncio.Task] = None
        self._sleeping = False
        self._stopping = False
        self._starting = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Run one tick immediately, then keep ticking every poll_interval."""
        if self.running:
            return
        if self._starting:
            # The latest call wins over a stop() issued during the first tick.
            self._stopping = False
            return
        self._starting = True
        self._stopping = False
        try:
            await self.tick()
            if self._stopping:
                return
            self._loop_task = asyncio.create_task(self._run_loop())
        finally:
            self._starting = False
        logger.info("Calendar monitoring started (every %.0fs)", self.poll_interval)

    def stop(self) -> None:
        """Cancel the pending timer. Repeated calls are no-ops.

        A tick already in progress is allowed to finish; no new tick starts.
        """
        self._stopping = True
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        if self._sleeping:
            task.cancel()
        logger.info("Calendar monitoring stopped")

    async def _run_loop(self) -> None:
        while not self._stopping:
            self._sleeping = True
            try:
                await asyncio.sleep(self.poll_interval)
            finally:
                self._sleeping = False
            if self._stopping:
                break
            await self.tick()

    async def tick(self) -> list[Event]:
        """Fetch the calendar once and report the events not seen before.

        Returns:
            The new events passed to the callback (empty when nothing changed
            or the fetch failed)
        """
        async with self._tick_lock:
            raw_events = await self._fetch()
            if raw_events is None:
                return []

            current_ids = {str(raw["id"]) for raw in raw_events if raw.get("id")}
            converted = self._convert(raw_events)
            self.current_events = converted

            new_ids = current_ids - self.last_seen_event_ids
            if not new_ids:
                logger.debug("No new events (%d visible)", len(current_ids))
                return []

            new_events = [event for event in converted if event.id in new_ids]
            logger.info(
                "Detected %d new event id(s), %d usable event(s)",
                len(new_ids), len(new_events),
            )
            for event in new_events:
                logger.info("New event: %r on %s", event.title, event.scheduled_at.isoformat())

            if new_events and self.on_new_events is not None:
                try:
                    await self.on_new_events(new_events)
                except Exception:
                    logger.exception("New-events callback failed")

            self.last_seen_event_ids = current_ids
            return new_events

    async def fetch_current_events(self) -> list[Event]:
        """Fetch and convert the current event set without touching the diff state.

        Raises:
            CalendarFetchError: If the calendar cannot be fetched
        """
        raw_events = await asyncio.wait_for(self._call_calendar(), timeout=self.fetch_timeout)
        self.current_events = self._convert(raw_events)
        return list(self.current_events)

    async def _fetch(self) -> t.Optional[list[dict[str, t.Any]]]:
        try:
            return await asyncio.wait_for(self._call_calendar(), timeout=self.fetch_timeout)
        except CalendarAuthError as e:
            logger.error(
                "Calendar authentication failed, token may be expired; "
                "refresh the credentials to resume detection: %s", e,
            )
        except asyncio.TimeoutError:
            logger.warning("Calendar fetch timed out after %.0fs, skipping tick", self.fetch_timeout)
        except Exception as e:
            logger.warning("Calendar fetch failed, skipping tick: %s", e)
        return None

    def _call_calendar(self) -> t.Awaitable[list[dict[str, t.Any]]]:
        time_min = utc_now()
        time_max = time_min + timedelta(days=self.lookahead_days) if self.lookahead_days else None
        return self.calendar.fetch_events(time_min=time_min, time_max=time_max, limit=self.max_results)

    def _convert(self, raw_events: t.Iterable[t.Mapping[str, t.Any]]) -> list[Event]:
        events = []
        for raw in raw_events:
            event = Event.from_raw(raw)
            if event is None:
                continue
            if self._is_excluded(event.title):
                logger.debug("Filtering out excluded event %r", event.title)
                continue
            events.append(event)
        return events

    def _is_excluded(self, title: str) -> bool:
        lowered = title.lower()
        return any(excluded in lowered for excluded in self.excluded_titles)
