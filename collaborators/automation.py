"""
Browser-automation client for the browser-use cloud API.

A task is started with one request and its live session URL is returned
right away, so callers can show a "watch live" link while the agent works.
Completion is awaited separately by polling the task until it settles.
"""
from __future__ import annotations

import asyncio
import logging
import typing as t

import httpx

from pipeline.errors import AutomationError
from pipeline.models import AutomationResult

logger = logging.getLogger(__name__)

# Timeout for individual API requests (in seconds)
STANDARD_TIMEOUT = 15.0
POLL_INTERVAL = 2.0

FINISHED = "finished"
TERMINAL_STATUSES = frozenset({FINISHED, "failed", "stopped"})


class BrowserUseRun:
    """A started browser-use task."""

    def __init__(self, client: BrowserUseClient, task_id: str, session_url: t.Optional[str]) -> None:
        self.client = client
        self.task_id = task_id
        self.session_url = session_url

    async def completion(self) -> AutomationResult:
        """Poll the task until it finishes, fails or is stopped.

        Raises:
            AutomationError: If the task status cannot be read
        """
        while True:
            details = await self.client.get_task(self.task_id)
            status = str(details.get("status", "")).lower()
            if status in TERMINAL_STATUSES:
                output = details.get("output") or ""
                if status == FINISHED:
                    return AutomationResult(output=output, success=True, message="Task finished.")
                return AutomationResult(
                    output=output,
                    success=False,
                    message=f"Automation task {status}: {output or 'no output'}",
                )
            await asyncio.sleep(self.client.poll_interval)


class BrowserUseClient:
    """Starts natural-language browser tasks on browser-use cloud."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.browser-use.com/api/v1",
        live_url: str = "https://cloud.browser-use.com",
        timeout: float = STANDARD_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        transport: t.Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.live_url = live_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport

    async def run_task(self, instruction: str) -> BrowserUseRun:
        """Start a task and return as soon as its session is known.

        Raises:
            AutomationError: If the task cannot be created
        """
        if not self.api_key:
            raise AutomationError("BROWSER_USE_API_KEY is not set")

        created = await self._request("POST", "/run-task", json={"task": instruction})
        task_id = created.get("id")
        if not task_id:
            raise AutomationError(f"browser-use returned no task id: {created}")

        session_url = created.get("live_url")
        if not session_url:
            try:
                session_url = (await self.get_task(task_id)).get("live_url")
            except AutomationError as e:
                logger.debug("Could not read live URL for task %s: %s", task_id, e)
        if not session_url:
            session_url = f"{self.live_url}/task/{task_id}"

        logger.info("Started browser-use task %s", task_id)
        return BrowserUseRun(self, task_id, session_url)

    async def get_task(self, task_id: str) -> dict[str, t.Any]:
        return await self._request("GET", f"/task/{task_id}")

    async def _request(self, method: str, path: str, **kwargs: t.Any) -> dict[str, t.Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.api_url}{path}",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    **kwargs,
                )
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            raise AutomationError(f"browser-use request timed out after {self.timeout} seconds")
        except httpx.HTTPStatusError as e:
            raise AutomationError(
                f"HTTP error from browser-use: {e.response.status_code} {e.response.text}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise AutomationError(f"Error calling browser-use: {e}") from e
