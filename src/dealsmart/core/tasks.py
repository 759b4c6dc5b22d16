"""Tracked fire-and-forget task runner.

Side effects that must not block the request path (CRM sync, event
emission, pre-generated suggestions) are scheduled here. The runner keeps
strong references to running tasks, logs failures that escaped the task
body, and can drain outstanding work on shutdown or in tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTaskRunner:
    """Schedules coroutines as background asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Schedule ``coro`` and return immediately."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task.failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all scheduled tasks (including ones they spawn) to finish."""
        while self._tasks:
            pending = list(self._tasks)
            _done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("background_task.drain_timeout", pending=len(not_done))
                return

    async def cancel_all(self) -> None:
        """Cancel outstanding tasks and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
