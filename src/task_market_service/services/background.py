"""Tracked background tasks for out-of-band work (jury reviews, notifications)."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Coroutine


class BackgroundRunner:
    """
    Owns every fire-and-forget coroutine the service starts.

    Spawned tasks are strongly referenced until they finish, so they cannot be
    garbage collected mid-flight; failures are logged from a done-callback.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = get_logger(__name__)

    @property
    def pending(self) -> int:
        """Number of spawned tasks that have not finished."""
        return sum(1 for task in self._tasks if not task.done())

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule a coroutine on the running loop and track it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._logger.info("Background task cancelled", extra={"task_name": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning(
                "Background task failed",
                extra={"task_name": task.get_name(), "error": str(exc)},
                exc_info=exc,
            )

    async def cancel(self, name: str) -> int:
        """Cancel unfinished tasks spawned under `name` and wait for them to stop."""
        matching = [task for task in self._tasks if task.get_name() == name and not task.done()]
        for task in matching:
            task.cancel()
        if matching:
            await asyncio.gather(*matching, return_exceptions=True)
        return len(matching)

    async def drain(self) -> None:
        """Wait until every spawned task, including ones spawned meanwhile, has finished."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def shutdown(self, timeout_seconds: float) -> None:
        """Give outstanding work a grace period, then cancel what remains."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        _done, still_running = await asyncio.wait(pending, timeout=timeout_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            self._logger.warning(
                "Cancelled unfinished background tasks at shutdown",
                extra={"count": len(still_running)},
            )
