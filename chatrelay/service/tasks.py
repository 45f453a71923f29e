from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Set

from chatrelay.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


class TaskSupervisor:
    """Owns detached tasks that must outlive the request that started them.

    Stream producers and their finalization run here so a client disconnect
    never cancels message or usage persistence. ``shutdown`` is awaited by the
    application lifespan; tasks still running after the grace period are
    cancelled.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        if self._closing:
            raise RuntimeError("task supervisor is shutting down")
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 30.0) -> None:
        self._closing = True
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        logger.info("background_tasks_draining", count=len(pending))
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning("background_tasks_cancelled", count=len(still_pending))
