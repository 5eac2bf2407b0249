"""
Supervised background tasks.
"""

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TaskFailure:
    """An unhandled exception that ended a supervised task."""

    name: str
    error: BaseException


class TaskSupervisor:
    """
    Runs named tasks and keeps track of how they end.

    An unhandled exception is logged with its traceback and recorded in
    `failures`; it does not affect the other tasks.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self.failures: list[TaskFailure] = []

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """
        Start a supervised task.

        Args:
            name: Unique task name.
            coro: The coroutine to run.

        Returns:
            asyncio.Task: The running task.
        """
        if name in self._tasks:
            coro.close()
            raise ValueError(f"Task already supervised: {name}")

        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(self._on_done)
        logger.debug("Task started", extra={"task": name})
        return task

    @property
    def running(self) -> list[str]:
        """Names of tasks that have not finished."""
        return [name for name, task in self._tasks.items() if not task.done()]

    async def join(self) -> list[TaskFailure]:
        """
        Wait for every supervised task to finish.

        Returns:
            Failures recorded so far.
        """
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return list(self.failures)

    async def cancel(self) -> None:
        """Cancel all unfinished tasks and wait for them."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await self.join()

    def _on_done(self, task: asyncio.Task) -> None:
        name = task.get_name()
        if task.cancelled():
            logger.info("Task cancelled", extra={"task": name})
            return

        error = task.exception()
        if error is None:
            logger.debug("Task finished", extra={"task": name})
            return

        self.failures.append(TaskFailure(name=name, error=error))
        logger.error(
            "Task crashed",
            extra={"task": name, "error": repr(error)},
            exc_info=error,
        )
