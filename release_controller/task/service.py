"""Task tracking service for reconciliations.

Reconciliations are dispatched from synchronous store listeners, so nothing
awaits them directly. The service keeps a reference to every dispatched task
and lets callers wait until the controller is idle.
"""

import asyncio
import logging
from typing import Any, Coroutine
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task, used in logs

        Returns:
            The created task
        """

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait until no tracked tasks remain.

        Tasks created while waiting, for example by a reconciliation that
        updated its own request, are waited for too.
        """

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of tracked tasks that have not finished."""


class TaskServiceImpl(TaskService):
    """Tracks tasks in a set until they are done."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._active_tasks.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)

    async def block_till_done(self) -> None:
        """Wait until no tracked tasks remain."""
        while self._active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(self._active_tasks))
            await asyncio.gather(*self._active_tasks, return_exceptions=True)
        # Let done callbacks of the last tasks run
        await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        """Get the number of tracked tasks that have not finished."""
        return len(self._active_tasks)
