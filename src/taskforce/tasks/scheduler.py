"""Dependency-gated concurrent execution of a task plan."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping, Sequence, Set, Tuple

from .base import Task

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[Task], Awaitable[Any]]


class DependencyScheduler:
    """Runs every task as its own coroutine, gating dependents on predecessors.

    A task whose predecessor is part of this schedule and has not completed
    parks a future in ``waiters[predecessor_id]``. When a task finishes,
    successfully or not, all futures parked under its id are resolved once.
    The ``execute`` callable owns writing outputs into ``context``; the
    scheduler only reads it to decide whether a dependency is already met.
    """

    def __init__(
        self,
        tasks: Sequence[Task],
        context: MutableMapping[str, Any],
        execute: TaskExecutor,
    ) -> None:
        self.tasks = list(tasks)
        self.context = context
        self._execute = execute
        self._scheduled: Set[str] = {task.id for task in self.tasks}
        self._completed: Set[str] = set()
        self._waiters: Dict[str, List[asyncio.Future]] = {}

    async def run(self) -> Dict[str, Any]:
        outcomes = await asyncio.gather(
            *(self._run_unit(task) for task in self.tasks), return_exceptions=True
        )
        results: Dict[str, Any] = {}
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            task_id, value = outcome
            results[task_id] = value
        return results

    def _must_wait(self, task: Task) -> bool:
        predecessor = task.input_from_task
        if not predecessor or predecessor in self.context:
            return False
        return predecessor in self._scheduled and predecessor not in self._completed

    async def _wait_for(self, task_id: str) -> None:
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(task_id, []).append(future)
        await future

    def _notify(self, task_id: str) -> None:
        self._completed.add(task_id)
        for future in self._waiters.pop(task_id, []):
            if not future.done():
                future.set_result(None)

    async def _run_unit(self, task: Task) -> Tuple[str, Any]:
        if self._must_wait(task):
            logger.debug("Task '%s' waiting for '%s'", task.id, task.input_from_task)
            await self._wait_for(task.input_from_task)  # type: ignore[arg-type]
        try:
            value = await self._execute(task)
        finally:
            self._notify(task.id)
        return task.id, value
