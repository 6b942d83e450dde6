"""Task set validation and dependency ordering.

Every task has at most one predecessor (``input_from_task``), so the
dependency structure is a forest. Ordering is a depth-first walk that
emits a predecessor before the tasks reading from it while keeping the
declared order for everything else.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Sequence, Set

from ..config import ConfigError
from .base import Task


def topological_sort(tasks: Sequence[Task]) -> List[Task]:
    """Order ``tasks`` so that predecessors come first.

    Predecessors that are not part of ``tasks`` are ignored, which lets the
    same routine order filtered sub-plans during a replan.
    """
    task_map: Dict[str, Task] = {task.id: task for task in tasks}
    ordered: List[Task] = []
    visited: Set[str] = set()
    visiting: Set[str] = set()

    def visit(task: Task) -> None:
        if task.id in visited:
            return
        if task.id in visiting:
            raise ConfigError(f"Dependency cycle detected at task '{task.id}'")
        visiting.add(task.id)
        predecessor = task.input_from_task
        if predecessor and predecessor in task_map:
            visit(task_map[predecessor])
        visiting.discard(task.id)
        visited.add(task.id)
        ordered.append(task)

    for task in tasks:
        visit(task)
    return ordered


class TaskGraph:
    """Holds a validated task set."""

    def __init__(self, tasks: Iterable[Task]) -> None:
        self._tasks: List[Task] = list(tasks)
        self._by_id: Dict[str, Task] = {}
        self._validate()

    def _validate(self) -> None:
        for task in self._tasks:
            if task.id in self._by_id:
                raise ConfigError(f"Duplicate task id '{task.id}'")
            self._by_id[task.id] = task

        for task in self._tasks:
            predecessor = task.input_from_task
            if not predecessor:
                continue
            if predecessor == task.id:
                raise ConfigError(f"Task '{task.name}' cannot take input from itself")
            if predecessor not in self._by_id:
                raise ConfigError(
                    f"Task '{task.name}' references missing input_from_task id '{predecessor}'"
                )

        for task in self._tasks:
            seen = {task.id}
            current = task.input_from_task
            while current:
                if current in seen:
                    raise ConfigError(f"Dependency cycle detected through task '{task.id}'")
                seen.add(current)
                current = self._by_id[current].input_from_task

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._by_id

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task:
        try:
            return self._by_id[task_id]
        except KeyError as exc:
            raise ConfigError(f"Unknown task '{task_id}'") from exc

    def topological_order(self) -> List[Task]:
        return topological_sort(self._tasks)

    def dependents_closure(self, task_ids: Iterable[str]) -> Set[str]:
        """Return ``task_ids`` plus every task depending on them, directly or not."""
        return dependents_closure(self._tasks, task_ids)


def dependents_closure(tasks: Sequence[Task], task_ids: Iterable[str]) -> Set[str]:
    closure: Set[str] = set(task_ids)
    added = True
    while added:
        added = False
        for task in tasks:
            if task.input_from_task in closure and task.id not in closure:
                closure.add(task.id)
                added = True
    return closure
