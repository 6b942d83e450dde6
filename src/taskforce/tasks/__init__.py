"""Task primitives."""

from .base import ExecutionContext, Task
from .graph import TaskGraph, topological_sort
from .scheduler import DependencyScheduler

__all__ = ["ExecutionContext", "Task", "TaskGraph", "topological_sort", "DependencyScheduler"]
