"""
RALPHLOOP Dependency Scheduler

Read-only over the graph and the state store. Picks the next task whose
dependencies are all Completed, in declared order, and tells a blocked
graph apart from a finished one.
"""

from __future__ import annotations

from loguru import logger

from ralphloop.graph import Task, TaskGraph
from ralphloop.state import Status, TaskStateStore


class Scheduler:
    def __init__(self, graph: TaskGraph, state: TaskStateStore):
        self.graph = graph
        self.state = state

    def rebind(self, graph: TaskGraph) -> None:
        self.graph = graph

    def is_eligible(self, task: Task) -> bool:
        if self.state.status(task.id) is not Status.NOT_STARTED:
            return False
        return all(self.state.status(dep) is Status.COMPLETED for dep in task.dependencies)

    def next_eligible(self) -> Task | None:
        """First eligible task in declared order, or None."""
        for task in self.graph:
            if self.is_eligible(task):
                logger.debug(f"[SCHED] Next: {task.id}")
                return task
        return None

    def is_finished(self) -> bool:
        """Every task is in a terminal status."""
        return all(self.state.status(task.id).terminal for task in self.graph)

    def is_blocked(self) -> bool:
        """Nothing to run, but not every task has finished."""
        return self.next_eligible() is None and not self.is_finished()

    def blocked_tasks(self) -> dict[str, list[str]]:
        """
        Non-terminal tasks that can never become eligible, mapped to the
        dependencies holding them back (halted, or themselves blocked).
        """
        blocked: dict[str, list[str]] = {}
        for task_id in self.graph.topological_order():
            if self.state.status(task_id).terminal:
                continue
            task = self.graph[task_id]
            holders = [
                dep for dep in task.dependencies
                if self.state.status(dep) is Status.HALTED or dep in blocked
            ]
            if holders:
                blocked[task_id] = holders
        return blocked
