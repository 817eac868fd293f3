"""
RALPHLOOP Task Graph

Immutable-after-load view of the spec's tasks: ids, dependencies, and
links to requirement/property anchors. Built once per run from a spec
snapshot. Status and attempt counts do NOT live here; see state.py.
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field


class GraphError(Exception):
    """Base class for task graph construction failures."""
    pass


class CyclicDependency(GraphError):
    """Raised when task dependencies form a cycle. Fatal: the run never starts."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")


class UnknownDependency(GraphError):
    """Raised when a task depends on an id that is not in the graph."""

    def __init__(self, task_id: str, missing: str):
        self.task_id = task_id
        self.missing = missing
        super().__init__(f"Task {task_id} depends on unknown task {missing}")


class DuplicateTask(GraphError):
    pass


# ---------------------------------------------------------------------------
# Task Definition
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """One unit of work from the spec, verified by an external check."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = ""
    dependencies: tuple[str, ...] = ()
    requirement_refs: tuple[str, ...] = ()
    property_refs: tuple[str, ...] = ()
    verify: str | None = None
    details: str = ""

    @property
    def refs(self) -> tuple[str, ...]:
        """Property refs first: they are the most specific anchors."""
        return self.property_refs + self.requirement_refs

    def fingerprint(self) -> str:
        """Stable hash of the task definition, used to detect stale state."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class TaskGraph:
    """
    Ordered mapping of task id -> Task.

    Declared order is the order tasks were given in, which is also the
    scheduler's tie-break. Construction validates every dependency and
    rejects cycles, so a TaskGraph that exists is always schedulable.
    """

    def __init__(self, tasks: Iterable[Task]):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise DuplicateTask(f"Duplicate task id: {task.id}")
            self._tasks[task.id] = task

        for task in self._tasks.values():
            for dep in task.dependencies:
                if dep not in self._tasks:
                    raise UnknownDependency(task.id, dep)

        self._order = {task_id: i for i, task_id in enumerate(self._tasks)}
        self._topo = self._topological_sort()
        self._checksum = self._compute_checksum()

    # -- mapping protocol ---------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __getitem__(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    @property
    def ids(self) -> list[str]:
        return list(self._tasks)

    @property
    def checksum(self) -> str:
        """Graph version. Changes whenever any task definition changes."""
        return self._checksum

    def topological_order(self) -> list[str]:
        return list(self._topo)

    def dependents(self, task_id: str) -> list[str]:
        """Tasks that list task_id as a direct dependency."""
        return [t.id for t in self._tasks.values() if task_id in t.dependencies]

    # -- internals ------------------------------------------------------------

    def _topological_sort(self) -> list[str]:
        """
        Kahn's algorithm, draining ready tasks in declared order.
        On leftovers, walk them to name the actual cycle.
        """
        indegree = {task_id: len(set(t.dependencies)) for task_id, t in self._tasks.items()}
        ready = [task_id for task_id, deg in indegree.items() if deg == 0]
        order: list[str] = []

        while ready:
            ready.sort(key=self._order.__getitem__)
            current = ready.pop(0)
            order.append(current)
            for dependent in self.dependents(current):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self._tasks):
            leftover = [task_id for task_id in self._tasks if task_id not in set(order)]
            raise CyclicDependency(self._find_cycle(leftover))

        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        visiting: list[str] = []
        done: set[str] = set()

        def visit(task_id: str) -> list[str] | None:
            if task_id in visiting:
                start = visiting.index(task_id)
                return visiting[start:] + [task_id]
            if task_id in done:
                return None
            visiting.append(task_id)
            for dep in self._tasks[task_id].dependencies:
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            done.add(task_id)
            return None

        for task_id in candidates:
            cycle = visit(task_id)
            if cycle:
                return cycle
        return candidates

    def _compute_checksum(self) -> str:
        digest = hashlib.sha256()
        for task_id, task in self._tasks.items():
            digest.update(f"{task_id}:{task.fingerprint()}\n".encode("utf-8"))
        return digest.hexdigest()[:16]
