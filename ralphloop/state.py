"""
RALPHLOOP Task State Store

The single owner of mutable run state: per-task status, attempt counts,
and the append-only attempt history. The graph stays immutable; this
store is what gets persisted, recovered after a crash, and rendered into
the run report.

Persisted as one JSON snapshot keyed by task id, stamped with the graph
checksum and per-task fingerprints so stale records are detected on load.
"""

from __future__ import annotations

import json
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from ralphloop.analyzer import ErrorAnalysis
from ralphloop.fsutil import LockHeld, atomic_write_text, locked_file
from ralphloop.gateway import VerificationOutcome
from ralphloop.graph import TaskGraph
from ralphloop.synthesizer import CorrectionPlan

STATE_VERSION = 1


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------

class Status(str, Enum):
    NOT_STARTED = "NotStarted"
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    HALTED = "Halted"

    @property
    def terminal(self) -> bool:
        return self in (Status.COMPLETED, Status.HALTED)


# Queued/InProgress -> NotStarted exists only for cancellation and crash recovery.
TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.NOT_STARTED: frozenset({Status.QUEUED}),
    Status.QUEUED: frozenset({Status.IN_PROGRESS, Status.NOT_STARTED}),
    Status.IN_PROGRESS: frozenset({Status.COMPLETED, Status.FAILED, Status.NOT_STARTED}),
    Status.FAILED: frozenset({Status.NOT_STARTED, Status.HALTED}),
    Status.COMPLETED: frozenset(),
    Status.HALTED: frozenset(),
}


class StateError(Exception):
    pass


class InvalidTransition(StateError):
    def __init__(self, task_id: str, current: Status, target: Status):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id}: illegal transition {current.value} -> {target.value}")


class RunInProgress(StateError):
    """Another run already holds the lock on this state file."""
    pass


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AttemptOutcome(str, Enum):
    PASSED = "passed"
    CORRECTED = "corrected"
    CORRECTION_FAILED = "correction_failed"
    HALTED = "halted"


class AttemptRecord(BaseModel):
    """One line of a task's history. Never edited once appended."""
    attempt: int
    outcome: AttemptOutcome
    analysis: ErrorAnalysis | None = None
    plan: CorrectionPlan | None = None
    anchor: str | None = None
    correction_error: str | None = None
    diagnostics: str = ""
    timestamp: str = Field(default_factory=_now)


class TaskRecord(BaseModel):
    status: Status = Status.NOT_STARTED
    attempts: int = 0
    last_error: str | None = None
    last_outcome: VerificationOutcome | None = None
    history: list[AttemptRecord] = Field(default_factory=list)
    fingerprint: str = ""


class StateSnapshot(BaseModel):
    version: int = STATE_VERSION
    graph_checksum: str = ""
    saved_at: str = Field(default_factory=_now)
    tasks: dict[str, TaskRecord] = Field(default_factory=dict)


class ExecutionSummary(BaseModel):
    total: int = 0
    completed: int = 0
    halted: int = 0
    failed: int = 0
    in_progress: int = 0
    not_started: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.completed - self.halted

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 100.0
        return round(100.0 * self.completed / self.total, 1)


TransitionListener = Callable[[str, Status, Status], None]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TaskStateStore:
    """
    Status, attempts, and history for every task in a graph.

    All status changes go through transition(), which enforces the
    state machine and notifies listeners. Listener failures are logged
    and swallowed: observers never get a say in task state.
    """

    def __init__(self, graph: TaskGraph, path: Path | None = None):
        self.graph = graph
        self.path = path
        self._records: dict[str, TaskRecord] = {
            task.id: TaskRecord(fingerprint=task.fingerprint()) for task in graph
        }
        self._listeners: list[TransitionListener] = []

    # -- reads ----------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._records

    def record(self, task_id: str) -> TaskRecord:
        return self._records[task_id]

    def status(self, task_id: str) -> Status:
        return self._records[task_id].status

    def attempts(self, task_id: str) -> int:
        return self._records[task_id].attempts

    def history(self, task_id: str) -> list[AttemptRecord]:
        return list(self._records[task_id].history)

    def statuses(self) -> dict[str, Status]:
        return {task_id: rec.status for task_id, rec in self._records.items()}

    def with_status(self, *statuses: Status) -> list[str]:
        return [task_id for task_id, rec in self._records.items() if rec.status in statuses]

    # -- writes ---------------------------------------------------------------

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def transition(self, task_id: str, target: Status) -> None:
        record = self._records[task_id]
        current = record.status
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(task_id, current, target)

        record.status = target
        logger.debug(f"[STATE] {task_id}: {current.value} -> {target.value}")

        for listener in list(self._listeners):
            try:
                listener(task_id, current, target)
            except Exception as e:
                logger.warning(f"[STATE] Transition listener failed for {task_id}: {e}")

    def charge_attempt(self, task_id: str) -> int:
        record = self._records[task_id]
        record.attempts += 1
        return record.attempts

    def append_attempt(self, task_id: str, entry: AttemptRecord) -> None:
        record = self._records[task_id]
        record.history.append(entry)
        if entry.analysis is not None:
            record.last_error = entry.analysis.root_cause
        elif entry.correction_error:
            record.last_error = entry.correction_error

    def set_outcome(self, task_id: str, outcome: VerificationOutcome) -> None:
        self._records[task_id].last_outcome = outcome

    def recover(self) -> list[str]:
        """Revert tasks left mid-flight or mid-correction by a dead run. Attempts are not charged."""
        reverted = self.with_status(Status.QUEUED, Status.IN_PROGRESS, Status.FAILED)
        for task_id in reverted:
            self.transition(task_id, Status.NOT_STARTED)
        if reverted:
            logger.warning(f"[STATE] Recovered {len(reverted)} interrupted task(s): {', '.join(reverted)}")
        return reverted

    def rebind(self, graph: TaskGraph) -> None:
        """
        Switch to a reloaded graph mid-run. Records carry over for ids
        that still exist; new ids start fresh; removed ids are dropped.
        """
        records: dict[str, TaskRecord] = {}
        for task in graph:
            record = self._records.get(task.id) or TaskRecord()
            record.fingerprint = task.fingerprint()
            records[task.id] = record

        dropped = set(self._records) - set(records)
        if dropped:
            logger.info(f"[STATE] Dropping records for removed tasks: {', '.join(sorted(dropped))}")

        self.graph = graph
        self._records = records

    def summary(self) -> ExecutionSummary:
        counts = ExecutionSummary(total=len(self._records))
        for record in self._records.values():
            if record.status is Status.COMPLETED:
                counts.completed += 1
            elif record.status is Status.HALTED:
                counts.halted += 1
            elif record.status is Status.FAILED:
                counts.failed += 1
            elif record.status in (Status.QUEUED, Status.IN_PROGRESS):
                counts.in_progress += 1
            else:
                counts.not_started += 1
        return counts

    # -- persistence ----------------------------------------------------------

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            graph_checksum=self.graph.checksum,
            tasks={task_id: rec.model_copy(deep=True) for task_id, rec in self._records.items()},
        )

    def save(self) -> None:
        """Atomic replace. Callers already hold the run lock."""
        if self.path is None:
            return
        atomic_write_text(self.path, self.snapshot().model_dump_json(indent=2))

    @classmethod
    def load(cls, graph: TaskGraph, path: Path) -> "TaskStateStore":
        """
        Restore state for ``graph`` from ``path``.

        A task whose fingerprint changed since the save starts fresh, and
        so does everything downstream of it: their results were earned
        against a different definition.
        """
        store = cls(graph, path)
        if not path.exists():
            return store

        try:
            snapshot = StateSnapshot.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            corrupt = path.with_suffix(path.suffix + ".corrupt")
            logger.error(f"[STATE] Unreadable state file, starting fresh (moved to {corrupt.name}): {e}")
            path.replace(corrupt)
            return store

        if snapshot.graph_checksum == graph.checksum:
            for task_id, saved in snapshot.tasks.items():
                if task_id in store._records:
                    store._records[task_id] = saved
            return store

        stale: set[str] = set()
        for task in graph:
            saved = snapshot.tasks.get(task.id)
            if saved is None:
                continue
            if saved.fingerprint != task.fingerprint():
                stale.add(task.id)
                continue
            store._records[task.id] = saved

        for task_id in _downstream(graph, stale):
            store._records[task_id] = TaskRecord(fingerprint=graph[task_id].fingerprint())

        dropped = set(snapshot.tasks) - set(graph.ids)
        if stale or dropped:
            logger.info(
                f"[STATE] Graph changed since last run: "
                f"{len(stale)} redefined, {len(dropped)} removed"
            )
        return store


def _downstream(graph: TaskGraph, roots: set[str]) -> set[str]:
    """roots plus every task that depends on them, transitively."""
    seen = set(roots)
    stack = list(roots)
    while stack:
        for dependent in graph.dependents(stack.pop()):
            if dependent not in seen:
                seen.add(dependent)
                stack.append(dependent)
    return seen


@contextmanager
def run_lock(state_path: Path) -> Iterator[None]:
    """Exclusive, non-blocking run lock on a state file."""
    with ExitStack() as stack:
        try:
            stack.enter_context(locked_file(state_path, blocking=False))
        except LockHeld as e:
            raise RunInProgress(f"Another run holds {state_path}") from e
        yield
