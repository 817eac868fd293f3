"""
RALPHLOOP Orchestrator — The Brainstem

Owns a run end to end:
  - Load the graph (a cyclic graph never starts)
  - Take the run lock, restore state, recover interrupted tasks
  - Pull the next eligible task, hand it to the Ralph loop
  - Reload the spec after every applied correction
  - Stop on completion, exhaustion, a blocked graph, or cancellation
  - Persist state after every cycle and report

It never edits the spec and never judges a failure. It only coordinates.
"""

from __future__ import annotations

from contextlib import nullcontext
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ralphloop.activity import ActivityBus, JsonlActivityLog
from ralphloop.agents import BaseReasoner
from ralphloop.agents.corrector import CorrectorAgent
from ralphloop.agents.template import TemplateReasoner
from ralphloop.applier import CorrectionApplier
from ralphloop.config_loader import RalphConfig, load_config, load_environment
from ralphloop.coordinator import AttemptsExhausted, LoopResult, RalphLoop
from ralphloop.document import SpecStore
from ralphloop.gateway import CommandGateway, VerificationGateway
from ralphloop.graph import GraphError, TaskGraph
from ralphloop.provider import MarkdownSpecProvider, SpecificationProvider, SpecValidationError
from ralphloop.router import Router
from ralphloop.safety import SafetyPreCheck
from ralphloop.scheduler import Scheduler
from ralphloop.state import (
    AttemptRecord,
    ExecutionSummary,
    Status,
    TaskStateStore,
    run_lock,
)
from ralphloop.synthesizer import CorrectionSynthesizer

console = Console()


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class RunOutcome(str, Enum):
    COMPLETED = "completed"
    HALTED = "halted"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class RunBlocked(Exception):
    """No task is eligible but the graph is not finished."""

    def __init__(self, blocked: dict[str, list[str]]):
        self.blocked = blocked
        detail = ", ".join(f"{t} (waiting on {', '.join(deps)})" for t, deps in blocked.items())
        super().__init__(f"Run blocked: {detail or 'no eligible task'}")


class TaskReport(BaseModel):
    task_id: str
    description: str = ""
    status: Status
    attempts: int = 0
    last_error: str | None = None
    history: list[AttemptRecord] = Field(default_factory=list)


class RunReport(BaseModel):
    outcome: RunOutcome
    tasks: list[TaskReport] = Field(default_factory=list)
    summary: ExecutionSummary = Field(default_factory=ExecutionSummary)
    blocked: dict[str, list[str]] = Field(default_factory=dict)
    cycles: int = 0
    recovered: list[str] = Field(default_factory=list)
    budget: dict | None = None

    def task(self, task_id: str) -> TaskReport:
        for report in self.tasks:
            if report.task_id == task_id:
                return report
        raise KeyError(task_id)

    @property
    def halted(self) -> list[TaskReport]:
        return [t for t in self.tasks if t.status is Status.HALTED]

    def raise_for_outcome(self) -> None:
        """Raise AttemptsExhausted or RunBlocked for runs that did not finish cleanly."""
        if self.outcome is RunOutcome.HALTED:
            first = self.halted[0]
            raise AttemptsExhausted(first.task_id, first.attempts, first.last_error)
        if self.outcome is RunOutcome.BLOCKED:
            raise RunBlocked(self.blocked)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        provider: SpecificationProvider,
        gateway: VerificationGateway,
        spec_store: SpecStore,
        config: RalphConfig | None = None,
        state_path: Path | None = None,
        reasoner: BaseReasoner | None = None,
        activity: ActivityBus | None = None,
        router: Router | None = None,
        quiet: bool = False,
    ):
        self.provider = provider
        self.spec_store = spec_store
        self.gateway = gateway
        self.config = config or RalphConfig()
        self.state_path = state_path
        self.activity = activity or ActivityBus()
        self.router = router
        self.quiet = quiet

        self.synthesizer = CorrectionSynthesizer(
            reasoner or TemplateReasoner(),
            min_confidence=self.config.policy.min_confidence,
        )
        self.applier = CorrectionApplier(validators=[provider.validate])

        self.state: TaskStateStore | None = None
        self._loop: RalphLoop | None = None
        self._cancelled = False

    @classmethod
    def from_repo(
        cls,
        repo_path: Path,
        gateway: VerificationGateway | None = None,
        config: RalphConfig | None = None,
        quiet: bool = False,
    ) -> "Orchestrator":
        """Wire everything from <repo>/.ralphloop/config.yaml (or defaults)."""
        repo_path = repo_path.resolve()
        load_environment(repo_path)
        config = config or load_config(repo_path)
        ws = config.workspace

        store = SpecStore(
            repo_path / ws.spec_file,
            backup_dir=repo_path / ws.backup_dir,
            max_backups=ws.max_backups,
        )

        if gateway is None:
            safety = SafetyPreCheck(config.safety.blocked_patterns) if config.safety.enabled else None
            gateway = CommandGateway(repo_path, safety=safety)

        router = None
        reasoner: BaseReasoner = TemplateReasoner()
        if config.routing.reasoner == "llm":
            router = Router(config)
            reasoner = CorrectorAgent(router)

        activity = ActivityBus()
        if ws.activity_log:
            activity.subscribe(JsonlActivityLog(repo_path / ws.activity_log))

        return cls(
            MarkdownSpecProvider(store),
            gateway,
            store,
            config=config,
            state_path=repo_path / ws.state_file,
            reasoner=reasoner,
            activity=activity,
            router=router,
            quiet=quiet,
        )

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop after (or during) the current cycle. The in-flight task is not charged."""
        self._cancelled = True
        if self._loop is not None:
            self._loop.cancel()

    def resume(self) -> RunReport:
        """Continue from persisted state. Same as run(): state is always restored."""
        return self.run()

    def run(self) -> RunReport:
        graph = self.provider.load()
        self._cancelled = False

        lock = run_lock(self.state_path) if self.state_path else nullcontext()
        with lock:
            state = (
                TaskStateStore.load(graph, self.state_path)
                if self.state_path else TaskStateStore(graph)
            )
            self.state = state
            state.subscribe(self._on_transition)
            recovered = state.recover()

            scheduler = Scheduler(graph, state)
            self._loop = RalphLoop(
                state,
                self.gateway,
                self.spec_store,
                synthesizer=self.synthesizer,
                applier=self.applier,
                max_attempts=self.config.limits.max_attempts,
                timeout=self.config.limits.verification_timeout_seconds,
                activity=self.activity,
            )

            self.activity.emit("run_started", tasks=len(graph), checksum=graph.checksum, recovered=recovered)
            if not self.quiet:
                console.print(Panel(
                    f"[bold]{self.spec_store.document_id}[/]  ·  {len(graph)} task(s)  ·  "
                    f"max {self.config.limits.max_attempts} attempt(s)",
                    title="⚡ RALPHLOOP",
                    border_style="bright_green",
                ))

            outcome, cycles = self._drive(state, scheduler)
            report = self._build_report(state, scheduler, outcome, cycles, recovered)

        self._loop = None
        self.activity.emit(
            "run_finished",
            outcome=report.outcome.value,
            completed=report.summary.completed,
            halted=report.summary.halted,
        )
        if not self.quiet:
            print_report(report)
        return report

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _drive(self, state: TaskStateStore, scheduler: Scheduler) -> tuple[RunOutcome | None, int]:
        outcome: RunOutcome | None = None
        cycles = 0
        current: str | None = None

        try:
            state.save()
            while not self._cancelled:
                task = scheduler.next_eligible()
                if task is None:
                    break

                current = task.id
                cycle = self._loop.run(task)
                current = None
                cycles += 1
                state.save()

                if cycle.result is LoopResult.CANCELLED:
                    break
                if cycle.result is LoopResult.RETRY and cycle.applied is not None:
                    self._maybe_reload(state, scheduler)
                if cycle.result is LoopResult.EXHAUSTED and self.config.policy.halt_on_exhaustion:
                    outcome = RunOutcome.HALTED
                    break

            if self._cancelled:
                outcome = RunOutcome.CANCELLED
        except KeyboardInterrupt:
            logger.warning("[ORCH] ⚡ Interrupted by human")
            self.gateway.cancel()
            outcome = RunOutcome.CANCELLED
            if current is not None and state.status(current) in (Status.QUEUED, Status.IN_PROGRESS, Status.FAILED):
                state.transition(current, Status.NOT_STARTED)
        finally:
            state.save()

        return outcome, cycles

    def _maybe_reload(self, state: TaskStateStore, scheduler: Scheduler) -> None:
        if not self.config.policy.reload_on_correction:
            return
        try:
            graph: TaskGraph = self.provider.reload()
        except (GraphError, SpecValidationError) as e:
            logger.error(f"[ORCH] Reload after correction failed, keeping previous graph: {e}")
            return
        state.rebind(graph)
        scheduler.rebind(graph)

    def _on_transition(self, task_id: str, source: Status, target: Status) -> None:
        self.activity.emit("transition", task_id, source=source.value, target=target.value)

    def _build_report(
        self,
        state: TaskStateStore,
        scheduler: Scheduler,
        outcome: RunOutcome | None,
        cycles: int,
        recovered: list[str],
    ) -> RunReport:
        blocked = scheduler.blocked_tasks()
        if outcome is None:
            if scheduler.is_finished():
                outcome = RunOutcome.HALTED if state.with_status(Status.HALTED) else RunOutcome.COMPLETED
            else:
                outcome = RunOutcome.BLOCKED
                logger.error(f"[SCHED] Run blocked: {', '.join(blocked) or 'no eligible task'}")

        tasks = []
        for task in state.graph:
            record = state.record(task.id)
            tasks.append(TaskReport(
                task_id=task.id,
                description=task.description,
                status=record.status,
                attempts=record.attempts,
                last_error=record.last_error if record.status is not Status.COMPLETED else None,
                history=list(record.history),
            ))

        return RunReport(
            outcome=outcome,
            tasks=tasks,
            summary=state.summary(),
            blocked=blocked,
            cycles=cycles,
            recovered=recovered,
            budget=self.router.budget.summary() if self.router else None,
        )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_STATUS_STYLE = {
    Status.COMPLETED: "green",
    Status.HALTED: "red",
    Status.FAILED: "red",
    Status.IN_PROGRESS: "yellow",
    Status.QUEUED: "yellow",
    Status.NOT_STARTED: "dim",
}

_OUTCOME_STYLE = {
    RunOutcome.COMPLETED: ("✅", "green"),
    RunOutcome.HALTED: ("🛑", "red"),
    RunOutcome.BLOCKED: ("🚧", "yellow"),
    RunOutcome.CANCELLED: ("⚡", "yellow"),
}


def print_report(report: RunReport, out: Console | None = None) -> None:
    out = out or console

    table = Table(title="Run Report", border_style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")

    for task in report.tasks:
        style = _STATUS_STYLE.get(task.status, "white")
        table.add_row(
            task.task_id,
            f"[{style}]{task.status.value}[/]",
            str(task.attempts),
            (task.last_error or "")[:80],
        )
    out.print(table)

    icon, color = _OUTCOME_STYLE[report.outcome]
    summary = report.summary
    lines = [
        f"{icon} [bold {color}]{report.outcome.value.upper()}[/]",
        f"Completed {summary.completed}/{summary.total} ({summary.percent_complete}%) · "
        f"Halted {summary.halted} · Remaining {summary.remaining} · Cycles {report.cycles}",
    ]
    if report.blocked:
        lines.append("Blocked: " + ", ".join(
            f"{t} ← {', '.join(deps)}" for t, deps in report.blocked.items()
        ))
    if report.recovered:
        lines.append(f"Recovered from crash: {', '.join(report.recovered)}")
    if report.budget:
        lines.append(
            f"Tokens: {report.budget['total_tokens']:,} / "
            f"Cost: ${report.budget['estimated_cost']:.4f} / "
            f"Calls: {report.budget['call_count']}"
        )
    out.print(Panel("\n".join(lines), title="Summary", border_style=color))
