"""
RALPHLOOP Coordinator — The Ralph Loop

One verification cycle for one task:

    InProgress -> verify -> Completed
                         -> Failed -> analyze -> synthesize -> apply -> NotStarted (retry)
                                   -> Halted (attempts exhausted)

It is NOT smart. It is deterministic. Every verification run costs one
attempt; a correction that cannot be synthesized or applied costs one
more. Reaching max_attempts on a failure halts the task, as does a
safety denial that survives a correction.

The coordinator never picks tasks and never reloads the graph. It hands
a result back and lets the orchestrator decide what happens next.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from loguru import logger

from ralphloop.activity import ActivityBus
from ralphloop.analyzer import ErrorAnalysis, ErrorAnalyzer, ErrorKind
from ralphloop.applier import ApplyResult, CorrectionApplier
from ralphloop.document import CorrectionError, SpecStore
from ralphloop.gateway import VerificationGateway, VerificationOutcome
from ralphloop.graph import Task
from ralphloop.state import AttemptOutcome, AttemptRecord, Status, TaskStateStore
from ralphloop.synthesizer import CorrectionPlan, CorrectionSynthesizer

MAX_RECORDED_DIAGNOSTICS = 2000


class LoopResult(str, Enum):
    COMPLETED = "completed"
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class AttemptsExhausted(Exception):
    """A task failed max_attempts times. Terminal for the task."""

    def __init__(self, task_id: str, attempts: int, root_cause: str | None = None):
        self.task_id = task_id
        self.attempts = attempts
        self.root_cause = root_cause
        detail = f": {root_cause}" if root_cause else ""
        super().__init__(f"Task {task_id} halted after {attempts} attempt(s){detail}")


@dataclass
class CycleResult:
    task_id: str
    result: LoopResult
    attempts: int
    outcome: VerificationOutcome | None = None
    analysis: ErrorAnalysis | None = None
    plan: CorrectionPlan | None = None
    applied: ApplyResult | None = None
    correction_error: str | None = None
    error: AttemptsExhausted | None = None


class RalphLoop:
    def __init__(
        self,
        state: TaskStateStore,
        gateway: VerificationGateway,
        spec_store: SpecStore,
        synthesizer: CorrectionSynthesizer | None = None,
        applier: CorrectionApplier | None = None,
        analyzer: ErrorAnalyzer | None = None,
        max_attempts: int = 3,
        timeout: float = 300.0,
        activity: ActivityBus | None = None,
    ):
        self.state = state
        self.gateway = gateway
        self.spec_store = spec_store
        self.synthesizer = synthesizer or CorrectionSynthesizer()
        self.applier = applier or CorrectionApplier()
        self.analyzer = analyzer or ErrorAnalyzer()
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.activity = activity or ActivityBus()
        self._cancelled = False

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def cancel(self) -> None:
        self._cancelled = True
        self.gateway.cancel()

    def run(self, task: Task) -> CycleResult:
        """Run one cycle. Re-running a Completed task returns the stored outcome."""
        record = self.state.record(task.id)

        if record.status is Status.COMPLETED:
            logger.debug(f"[RALPH] {task.id} already completed, nothing to do")
            return CycleResult(task.id, LoopResult.COMPLETED, record.attempts, outcome=record.last_outcome)

        if record.status is Status.HALTED:
            return CycleResult(
                task.id, LoopResult.EXHAUSTED, record.attempts,
                error=AttemptsExhausted(task.id, record.attempts, record.last_error),
            )

        self._cancelled = False
        if record.status is Status.NOT_STARTED:
            self.state.transition(task.id, Status.QUEUED)
        if self.state.status(task.id) is Status.QUEUED:
            self.state.transition(task.id, Status.IN_PROGRESS)

        outcome = self._verify(task)

        if self._cancelled:
            self.state.transition(task.id, Status.NOT_STARTED)
            logger.warning(f"[RALPH] {task.id} cancelled, attempt not charged")
            return CycleResult(task.id, LoopResult.CANCELLED, record.attempts, outcome=outcome)

        self.state.set_outcome(task.id, outcome)
        attempt = self.state.charge_attempt(task.id)

        if outcome.success:
            return self._complete(task, attempt, outcome)

        self.state.transition(task.id, Status.FAILED)
        self.activity.emit(
            "verification_failed", task.id,
            attempt=attempt, duration_ms=outcome.duration_ms, timed_out=outcome.timed_out,
        )

        analysis = self.analyzer.analyze(outcome, self.state.history(task.id))
        logger.warning(f"[RALPH] {task.id} failed (attempt {attempt}/{self.max_attempts}): {analysis.root_cause}")

        if attempt >= self.max_attempts or self._unfixable(analysis):
            self._append(task.id, attempt, AttemptOutcome.HALTED, outcome, analysis=analysis)
            return self._halt(task, attempt, outcome, analysis)

        return self._correct(task, attempt, outcome, analysis)

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def _verify(self, task: Task) -> VerificationOutcome:
        logger.info(f"[RALPH] Verifying {task.id} (timeout {self.timeout:g}s)")
        try:
            return self.gateway.run(task, self.timeout)
        except Exception as e:
            logger.exception(f"[RALPH] Verification gateway raised for {task.id}")
            return VerificationOutcome.failed(f"Verification gateway error: {type(e).__name__}: {e}")

    def _complete(self, task: Task, attempt: int, outcome: VerificationOutcome) -> CycleResult:
        self.state.transition(task.id, Status.COMPLETED)
        self._append(task.id, attempt, AttemptOutcome.PASSED, outcome)
        self.activity.emit("task_completed", task.id, attempt=attempt, duration_ms=outcome.duration_ms)
        logger.info(f"[RALPH] ✅ {task.id} completed (attempt {attempt})")
        return CycleResult(task.id, LoopResult.COMPLETED, attempt, outcome=outcome)

    def _halt(
        self, task: Task, attempt: int, outcome: VerificationOutcome, analysis: ErrorAnalysis,
    ) -> CycleResult:
        self.state.transition(task.id, Status.HALTED)
        error = AttemptsExhausted(task.id, attempt, analysis.root_cause)
        self.activity.emit("task_halted", task.id, attempts=attempt, root_cause=analysis.root_cause)
        logger.error(f"[RALPH] 🛑 {error}")
        return CycleResult(
            task.id, LoopResult.EXHAUSTED, attempt,
            outcome=outcome, analysis=analysis, error=error,
        )

    def _correct(
        self, task: Task, attempt: int, outcome: VerificationOutcome, analysis: ErrorAnalysis,
    ) -> CycleResult:
        plan: CorrectionPlan | None = None
        try:
            snapshot = self.spec_store.read()
            plan = self.synthesizer.synthesize(
                analysis, task, snapshot, self.state.history(task.id), attempt, outcome.diagnostics,
            )
            applied = self.applier.apply(plan, self.spec_store)
        except CorrectionError as e:
            return self._correction_failed(task, attempt, outcome, analysis, plan, e)

        self._append(
            task.id, attempt, AttemptOutcome.CORRECTED, outcome,
            analysis=analysis, plan=plan, anchor=plan.anchor,
        )
        self.state.transition(task.id, Status.NOT_STARTED)
        self.activity.emit(
            "correction_applied", task.id,
            attempt=attempt, anchor=plan.anchor, kind=analysis.kind.value,
            rationale=plan.rationale, backup=applied.backup_path,
        )
        logger.info(f"[RALPH] 🔁 {task.id}: patched {plan.anchor}, retrying")
        return CycleResult(
            task.id, LoopResult.RETRY, attempt,
            outcome=outcome, analysis=analysis, plan=plan, applied=applied,
        )

    def _correction_failed(
        self,
        task: Task,
        attempt: int,
        outcome: VerificationOutcome,
        analysis: ErrorAnalysis,
        plan: CorrectionPlan | None,
        error: CorrectionError,
    ) -> CycleResult:
        attempt = self.state.charge_attempt(task.id)
        anchor = plan.anchor if plan else getattr(error, "anchor", None)
        self._append(
            task.id, attempt, AttemptOutcome.CORRECTION_FAILED, outcome,
            analysis=analysis, plan=plan, anchor=anchor, correction_error=str(error),
        )
        self.activity.emit(
            "correction_failed", task.id,
            attempt=attempt, anchor=anchor, error=type(error).__name__, detail=str(error),
        )
        logger.warning(f"[RALPH] {task.id}: correction failed ({type(error).__name__}): {error}")

        if attempt >= self.max_attempts:
            return self._halt(task, attempt, outcome, analysis)

        self.state.transition(task.id, Status.NOT_STARTED)
        return CycleResult(
            task.id, LoopResult.RETRY, attempt,
            outcome=outcome, analysis=analysis, plan=plan, correction_error=str(error),
        )

    @staticmethod
    def _unfixable(analysis: ErrorAnalysis) -> bool:
        """A verification command denied again after its task section was corrected."""
        return analysis.kind is ErrorKind.POLICY_BLOCKED and analysis.recurring

    def _append(
        self,
        task_id: str,
        attempt: int,
        label: AttemptOutcome,
        outcome: VerificationOutcome,
        **fields,
    ) -> None:
        diagnostics = "" if outcome.success else outcome.diagnostics[-MAX_RECORDED_DIAGNOSTICS:]
        self.state.append_attempt(
            task_id,
            AttemptRecord(attempt=attempt, outcome=label, diagnostics=diagnostics, **fields),
        )
