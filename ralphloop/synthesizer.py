"""
RALPHLOOP Correction Synthesizer

Chooses exactly one anchor to rewrite and asks a reasoner what it should
say. Anchor preference, most specific first:

    implicated property -> implicated requirement -> the task's own section

A safety denial always targets the task's own section, where its Verify
line lives.

Anchors whose earlier corrections were rejected are skipped, so the same
correction is never tried twice. The plan's rationale always carries the
analyzer's root cause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Sequence

from loguru import logger
from pydantic import BaseModel

from ralphloop.agents import BaseReasoner, ReasoningContext
from ralphloop.agents.template import TemplateReasoner
from ralphloop.analyzer import ErrorAnalysis, ErrorKind
from ralphloop.document import CorrectionError, CorrectionRejected, SpecDocument, anchor_key
from ralphloop.graph import Task

if TYPE_CHECKING:
    from ralphloop.state import AttemptRecord


class NoSafeTarget(CorrectionError):
    def __init__(self, task_id: str, tried: list[str]):
        self.task_id = task_id
        self.tried = tried
        detail = f" (excluded or missing: {', '.join(tried)})" if tried else ""
        super().__init__(f"No safe correction target for task {task_id}{detail}")


class CorrectionPlan(BaseModel):
    document: str
    anchor: str
    replacement: str
    rationale: str
    analysis: ErrorAnalysis
    attempt: int
    reasoner: str = ""
    base_checksum: str = ""
    base_body: str = ""


def rejected_anchors(history: Sequence[AttemptRecord]) -> set[str]:
    """Anchors whose correction failed earlier for this task."""
    return {r.anchor for r in history if r.correction_error and r.anchor}


class CorrectionSynthesizer:
    def __init__(self, reasoner: BaseReasoner | None = None, min_confidence: float = 0.0):
        self.reasoner = reasoner or TemplateReasoner()
        self.min_confidence = min_confidence

    def candidates(self, analysis: ErrorAnalysis, task: Task) -> list[str]:
        # A denied command lives in the task's Verify line.
        if analysis.kind is ErrorKind.POLICY_BLOCKED:
            return [anchor_key("Task", task.id)]
        keys = []
        if analysis.property_ref:
            keys.append(anchor_key("Property", analysis.property_ref))
        if analysis.requirement_ref:
            keys.append(anchor_key("Requirement", analysis.requirement_ref))
        keys.append(anchor_key("Task", task.id))
        return keys

    def select_anchor(
        self,
        analysis: ErrorAnalysis,
        task: Task,
        snapshot: SpecDocument,
        excluded: Iterable[str] = (),
    ) -> str:
        excluded = set(excluded)
        tried = []
        for key in self.candidates(analysis, task):
            if key in excluded or key not in snapshot:
                tried.append(key)
                continue
            return key
        raise NoSafeTarget(task.id, tried)

    def synthesize(
        self,
        analysis: ErrorAnalysis,
        task: Task,
        snapshot: SpecDocument,
        history: Sequence[AttemptRecord] = (),
        attempt: int = 1,
        diagnostics: str = "",
    ) -> CorrectionPlan:
        anchor = self.select_anchor(analysis, task, snapshot, rejected_anchors(history))
        current_body = snapshot.body(anchor)

        if analysis.confidence < self.min_confidence:
            raise CorrectionRejected(
                f"analysis confidence {analysis.confidence:.2f} below {self.min_confidence:.2f}",
                anchor,
            )

        context = ReasoningContext(
            task=task,
            analysis=analysis,
            anchor=anchor,
            current_body=current_body,
            attempt=attempt,
            document_id=snapshot.document_id,
            previous_root_causes=[r.analysis.root_cause for r in history if r.analysis],
            diagnostics=diagnostics,
        )

        try:
            proposal = self.reasoner.propose(context)
        except Exception as e:
            logger.exception(f"[SYNTH] Reasoner {self.reasoner.name} failed for {anchor}")
            raise CorrectionRejected(f"reasoner failed: {e}", anchor) from e

        self._check_replacement(snapshot, anchor, current_body, proposal.replacement)

        rationale = proposal.rationale.strip()
        if analysis.root_cause not in rationale:
            rationale = f"Root cause: {analysis.root_cause}. {rationale}".strip()

        logger.info(f"[SYNTH] {task.id}: rewrite {anchor} via {self.reasoner.name}")
        return CorrectionPlan(
            document=snapshot.document_id,
            anchor=anchor,
            replacement=proposal.replacement,
            rationale=rationale,
            analysis=analysis,
            attempt=attempt,
            reasoner=self.reasoner.name,
            base_checksum=snapshot.checksum,
            base_body=current_body,
        )

    @staticmethod
    def _check_replacement(snapshot: SpecDocument, anchor: str, current: str, replacement: str) -> None:
        if not replacement or not replacement.strip():
            raise CorrectionRejected("empty replacement", anchor)
        if replacement.strip() == current.strip():
            raise CorrectionRejected("replacement is identical to the current body", anchor)

        trial = snapshot.replace_body(anchor, replacement)
        problems = trial.problems()
        if problems:
            raise CorrectionRejected("; ".join(problems), anchor)
        if anchor not in trial or trial.body(anchor).strip() != replacement.strip():
            raise CorrectionRejected("replacement breaks section structure", anchor)
        if trial.keys() != snapshot.keys():
            raise CorrectionRejected("replacement adds or removes anchors", anchor)
