import pytest

from helpers import SAMPLE_SPEC, FixedReasoner

from ralphloop.analyzer import ErrorAnalysis, ErrorKind
from ralphloop.document import AnchorAmbiguous, CorrectionRejected, SpecDocument
from ralphloop.graph import Task
from ralphloop.state import AttemptOutcome, AttemptRecord
from ralphloop.synthesizer import CorrectionSynthesizer, NoSafeTarget

TASK_A = Task(id="A", description="Core arithmetic", requirement_refs=("R1",), property_refs=("P1",))
SNAPSHOT = SpecDocument(SAMPLE_SPEC, "spec.md")


def _analysis(**kwargs):
    base = dict(kind=ErrorKind.ASSERTION_FAILURE, root_cause="Property P1 failed: expected 3, got 4", confidence=0.9)
    base.update(kwargs)
    return ErrorAnalysis(**base)


def test_prefers_property_then_requirement_then_task():
    synth = CorrectionSynthesizer()
    assert synth.synthesize(_analysis(property_ref="P1", requirement_ref="R1"), TASK_A, SNAPSHOT).anchor == "Property P1"
    assert synth.synthesize(_analysis(property_ref="P9", requirement_ref="R2"), TASK_A, SNAPSHOT).anchor == "Requirement R2"
    assert synth.synthesize(_analysis(), TASK_A, SNAPSHOT).anchor == "Task A"


def test_plan_carries_root_cause_and_provenance():
    analysis = _analysis(property_ref="P1", suggestion="Review the property.")
    plan = CorrectionSynthesizer().synthesize(analysis, TASK_A, SNAPSHOT, attempt=2)

    assert analysis.root_cause in plan.rationale
    assert plan.document == "spec.md"
    assert plan.attempt == 2
    assert plan.reasoner == "template"
    assert plan.base_checksum == SNAPSHOT.checksum
    assert plan.replacement.startswith("Validates: Requirements R1")
    assert analysis.root_cause in plan.replacement


def test_rationale_echoes_root_cause_even_when_reasoner_omits_it():
    synth = CorrectionSynthesizer(FixedReasoner("A new property statement.", rationale="tightened wording"))
    plan = synth.synthesize(_analysis(property_ref="P1"), TASK_A, SNAPSHOT)
    assert plan.rationale.startswith("Root cause: Property P1 failed")
    assert "tightened wording" in plan.rationale


def test_rejected_anchors_are_skipped():
    history = [AttemptRecord(
        attempt=2, outcome=AttemptOutcome.CORRECTION_FAILED,
        anchor="Property P1", correction_error="Correction rejected",
    )]
    plan = CorrectionSynthesizer().synthesize(_analysis(property_ref="P1"), TASK_A, SNAPSHOT, history)
    assert plan.anchor == "Task A"


def test_no_safe_target():
    history = [AttemptRecord(
        attempt=2, outcome=AttemptOutcome.CORRECTION_FAILED,
        anchor="Task A", correction_error="Correction rejected",
    )]
    with pytest.raises(NoSafeTarget) as exc:
        CorrectionSynthesizer().synthesize(_analysis(), TASK_A, SNAPSHOT, history)
    assert exc.value.tried == ["Task A"]


def test_ambiguous_anchor_surfaces():
    doc = SpecDocument("### Task A: x\none\n\n### Task A: again\ntwo\n")
    with pytest.raises(AnchorAmbiguous):
        CorrectionSynthesizer().synthesize(_analysis(), TASK_A, doc)


@pytest.mark.parametrize("replacement", [
    "",
    "   \n",
    "Fine text\n## Requirements reset",
    "New text\n\n### Task Z: sneaky",
    "```python\nunterminated",
])
def test_structure_breaking_output_rejected(replacement):
    synth = CorrectionSynthesizer(FixedReasoner(replacement))
    with pytest.raises(CorrectionRejected):
        synth.synthesize(_analysis(property_ref="P1"), TASK_A, SNAPSHOT)


def test_unchanged_output_rejected():
    current = SNAPSHOT.body("Property P1")
    synth = CorrectionSynthesizer(FixedReasoner(current))
    with pytest.raises(CorrectionRejected):
        synth.synthesize(_analysis(property_ref="P1"), TASK_A, SNAPSHOT)


def test_reasoner_crash_becomes_rejection():
    synth = CorrectionSynthesizer(FixedReasoner(error=RuntimeError("model down")))
    with pytest.raises(CorrectionRejected) as exc:
        synth.synthesize(_analysis(property_ref="P1"), TASK_A, SNAPSHOT)
    assert exc.value.anchor == "Property P1"


def test_confidence_floor():
    synth = CorrectionSynthesizer(min_confidence=0.5)
    with pytest.raises(CorrectionRejected):
        synth.synthesize(_analysis(confidence=0.1), TASK_A, SNAPSHOT)


def test_policy_denial_targets_task_section():
    analysis = _analysis(kind=ErrorKind.POLICY_BLOCKED, root_cause="PolicyBlocked: denied", property_ref="P1")
    assert CorrectionSynthesizer().candidates(analysis, TASK_A) == ["Task A"]


def test_reasoner_sees_failure_diagnostics():
    reasoner = FixedReasoner("A new property statement.")
    CorrectionSynthesizer(reasoner).synthesize(
        _analysis(property_ref="P1"), TASK_A, SNAPSHOT, diagnostics="AssertionError: 3 != 4",
    )
    assert reasoner.contexts[0].diagnostics == "AssertionError: 3 != 4"
