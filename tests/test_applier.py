import pytest

from helpers import SAMPLE_SPEC, write_store

from ralphloop.analyzer import ErrorAnalysis
from ralphloop.applier import CorrectionApplier
from ralphloop.document import AnchorNotFound, CorrectionRejected, SpecDocument
from ralphloop.provider import MarkdownSpecProvider, parse_tasks
from ralphloop.synthesizer import CorrectionPlan


def _plan(anchor, replacement, document="spec.md"):
    return CorrectionPlan(
        document=document,
        anchor=anchor,
        replacement=replacement,
        rationale="Root cause: test",
        analysis=ErrorAnalysis(root_cause="test"),
        attempt=1,
    )


def test_apply_changes_only_the_anchored_body(tmp_path):
    store = write_store(tmp_path)
    provider = MarkdownSpecProvider(store)
    before = store.read()

    result = CorrectionApplier([provider.validate]).apply(
        _plan("Property P1", "For all integers a, b: add(a, b) == add(b, a)."), store,
    )
    after = store.read()

    assert result.anchor == "Property P1"
    assert result.before_checksum == before.checksum
    assert result.after_checksum == after.checksum
    assert after.body("Property P1").strip() == "For all integers a, b: add(a, b) == add(b, a)."
    for key in before.keys() - {"Property P1"}:
        assert after.body(key) == before.body(key)
    assert parse_tasks(after) == parse_tasks(before)
    assert len(store.backups()) == 1


def test_missing_anchor_leaves_document_untouched(tmp_path):
    store = write_store(tmp_path)
    original = store.read_bytes()
    with pytest.raises(AnchorNotFound):
        CorrectionApplier().apply(_plan("Requirement R9", "anything"), store)
    assert store.read_bytes() == original


def test_failed_validator_rejects_and_restores(tmp_path):
    store = write_store(tmp_path)
    original = store.read_bytes()

    def veto(document):
        return ["vetoed by test"]

    with pytest.raises(CorrectionRejected) as exc:
        CorrectionApplier([veto]).apply(_plan("Requirement R1", "Adds integers."), store)
    assert "vetoed by test" in str(exc.value)
    assert store.read_bytes() == original


@pytest.mark.parametrize("replacement", [
    "Still fine\n## Surprise section",
    "```python\nnever closed",
    "Dup\n\n### Requirement R2: again",
])
def test_structure_breaking_edit_rejected(tmp_path, replacement):
    store = write_store(tmp_path)
    original = store.read_bytes()
    with pytest.raises(CorrectionRejected):
        CorrectionApplier().apply(_plan("Requirement R1", replacement), store)
    assert store.read_bytes() == original


def test_graph_check_runs_on_the_edited_document(tmp_path):
    store = write_store(tmp_path)
    provider = MarkdownSpecProvider(store)
    original = store.read_bytes()

    with pytest.raises(CorrectionRejected):
        CorrectionApplier([provider.validate]).apply(
            _plan("Task C", "Document the API.\n\n- Depends: Z"), store,
        )
    assert store.read_bytes() == original


def test_plan_for_another_document_rejected(tmp_path):
    store = write_store(tmp_path)
    with pytest.raises(CorrectionRejected):
        CorrectionApplier().apply(_plan("Requirement R1", "x", document="other.md"), store)


def test_apply_is_serialized_through_the_store_lock(tmp_path):
    store = write_store(tmp_path)
    applier = CorrectionApplier()
    applier.apply(_plan("Requirement R1", "First rewrite."), store)
    applier.apply(_plan("Requirement R2", "Second rewrite."), store)

    doc = store.read()
    assert doc.body("Requirement R1").strip() == "First rewrite."
    assert doc.body("Requirement R2").strip() == "Second rewrite."
    assert SpecDocument(SAMPLE_SPEC).keys() == doc.keys()


def _synthesized(store, anchor, replacement):
    snapshot = store.read()
    return _plan(anchor, replacement).model_copy(
        update={"base_checksum": snapshot.checksum, "base_body": snapshot.body(anchor)}
    )


def test_unrelated_edit_since_synthesis_is_tolerated(tmp_path):
    store = write_store(tmp_path)
    plan = _synthesized(store, "Property P1", "For all integers a, b: add(a, b) == add(b, a).")
    store.path.write_text(SAMPLE_SPEC.replace("subtracts two integers", "subtracts two numbers"), encoding="utf-8")

    result = CorrectionApplier().apply(plan, store)

    assert result.drifted
    after = store.read()
    assert after.body("Property P1").strip() == "For all integers a, b: add(a, b) == add(b, a)."
    assert "subtracts two numbers" in after.body("Requirement R2")


def test_target_section_edited_since_synthesis_is_rejected(tmp_path):
    store = write_store(tmp_path)
    plan = _synthesized(store, "Property P1", "For all integers a, b: add(a, b) == add(b, a).")
    edited = SAMPLE_SPEC.replace("For all a, b:", "For every a, b:")
    store.path.write_text(edited, encoding="utf-8")

    with pytest.raises(CorrectionRejected):
        CorrectionApplier().apply(plan, store)
    assert store.path.read_text(encoding="utf-8") == edited


def test_fresh_plan_is_not_drifted(tmp_path):
    store = write_store(tmp_path)
    plan = _synthesized(store, "Property P1", "For all integers a, b: add(a, b) == add(b, a).")
    assert not CorrectionApplier().apply(plan, store).drifted
