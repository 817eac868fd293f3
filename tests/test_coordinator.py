from helpers import SAMPLE_SPEC, FixedReasoner, ScriptedGateway, fail, make_loop, property_failure

from ralphloop.analyzer import ErrorKind
from ralphloop.coordinator import AttemptsExhausted, LoopResult
from ralphloop.document import SpecDocument
from ralphloop.gateway import FailureMetadata, VerificationOutcome
from ralphloop.state import AttemptOutcome, Status
from ralphloop.synthesizer import CorrectionSynthesizer


def test_pass_on_first_try(tmp_path):
    gateway = ScriptedGateway()
    loop, graph, _ = make_loop(tmp_path, gateway)

    result = loop.run(graph["A"])

    assert result.result is LoopResult.COMPLETED
    assert loop.state.status("A") is Status.COMPLETED
    assert loop.state.attempts("A") == 1
    assert [r.outcome for r in loop.state.history("A")] == [AttemptOutcome.PASSED]


def test_failure_patches_spec_and_resets(tmp_path):
    gateway = ScriptedGateway({"A": [property_failure("P1")]})
    loop, graph, store = make_loop(tmp_path, gateway)
    before = store.read()

    result = loop.run(graph["A"])

    assert result.result is LoopResult.RETRY
    assert result.plan.anchor == "Property P1"
    assert loop.state.status("A") is Status.NOT_STARTED
    assert loop.state.attempts("A") == 1

    record = loop.state.history("A")[-1]
    assert record.outcome is AttemptOutcome.CORRECTED
    assert record.analysis.kind is ErrorKind.ASSERTION_FAILURE
    assert record.plan.rationale.startswith("Root cause: Property P1 failed")

    after = store.read()
    assert after.body("Property P1") != before.body("Property P1")
    assert after.body("Requirement R1") == before.body("Requirement R1")

    assert loop.run(graph["A"]).result is LoopResult.COMPLETED
    assert loop.state.attempts("A") == 2


def test_completed_task_is_not_verified_again(tmp_path):
    gateway = ScriptedGateway()
    loop, graph, _ = make_loop(tmp_path, gateway)
    first = loop.run(graph["A"])

    again = loop.run(graph["A"])

    assert gateway.calls == ["A"]
    assert again.result is LoopResult.COMPLETED
    assert again.outcome == first.outcome
    assert loop.state.attempts("A") == 1


def test_attempt_cap_halts(tmp_path):
    gateway = ScriptedGateway(always_fail={"A"})
    loop, graph, _ = make_loop(tmp_path, gateway, max_attempts=3)

    results = [loop.run(graph["A"]).result for _ in range(3)]

    assert results == [LoopResult.RETRY, LoopResult.RETRY, LoopResult.EXHAUSTED]
    assert loop.state.status("A") is Status.HALTED
    assert loop.state.attempts("A") == 3
    assert loop.state.history("A")[-1].outcome is AttemptOutcome.HALTED
    assert loop.state.history("A")[-1].plan is None
    assert loop.state.record("A").last_error == "boom"

    again = loop.run(graph["A"])
    assert again.result is LoopResult.EXHAUSTED
    assert isinstance(again.error, AttemptsExhausted)
    assert gateway.calls == ["A", "A", "A"]


def test_rejected_correction_costs_an_attempt(tmp_path):
    gateway = ScriptedGateway(always_fail={"A"})
    loop, graph, store = make_loop(tmp_path, gateway, reasoner=FixedReasoner(""))
    original = store.read_bytes()

    first = loop.run(graph["A"])

    assert first.result is LoopResult.RETRY
    assert first.correction_error
    assert loop.state.attempts("A") == 2
    assert loop.state.status("A") is Status.NOT_STARTED
    record = loop.state.history("A")[-1]
    assert record.outcome is AttemptOutcome.CORRECTION_FAILED
    assert record.anchor == "Task A"
    assert store.read_bytes() == original

    second = loop.run(graph["A"])
    assert second.result is LoopResult.EXHAUSTED
    assert loop.state.attempts("A") == 3
    assert gateway.calls == ["A", "A"]


class _RemovesR2BeforeApply(CorrectionSynthesizer):
    """Simulates another writer deleting the target section between synthesis and apply."""

    def __init__(self, store):
        super().__init__()
        self.store = store

    def synthesize(self, *args, **kwargs):
        plan = super().synthesize(*args, **kwargs)
        text = self.store.path.read_text()
        start = text.index("### Requirement R2")
        end = text.index("## Properties")
        self.store.path.write_text(text[:start] + text[end:])
        return plan


def test_anchor_removed_concurrently(tmp_path):
    outcome = VerificationOutcome.failed(
        "subtract(5, 3) returned 8",
        metadata=FailureMetadata(requirement_id="R2", statement="subtraction is wrong"),
    )
    gateway = ScriptedGateway({"B": [outcome]})
    loop, graph, store = make_loop(tmp_path, gateway)
    loop.synthesizer = _RemovesR2BeforeApply(store)
    loop.state.transition("A", Status.QUEUED)
    loop.state.transition("A", Status.IN_PROGRESS)
    loop.state.transition("A", Status.COMPLETED)

    result = loop.run(graph["B"])
    externally_edited = store.read_bytes()

    assert result.result is LoopResult.RETRY
    assert "Anchor not found: Requirement R2" in result.correction_error
    assert loop.state.attempts("B") == 2
    assert loop.state.history("B")[-1].anchor == "Requirement R2"
    assert store.read_bytes() == externally_edited
    assert "Requirement R2" not in SpecDocument(externally_edited.decode())


def test_gateway_exception_is_a_failure(tmp_path):
    class Exploding(ScriptedGateway):
        def run(self, task, timeout):
            raise RuntimeError("sandbox crashed")

    loop, graph, _ = make_loop(tmp_path, Exploding())
    result = loop.run(graph["A"])

    assert result.result is LoopResult.RETRY
    assert "sandbox crashed" in result.outcome.diagnostics
    assert loop.state.attempts("A") == 1


def test_cancel_reverts_without_charging(tmp_path):
    class CancelDuringRun(ScriptedGateway):
        loop = None

        def run(self, task, timeout):
            self.loop.cancel()
            return fail("Verification cancelled")

    gateway = CancelDuringRun()
    loop, graph, store = make_loop(tmp_path, gateway)
    gateway.loop = loop

    result = loop.run(graph["A"])

    assert result.result is LoopResult.CANCELLED
    assert loop.state.status("A") is Status.NOT_STARTED
    assert loop.state.attempts("A") == 0
    assert loop.state.history("A") == []
    assert gateway.cancelled == 1
    assert store.read().text == SAMPLE_SPEC


def test_timeout_is_classified(tmp_path):
    gateway = ScriptedGateway({"A": [VerificationOutcome.timeout(5)]})
    loop, graph, _ = make_loop(tmp_path, gateway)
    loop.run(graph["A"])
    assert loop.state.history("A")[-1].analysis.kind is ErrorKind.TIMEOUT


def test_reasoner_receives_verification_output(tmp_path):
    reasoner = FixedReasoner("Implement add for non-negative integers.")
    gateway = ScriptedGateway({"A": [fail("Traceback (most recent call last):\nValueError: bad input 42")]})
    loop, graph, _ = make_loop(tmp_path, gateway, reasoner=reasoner)

    loop.run(graph["A"])

    assert "ValueError: bad input 42" in reasoner.contexts[0].diagnostics


def test_repeated_policy_denial_halts_early(tmp_path):
    denied = VerificationOutcome.blocked("Recursive force deletion (rm -rf)")
    gateway = ScriptedGateway({"A": [denied, denied]})
    loop, graph, store = make_loop(tmp_path, gateway, max_attempts=5)

    first = loop.run(graph["A"])
    assert first.result is LoopResult.RETRY
    assert first.plan.anchor == "Task A"

    second = loop.run(graph["A"])
    assert second.result is LoopResult.EXHAUSTED
    assert loop.state.status("A") is Status.HALTED
    assert loop.state.attempts("A") == 2
    assert gateway.calls == ["A", "A"]
    assert loop.state.history("A")[-1].analysis.kind is ErrorKind.POLICY_BLOCKED
