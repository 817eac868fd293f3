"""Shared fixtures-by-hand for the test suite: sample specs and fake collaborators."""

from __future__ import annotations

from pathlib import Path

from ralphloop.agents import BaseReasoner, Proposal, ReasoningContext
from ralphloop.applier import CorrectionApplier
from ralphloop.config_loader import PolicyConfig, RalphConfig
from ralphloop.coordinator import RalphLoop
from ralphloop.document import SpecStore
from ralphloop.gateway import FailureMetadata, VerificationOutcome
from ralphloop.orchestrator import Orchestrator
from ralphloop.provider import MarkdownSpecProvider
from ralphloop.state import TaskStateStore
from ralphloop.synthesizer import CorrectionSynthesizer

SAMPLE_SPEC = """# Calculator

## Requirements

### Requirement R1: Addition
The calculator adds two integers.

### Requirement R2: Subtraction
The calculator subtracts two integers.

## Properties

### Property P1: Addition is commutative
Validates: Requirements R1

For all a, b: add(a, b) == add(b, a).

## Tasks

### Task A: Core arithmetic
Implement add.

- Requirements: R1
- Properties: P1
- Verify: `pytest tests/test_add.py`

### Task B: Subtraction
Implement subtract.

- Depends: A
- Requirements: R2

### Task C: Docs
Document the API.

- Depends: A
"""

INDEPENDENT_SPEC = """# Two tasks

### Task A: First
Do the first thing.

### Task B: Second
Do the second thing.
"""

CHAIN_SPEC = """# Chain

### Task A: First
Do the first thing.

### Task B: Second
Needs the first.

- Depends: A
"""

ONE_TASK_SPEC = """# One task

### Task A: Only
Do the only thing.
"""


def fail(text: str = "boom", **kwargs) -> VerificationOutcome:
    return VerificationOutcome.failed(text, **kwargs)


def property_failure(prop: str = "P1") -> VerificationOutcome:
    return VerificationOutcome.failed(
        f"AssertionError: Property {prop} failed",
        metadata=FailureMetadata(property_id=prop, expected="3", actual="4"),
    )


class ScriptedGateway:
    """Pops scripted outcomes per task id; passes once a task's script runs out."""

    def __init__(self, script: dict[str, list[VerificationOutcome]] | None = None, always_fail: set[str] = frozenset()):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.always_fail = set(always_fail)
        self.calls: list[str] = []
        self.cancelled = 0

    def run(self, task, timeout):
        self.calls.append(task.id)
        if task.id in self.always_fail:
            return fail("boom")
        queue = self.script.get(task.id)
        if queue:
            return queue.pop(0)
        return VerificationOutcome.passed("ok")

    def cancel(self):
        self.cancelled += 1


class FixedReasoner(BaseReasoner):
    name = "fixed"

    def __init__(self, replacement: str = "", rationale: str = "", error: Exception | None = None):
        self.replacement = replacement
        self.rationale = rationale
        self.error = error
        self.contexts: list[ReasoningContext] = []

    def propose(self, context: ReasoningContext) -> Proposal:
        self.contexts.append(context)
        if self.error:
            raise self.error
        return Proposal(replacement=self.replacement, rationale=self.rationale)


def write_store(tmp_path: Path, spec: str = SAMPLE_SPEC, max_backups: int = 10) -> SpecStore:
    path = tmp_path / "spec.md"
    path.write_text(spec, encoding="utf-8")
    return SpecStore(path, backup_dir=tmp_path / "backups", max_backups=max_backups)


def make_loop(tmp_path: Path, gateway, spec: str = SAMPLE_SPEC, reasoner=None, max_attempts: int = 3, synthesizer=None):
    store = write_store(tmp_path, spec)
    provider = MarkdownSpecProvider(store)
    graph = provider.load()
    state = TaskStateStore(graph)
    loop = RalphLoop(
        state,
        gateway,
        store,
        synthesizer=synthesizer or CorrectionSynthesizer(reasoner),
        applier=CorrectionApplier([provider.validate]),
        max_attempts=max_attempts,
        timeout=5,
    )
    return loop, graph, store


def make_orchestrator(tmp_path: Path, gateway, spec: str | None = SAMPLE_SPEC, halt_on_exhaustion: bool = True, **kwargs) -> Orchestrator:
    spec_path = tmp_path / "spec.md"
    if spec is not None:
        spec_path.write_text(spec, encoding="utf-8")
    store = SpecStore(spec_path, backup_dir=tmp_path / "backups")
    config = RalphConfig(policy=PolicyConfig(halt_on_exhaustion=halt_on_exhaustion))
    return Orchestrator(
        MarkdownSpecProvider(store),
        gateway,
        store,
        config=config,
        state_path=tmp_path / ".ralphloop" / "state.json",
        quiet=True,
        **kwargs,
    )
