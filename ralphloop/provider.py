"""
RALPHLOOP Specification Provider

Turns the markdown spec into a TaskGraph. A task section looks like:

    ### Task T2: Implement the parser
    Parse the token stream into an AST.

    - Depends: T1
    - Requirements: R1, R2
    - Properties: P1
    - Verify: `pytest tests/test_parser.py`

Everything that is not a metadata bullet becomes the task's details.
"""

from __future__ import annotations

import re
from typing import Protocol, runtime_checkable

from loguru import logger

from ralphloop.document import SpecDocument, SpecStore, anchor_key
from ralphloop.graph import GraphError, Task, TaskGraph

_META = re.compile(
    r"^\s*[-*]\s+(?:\*\*)?(Depends(?:\s+on)?|Requirements?|Propert(?:y|ies)|Verify)(?:\*\*)?\s*:\s*(?:\*\*)?\s*(.*?)\s*$",
    re.IGNORECASE,
)
_NONE_VALUES = {"", "none", "-", "n/a"}


class SpecValidationError(Exception):
    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid specification: " + "; ".join(problems))


@runtime_checkable
class SpecificationProvider(Protocol):
    def load(self) -> TaskGraph: ...

    def reload(self) -> TaskGraph: ...

    def validate(self, document: SpecDocument) -> list[str]: ...


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _split_ids(value: str) -> tuple[str, ...]:
    value = value.strip().strip("`").strip()
    if value.lower() in _NONE_VALUES:
        return ()
    parts = re.split(r"[,\s]+", value)
    return tuple(p.strip("`*_.") for p in parts if p.strip("`*_."))


def parse_task(document: SpecDocument, key: str) -> Task:
    anchor = document.find(key)
    body = document.body(key)

    fields: dict[str, tuple[str, ...] | str | None] = {}
    details: list[str] = []
    for line in body.splitlines():
        match = _META.match(line)
        if not match:
            details.append(line)
            continue
        name, value = match.group(1).lower(), match.group(2)
        if name.startswith("depends"):
            fields["dependencies"] = _split_ids(value)
        elif name.startswith("requirement"):
            fields["requirement_refs"] = _split_ids(value)
        elif name.startswith("propert"):
            fields["property_refs"] = _split_ids(value)
        else:
            command = value.strip()
            if len(command) >= 2 and command.startswith("`") and command.endswith("`"):
                command = command.strip("`").strip()
            fields["verify"] = command or None

    return Task(
        id=anchor.id,
        description=anchor.title,
        details="\n".join(details).strip(),
        **fields,
    )


def parse_tasks(document: SpecDocument) -> list[Task]:
    return [parse_task(document, anchor.key) for anchor in document.of_kind("Task")]


def reference_problems(document: SpecDocument, tasks: list[Task]) -> list[str]:
    problems = []
    for task in tasks:
        for ref in task.requirement_refs:
            if anchor_key("Requirement", ref) not in document:
                problems.append(f"Task {task.id} references unknown requirement {ref}")
        for ref in task.property_refs:
            if anchor_key("Property", ref) not in document:
                problems.append(f"Task {task.id} references unknown property {ref}")
    return problems


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class MarkdownSpecProvider:
    """Loads the graph from a SpecStore. Keeps the last snapshot it loaded."""

    def __init__(self, store: SpecStore):
        self.store = store
        self.document: SpecDocument | None = None

    def load(self) -> TaskGraph:
        document = self.store.read()
        problems = document.problems()
        if problems:
            raise SpecValidationError(problems)

        tasks = parse_tasks(document)
        graph = TaskGraph(tasks)
        problems = reference_problems(document, tasks)
        if problems:
            raise SpecValidationError(problems)

        self.document = document
        logger.info(f"[SPEC] Loaded {len(graph)} task(s) from {document.document_id} ({graph.checksum})")
        return graph

    def reload(self) -> TaskGraph:
        logger.info("[SPEC] Reloading specification")
        return self.load()

    def validate(self, document: SpecDocument) -> list[str]:
        """Every reason ``document`` could not be loaded. Empty means it can."""
        problems = document.problems()
        if problems:
            return problems
        try:
            tasks = parse_tasks(document)
            TaskGraph(tasks)
        except (GraphError, ValueError) as e:
            return [str(e)]
        return reference_problems(document, tasks)
