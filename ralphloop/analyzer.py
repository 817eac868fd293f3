"""
RALPHLOOP Error Analyzer

Turns a failed VerificationOutcome into an ErrorAnalysis: what kind of
failure, the most specific root-cause statement we can find, which spec
anchors it implicates, and how sure we are.

Classification rules are data (MATCHERS, EXCEPTION_KINDS). Adding a kind
means adding rows, not touching control flow. analyze() never raises:
anything it cannot classify comes back as Unknown with confidence 0.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from ralphloop.gateway import VerificationOutcome

if TYPE_CHECKING:
    from ralphloop.state import AttemptRecord


class ErrorKind(str, Enum):
    SYNTAX_ERROR = "SyntaxError"
    TYPE_FAILURE = "TypeFailure"
    ASSERTION_FAILURE = "AssertionFailure"
    TIMEOUT = "Timeout"
    DEPENDENCY_MISSING = "DependencyMissing"
    RESOURCE_EXHAUSTION = "ResourceExhaustion"
    POLICY_BLOCKED = "PolicyBlocked"
    UNKNOWN = "Unknown"


class ErrorAnalysis(BaseModel):
    kind: ErrorKind = ErrorKind.UNKNOWN
    root_cause: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    property_ref: str | None = None
    requirement_ref: str | None = None
    location: str | None = None
    suggestion: str = ""
    recurring: bool = False


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Matcher:
    kind: ErrorKind
    pattern: re.Pattern[str]
    weight: float


def _m(kind: ErrorKind, pattern: str, weight: float) -> Matcher:
    return Matcher(kind, re.compile(pattern, re.IGNORECASE), weight)


# Order matters only for ties: earlier rows win.
MATCHERS: list[Matcher] = [
    _m(ErrorKind.POLICY_BLOCKED, r"PolicyBlocked|denied by safety pre-check", 1.0),
    _m(ErrorKind.TIMEOUT, r"timed out|timeout(?:error|expired)?\b|deadline exceeded", 0.9),
    _m(ErrorKind.RESOURCE_EXHAUSTION,
       r"MemoryError|out of memory|\bOOM\b|RecursionError|maximum recursion depth"
       r"|No space left on device|Too many open files|ENOMEM", 0.85),
    _m(ErrorKind.DEPENDENCY_MISSING,
       r"ModuleNotFoundError|No module named|cannot find module|module not found"
       r"|command not found|ENOENT", 0.8),
    _m(ErrorKind.DEPENDENCY_MISSING, r"ImportError|No such file or directory|not installed", 0.5),
    _m(ErrorKind.SYNTAX_ERROR,
       r"SyntaxError|IndentationError|TabError|invalid syntax|unexpected token|parse error", 0.8),
    _m(ErrorKind.TYPE_FAILURE,
       r"TypeError|AttributeError|NameError|error TS\d+|incompatible type"
       r"|has no attribute|is not defined|cannot find name", 0.7),
    _m(ErrorKind.ASSERTION_FAILURE,
       r"AssertionError|assertion failed|Falsifying example|counterexample"
       r"|property \S+ failed", 0.7),
    _m(ErrorKind.ASSERTION_FAILURE, r"expected .{0,80}(?:but|got|received|actual)", 0.4),
    _m(ErrorKind.ASSERTION_FAILURE, r"\bFAILED\b|\d+ failed", 0.3),
]

# Exception class named on the final traceback line is the strongest signal.
EXCEPTION_KINDS: dict[str, ErrorKind] = {
    "SyntaxError": ErrorKind.SYNTAX_ERROR,
    "IndentationError": ErrorKind.SYNTAX_ERROR,
    "TabError": ErrorKind.SYNTAX_ERROR,
    "TypeError": ErrorKind.TYPE_FAILURE,
    "AttributeError": ErrorKind.TYPE_FAILURE,
    "NameError": ErrorKind.TYPE_FAILURE,
    "AssertionError": ErrorKind.ASSERTION_FAILURE,
    "ModuleNotFoundError": ErrorKind.DEPENDENCY_MISSING,
    "ImportError": ErrorKind.DEPENDENCY_MISSING,
    "FileNotFoundError": ErrorKind.DEPENDENCY_MISSING,
    "TimeoutError": ErrorKind.TIMEOUT,
    "MemoryError": ErrorKind.RESOURCE_EXHAUSTION,
    "RecursionError": ErrorKind.RESOURCE_EXHAUSTION,
}

EXCEPTION_WEIGHT = 1.0
STRUCTURED_WEIGHT = 2.0

SUGGESTIONS: dict[ErrorKind, str] = {
    ErrorKind.SYNTAX_ERROR: "Clarify the exact syntax or interface shape the task must produce.",
    ErrorKind.TYPE_FAILURE: "Add the missing type, attribute, or interface definition to the design.",
    ErrorKind.ASSERTION_FAILURE: "Review the property or acceptance criterion: it may be too strict, "
                                 "or the expected behavior needs to be stated precisely.",
    ErrorKind.TIMEOUT: "Add performance guidance or narrow the scope of the check.",
    ErrorKind.DEPENDENCY_MISSING: "State the missing dependency explicitly as a requirement.",
    ErrorKind.RESOURCE_EXHAUSTION: "Bound the input sizes or recursion depth the task must handle.",
    ErrorKind.POLICY_BLOCKED: "Replace the blocked action with a safe alternative in the task description.",
    ErrorKind.UNKNOWN: "Add clarification or context to the task description.",
}

_EXCEPTION_LINE = re.compile(
    r"^\s*(?:E\s+)?([A-Za-z_][\w.]*(?:Error|Exception|Failure|Exit)):\s*(.*)$",
    re.MULTILINE,
)
_PROPERTY_REF = re.compile(r"\bProperty\s+([A-Za-z]*\d[\w.\-]*)", re.IGNORECASE)
_REQUIREMENT_REF = re.compile(r"\bRequirements?\s+([A-Za-z]*\d[\w.\-]*)", re.IGNORECASE)
_LOCATIONS = [
    re.compile(r'File "([^"]+)", line (\d+)'),
    re.compile(r"at\s+\S+\s+\(([^():]+):(\d+):\d+\)"),
    re.compile(r"^([\w./\\-]+\.\w+):(\d+):", re.MULTILINE),
]
_BOILERPLATE = re.compile(
    r"^(?:=+|-+|_+|Traceback \(most recent call last\):|platform |rootdir:|plugins:"
    r"|collected \d+|cachedir:|\s*\^+\s*$)",
)

MAX_ROOT_CAUSE = 200


# ---------------------------------------------------------------------------
# Classification (pure)
# ---------------------------------------------------------------------------

def score_kinds(outcome: VerificationOutcome) -> dict[ErrorKind, float]:
    """Accumulate matcher weights per kind over text and structured flags."""
    text = outcome.diagnostics or ""
    scores: dict[ErrorKind, float] = {}

    for matcher in MATCHERS:
        if matcher.pattern.search(text):
            scores[matcher.kind] = scores.get(matcher.kind, 0.0) + matcher.weight

    exception_lines = _EXCEPTION_LINE.findall(text)
    if exception_lines:
        name = exception_lines[-1][0].rsplit(".", 1)[-1]
        kind = EXCEPTION_KINDS.get(name)
        if kind:
            scores[kind] = scores.get(kind, 0.0) + EXCEPTION_WEIGHT

    if outcome.timed_out:
        scores[ErrorKind.TIMEOUT] = scores.get(ErrorKind.TIMEOUT, 0.0) + STRUCTURED_WEIGHT
    if outcome.policy_blocked:
        scores[ErrorKind.POLICY_BLOCKED] = scores.get(ErrorKind.POLICY_BLOCKED, 0.0) + STRUCTURED_WEIGHT
    meta = outcome.metadata
    if meta and (meta.property_id or meta.expected is not None or meta.actual is not None):
        scores[ErrorKind.ASSERTION_FAILURE] = scores.get(ErrorKind.ASSERTION_FAILURE, 0.0) + 1.0

    return scores


def classify(outcome: VerificationOutcome) -> tuple[ErrorKind, float]:
    """
    Pick the highest-scoring kind. Confidence is the winning score
    (capped at 1) scaled by its share of the total, so ambiguous output
    reads as less certain.
    """
    scores = score_kinds(outcome)
    if not scores:
        return ErrorKind.UNKNOWN, 0.0

    rank = {m.kind: i for i, m in reversed(list(enumerate(MATCHERS)))}
    best = max(scores, key=lambda k: (scores[k], -rank.get(k, len(MATCHERS))))
    total = sum(scores.values())
    confidence = min(1.0, scores[best]) * (scores[best] / total)
    return best, round(confidence, 3)


# ---------------------------------------------------------------------------
# Root cause + references
# ---------------------------------------------------------------------------

def _truncate(text: str, limit: int = MAX_ROOT_CAUSE) -> str:
    text = " ".join(text.split())
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _first_distinguishing_line(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not _BOILERPLATE.match(stripped):
            return stripped
    return None


def extract_root_cause(outcome: VerificationOutcome, kind: ErrorKind) -> str:
    meta = outcome.metadata
    if meta and (meta.property_id or meta.requirement_id):
        subject = f"Property {meta.property_id}" if meta.property_id else f"Requirement {meta.requirement_id}"
        parts = [f"{subject} failed"]
        if meta.expected is not None or meta.actual is not None:
            parts.append(f"expected {meta.expected!s}, got {meta.actual!s}")
        elif meta.statement:
            parts.append(meta.statement)
        return _truncate(": ".join(parts))

    text = outcome.diagnostics or ""

    if kind is ErrorKind.TIMEOUT or kind is ErrorKind.POLICY_BLOCKED:
        first = _first_distinguishing_line(text)
        if first:
            return _truncate(first)

    exception_lines = _EXCEPTION_LINE.findall(text)
    if exception_lines:
        name, message = exception_lines[-1]
        return _truncate(f"{name}: {message}" if message else name)

    first = _first_distinguishing_line(text)
    if first:
        return _truncate(first)
    return "Verification failed with no diagnostic output"


def _clean_ref(ref: str) -> str:
    return ref.rstrip(".-")


def extract_refs(outcome: VerificationOutcome) -> tuple[str | None, str | None]:
    meta = outcome.metadata
    text = outcome.diagnostics or ""

    prop = meta.property_id if meta and meta.property_id else None
    if prop is None:
        match = _PROPERTY_REF.search(text)
        prop = _clean_ref(match.group(1)) if match else None

    req = meta.requirement_id if meta and meta.requirement_id else None
    if req is None:
        match = _REQUIREMENT_REF.search(text)
        req = _clean_ref(match.group(1)) if match else None

    return prop, req


def extract_location(text: str) -> str | None:
    for pattern in _LOCATIONS:
        matches = pattern.findall(text or "")
        if matches:
            path, line = matches[-1]
            return f"{path}:{line}"
    return None


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class ErrorAnalyzer:
    """Stateless. History is only used to spot a root cause that keeps coming back."""

    def analyze(
        self,
        outcome: VerificationOutcome,
        history: Sequence[AttemptRecord] = (),
    ) -> ErrorAnalysis:
        try:
            return self._analyze(outcome, history)
        except Exception:
            logger.exception("[ANALYZE] Classification crashed, falling back to Unknown")
            return ErrorAnalysis(
                kind=ErrorKind.UNKNOWN,
                root_cause=_truncate(outcome.diagnostics or "Unclassifiable failure"),
                confidence=0.0,
                suggestion=SUGGESTIONS[ErrorKind.UNKNOWN],
            )

    def _analyze(self, outcome: VerificationOutcome, history: Sequence[AttemptRecord]) -> ErrorAnalysis:
        kind, confidence = classify(outcome)
        root_cause = extract_root_cause(outcome, kind)
        property_ref, requirement_ref = extract_refs(outcome)

        previous = [r.analysis for r in history if r.analysis is not None]
        recurring = bool(previous) and previous[-1].root_cause == root_cause
        if recurring:
            confidence = round(confidence / 2, 3)

        analysis = ErrorAnalysis(
            kind=kind,
            root_cause=root_cause,
            confidence=confidence,
            property_ref=property_ref,
            requirement_ref=requirement_ref,
            location=extract_location(outcome.diagnostics),
            suggestion=SUGGESTIONS[kind],
            recurring=recurring,
        )

        logger.info(
            f"[ANALYZE] {kind.value} ({confidence:.2f}){' recurring' if recurring else ''}: "
            f"{root_cause[:80]}"
        )
        return analysis
