"""
RALPHLOOP Safety Pre-Check

Static screen over a verification command before the gateway runs it.
A deny is not an error: the gateway turns it into a PolicyBlocked
failure outcome so the loop never re-runs the same unsafe action.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

Severity = Literal["low", "medium", "high", "critical"]

_SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


@dataclass(frozen=True)
class SafetyRule:
    category: str
    pattern: re.Pattern[str]
    severity: Severity
    description: str


def _rule(category: str, pattern: str, severity: Severity, description: str) -> SafetyRule:
    return SafetyRule(category, re.compile(pattern, re.IGNORECASE), severity, description)


DEFAULT_RULES: list[SafetyRule] = [
    # File deletion
    _rule("file_deletion", r"rm\s+-(?:rf|fr)\b", "critical", "Recursive force deletion (rm -rf)"),
    _rule("file_deletion", r"del\s+/[fs]", "critical", "Force deletion (del /f or /s)"),
    _rule("file_deletion", r"Remove-Item\s+-Recurse\s+-Force", "critical", "PowerShell recursive force deletion"),
    _rule("file_deletion", r"rmdir\s+/s", "high", "Directory tree deletion"),
    _rule("file_deletion", r"\bmkfs(?:\.\w+)?\b", "critical", "Filesystem format"),
    # Database modification
    _rule("db_modification", r"DROP\s+(?:TABLE|DATABASE|SCHEMA)", "critical", "Database DROP operation"),
    _rule("db_modification", r"TRUNCATE\s+TABLE", "critical", "Table truncation"),
    _rule("db_modification", r"DELETE\s+FROM\s+\w+\s*;", "critical", "DELETE without WHERE clause"),
    # Credentials in the command line
    _rule("credential_exposure", r"password\s*=\s*['\"][^'\"]+['\"]", "critical", "Password in command"),
    _rule("credential_exposure", r"token\s*=\s*['\"][^'\"]+['\"]", "critical", "Token in command"),
    _rule("credential_exposure", r"api[_-]?key\s*=\s*['\"][^'\"]+['\"]", "critical", "API key in command"),
    _rule("credential_exposure", r"secret\s*=\s*['\"][^'\"]+['\"]", "critical", "Secret in command"),
    _rule("credential_exposure", r"\b[A-Za-z0-9]{40,}\b", "medium", "Possible API key or token"),
    # Network exposure
    _rule("network_exposure", r"--host\s+0\.0\.0\.0", "high", "Exposing service on all interfaces"),
    _rule("network_exposure", r"\b0\.0\.0\.0\b", "medium", "Binding to all network interfaces"),
]


@dataclass(frozen=True)
class SafetyViolation:
    category: str
    severity: Severity
    description: str
    pattern: str


@dataclass
class SafetyVerdict:
    allowed: bool
    reason: str = ""
    violations: list[SafetyViolation] = field(default_factory=list)

    @property
    def risk_level(self) -> Severity:
        if not self.violations:
            return "low"
        return max((v.severity for v in self.violations), key=_SEVERITY_RANK.__getitem__)


class SafetyPreCheck:
    """
    Pattern-based command screen.

    Violations at or above ``block_at`` deny the command. Lower ones are
    reported on the verdict but the command is allowed.
    """

    def __init__(
        self,
        blocked_patterns: list[str] | None = None,
        block_at: Severity = "high",
        rules: list[SafetyRule] | None = None,
    ):
        self.rules = list(rules if rules is not None else DEFAULT_RULES)
        for pattern in blocked_patterns or []:
            self.rules.append(_rule("configured", pattern, "critical", f"Blocked pattern: {pattern}"))
        self.block_at = block_at

    def check(self, command: str) -> SafetyVerdict:
        violations = [
            SafetyViolation(r.category, r.severity, r.description, r.pattern.pattern)
            for r in self.rules
            if r.pattern.search(command)
        ]
        threshold = _SEVERITY_RANK[self.block_at]
        blocking = [v for v in violations if _SEVERITY_RANK[v.severity] >= threshold]

        if blocking:
            reason = "; ".join(v.description for v in blocking)
            logger.warning(f"[SAFETY] Denied command: {reason}")
            return SafetyVerdict(allowed=False, reason=reason, violations=violations)

        if violations:
            logger.debug(f"[SAFETY] Allowed with {len(violations)} low-severity findings")
        return SafetyVerdict(allowed=True, violations=violations)
