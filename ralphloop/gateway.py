"""
RALPHLOOP Verification Gateway

The one call in the loop that blocks for real time. The gateway runs a
task's check and ALWAYS answers with a VerificationOutcome: timeouts,
policy denials, and crashes of the check itself are outcome data, never
exceptions. That keeps the coordinator's control flow uniform.

Checks may report structured failure detail by printing one line:

    RALPHLOOP-FAILURE {"property_id": "P1", "expected": "3", "actual": "4"}
"""

from __future__ import annotations

import json
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger
from pydantic import BaseModel, ValidationError

from ralphloop.graph import Task
from ralphloop.safety import SafetyPreCheck

_FAILURE_MARKER = re.compile(r"^RALPHLOOP-FAILURE\s+(\{.*\})\s*$", re.MULTILINE)

MAX_DIAGNOSTICS = 20_000


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

class FailureMetadata(BaseModel):
    """Structured detail about what failed, when the check can tell us."""
    property_id: str | None = None
    requirement_id: str | None = None
    expected: str | None = None
    actual: str | None = None
    statement: str | None = None


class VerificationOutcome(BaseModel):
    success: bool
    diagnostics: str = ""
    metadata: FailureMetadata | None = None
    timed_out: bool = False
    policy_blocked: bool = False
    exit_code: int | None = None
    duration_ms: int = 0

    @classmethod
    def passed(cls, diagnostics: str = "", **kwargs) -> "VerificationOutcome":
        return cls(success=True, diagnostics=diagnostics, **kwargs)

    @classmethod
    def failed(cls, diagnostics: str, **kwargs) -> "VerificationOutcome":
        return cls(success=False, diagnostics=diagnostics, **kwargs)

    @classmethod
    def timeout(cls, seconds: float, diagnostics: str = "", **kwargs) -> "VerificationOutcome":
        text = f"Verification timed out after {seconds:g} seconds"
        if diagnostics:
            text = f"{text}\n{diagnostics}"
        return cls(success=False, diagnostics=text, timed_out=True, **kwargs)

    @classmethod
    def blocked(cls, reason: str) -> "VerificationOutcome":
        return cls(
            success=False,
            diagnostics=f"PolicyBlocked: command denied by safety pre-check: {reason}",
            policy_blocked=True,
        )


# ---------------------------------------------------------------------------
# Gateway contract
# ---------------------------------------------------------------------------

@runtime_checkable
class VerificationGateway(Protocol):
    def run(self, task: Task, timeout: float) -> VerificationOutcome:
        """Run the task's check. Must honor timeout and never raise."""
        ...

    def cancel(self) -> None:
        """Abort the check currently running, if any."""
        ...


def parse_failure_metadata(text: str) -> FailureMetadata | None:
    """Pull the last RALPHLOOP-FAILURE marker out of check output."""
    matches = _FAILURE_MARKER.findall(text or "")
    if not matches:
        return None
    try:
        return FailureMetadata.model_validate(json.loads(matches[-1]))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"[GATEWAY] Ignoring malformed failure marker: {e}")
        return None


# ---------------------------------------------------------------------------
# Command-backed gateway
# ---------------------------------------------------------------------------

class CommandGateway:
    """
    Runs ``task.verify`` as a shell command in ``working_dir``.

    Each check gets its own process group so a timeout or cancel() kills
    the whole tree, not just the shell.
    """

    def __init__(
        self,
        working_dir: Path,
        safety: SafetyPreCheck | None = None,
        default_command: str | None = None,
        env: dict[str, str] | None = None,
    ):
        self.working_dir = working_dir.resolve()
        self.safety = safety
        self.default_command = default_command
        self.env = env
        self._proc: subprocess.Popen | None = None
        self._cancelled = False

    def run(self, task: Task, timeout: float) -> VerificationOutcome:
        command = task.verify or self.default_command
        if not command:
            logger.info(f"[GATEWAY] {task.id}: no verification command, nothing to check")
            return VerificationOutcome.passed("No verification command configured.")

        if self.safety is not None:
            verdict = self.safety.check(command)
            if not verdict.allowed:
                return VerificationOutcome.blocked(verdict.reason)

        self._cancelled = False
        env = {**os.environ, **(self.env or {}), "RALPHLOOP_TASK_ID": task.id}
        start = time.monotonic()

        logger.debug(f"[GATEWAY] {task.id}: {command} (timeout {timeout:g}s)")

        try:
            self._proc = subprocess.Popen(
                command,
                shell=True,
                cwd=self.working_dir,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            return VerificationOutcome.failed(f"Failed to start verification: {e}")

        try:
            stdout, stderr = self._proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill()
            stdout, stderr = self._proc.communicate()
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"[GATEWAY] {task.id}: timed out after {timeout:g}s")
            return VerificationOutcome.timeout(
                timeout,
                diagnostics=self._combine(stdout, stderr),
                duration_ms=elapsed,
            )
        except BaseException:
            self._kill()
            raise
        finally:
            returncode = self._proc.returncode
            self._proc = None

        elapsed = int((time.monotonic() - start) * 1000)
        output = self._combine(stdout, stderr)

        if self._cancelled:
            return VerificationOutcome.failed(
                f"Verification cancelled\n{output}".strip(),
                exit_code=returncode,
                duration_ms=elapsed,
            )

        if returncode == 0:
            return VerificationOutcome.passed(output, exit_code=0, duration_ms=elapsed)

        return VerificationOutcome.failed(
            output or f"Verification command exited with code {returncode}",
            metadata=parse_failure_metadata(output),
            exit_code=returncode,
            duration_ms=elapsed,
        )

    def cancel(self) -> None:
        self._cancelled = True
        if self._proc is not None and self._proc.poll() is None:
            logger.warning("[GATEWAY] Cancelling running verification")
            self._kill()

    def _kill(self) -> None:
        if self._proc is None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            self._proc.kill()

    @staticmethod
    def _combine(stdout: str | None, stderr: str | None) -> str:
        text = "\n".join(part for part in ((stdout or "").strip(), (stderr or "").strip()) if part)
        if len(text) > MAX_DIAGNOSTICS:
            text = "... (truncated)\n" + text[-MAX_DIAGNOSTICS:]
        return text
