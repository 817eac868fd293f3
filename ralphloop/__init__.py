"""
RALPHLOOP — Task Orchestration & Self-Healing Engine

Runs a dependency graph of spec tasks, verifies each one, and repairs
the specification when verification fails. Bounded. Deterministic.
Halts and escalates when it runs out of attempts.
"""

__version__ = "0.3.0"
__codename__ = "RALPHLOOP"
__tagline__ = "Fail. Analyze. Patch. Retry. Halt."
