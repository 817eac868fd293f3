"""
Configuration loader for RALPHLOOP.
Merges defaults with per-repo .ralphloop/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LimitsConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    verification_timeout_seconds: float = Field(default=300.0, gt=0)
    max_tokens: int = 150_000
    max_dollars: float = 10.0


class PolicyConfig(BaseModel):
    halt_on_exhaustion: bool = True
    reload_on_correction: bool = True
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class RoutingConfig(BaseModel):
    reasoner: Literal["template", "llm"] = "template"
    corrector: str = "gemini/gemini-3-flash-preview"


class WorkspaceConfig(BaseModel):
    spec_file: str = "spec.md"
    state_file: str = ".ralphloop/state.json"
    backup_dir: str = ".ralphloop/backups"
    max_backups: int = Field(default=10, ge=1)
    activity_log: str = ".ralphloop/activity.jsonl"


class SafetyConfig(BaseModel):
    enabled: bool = True
    blocked_patterns: list[str] = Field(default_factory=list)


class RalphConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(repo_path: Path | None = None) -> RalphConfig:
    """
    Load config by merging:
      1. Built-in defaults (ralphloop/config.yaml)
      2. Repo-level overrides (<repo>/.ralphloop/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".ralphloop" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    return RalphConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available to the LLM reasoner."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }


def load_environment(repo_path: Path | None = None) -> None:
    """Load provider keys from .env files. Existing variables win."""
    load_dotenv(Path.home() / ".ralphloop" / ".env")
    if repo_path:
        load_dotenv(repo_path / ".env")
