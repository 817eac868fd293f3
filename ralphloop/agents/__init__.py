"""
RALPHLOOP Reasoning Collaborators

A reasoner is asked one question: given this failure and this spec
section, what should the section say instead? It answers with a
Proposal. It never touches the document; the synthesizer checks the
proposal and the applier writes it.

Two flavors:
  - TemplateReasoner: deterministic, offline, the default
  - CorrectorAgent: LLM-backed, routed through the Router
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from ralphloop.analyzer import ErrorAnalysis
from ralphloop.graph import Task
from ralphloop.router import Router, RouterResponse


class ReasoningContext(BaseModel):
    """Everything a reasoner may look at for one correction."""
    task: Task
    analysis: ErrorAnalysis
    anchor: str
    current_body: str
    attempt: int = 1
    document_id: str = ""
    previous_root_causes: list[str] = Field(default_factory=list)
    diagnostics: str = ""


class Proposal(BaseModel):
    replacement: str = ""
    rationale: str = ""
    confidence: float | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class BaseReasoner(ABC):
    name: str = "unknown"

    @abstractmethod
    def propose(self, context: ReasoningContext) -> Proposal:
        ...


class BaseAgent(BaseReasoner):
    """
    Router-backed reasoner.

    Subclasses define:
      - role: str: maps to router model
      - system_prompt: str: contract for the model
      - build_messages(): constructs the chat messages
      - parse_response(): extracts the Proposal
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    def propose(self, context: ReasoningContext, **kwargs) -> Proposal:
        """Build messages → call model → parse."""
        messages = self.build_messages(context)
        response = self.router.complete(role=self.role, messages=messages, task_id=context.task.id, **kwargs)
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: ReasoningContext) -> list[dict[str, str]]:
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: ReasoningContext) -> Proposal:
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
