"""
RALPHLOOP Router — Vendor-Agnostic Model Abstraction

Only the LLM reasoner talks to a model, and it always goes through here.
LiteLLM hides the vendor; the router adds the run budget, retries, and
per-task spend so the report can show which task burned the money.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from ralphloop.config_loader import RalphConfig


class BudgetExceededError(Exception):
    pass


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0

    def add(self, prompt: int, completion: int, total: int, cost: float) -> None:
        self.prompt_tokens += prompt
        self.completion_tokens += completion
        self.total_tokens += total
        self.estimated_cost += cost
        self.call_count += 1


def _usage_of(response: Any) -> tuple[int, int, int]:
    usage = getattr(response, "usage", None)
    if not usage:
        return 0, 0, 0
    return (
        getattr(usage, "prompt_tokens", 0) or 0,
        getattr(usage, "completion_tokens", 0) or 0,
        getattr(usage, "total_tokens", 0) or 0,
    )


def _cost_of(response: Any) -> float:
    try:
        return litellm.completion_cost(completion_response=response)
    except Exception as e:
        # Unknown or self-hosted models have no price entry.
        logger.debug(f"[ROUTER] No cost data for response: {e}")
        return 0.0


@dataclass
class BudgetTracker:
    """Token + dollar spend for one run, broken down by task."""
    max_tokens: int = 150_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)
    by_task: dict[str, UsageRecord] = field(default_factory=dict)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def check(self) -> None:
        if self.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.summary()}")

    def record(self, response: Any, task_id: str | None = None) -> tuple[int, float]:
        """Add one LiteLLM response to the totals. Returns (tokens, cost) for that call."""
        prompt, completion, total = _usage_of(response)
        cost = _cost_of(response)
        self.usage.add(prompt, completion, total, cost)
        if task_id is not None:
            self.by_task.setdefault(task_id, UsageRecord()).add(prompt, completion, total, cost)
        return total, cost

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
            "by_task": {
                task_id: {"tokens": u.total_tokens, "cost": round(u.estimated_cost, 4), "calls": u.call_count}
                for task_id, u in self.by_task.items()
            },
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_restricted_model(model: str) -> bool:
    """GPT-5 and o-series reasoning models reject a custom temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("gpt-5", "o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
    if not _is_restricted_model(model):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Reasoners call `router.complete(role, messages, task_id=...)`.

    One budget per run, checked before every call. An exhausted budget
    surfaces as a failed correction, which is charged like any other.
    """

    def __init__(self, config: RalphConfig):
        self.config = config
        self.budget = BudgetTracker(
            max_tokens=config.limits.max_tokens,
            max_dollars=config.limits.max_dollars,
        )
        self._role_model_map = {"corrector": config.routing.corrector}

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown reasoning role: {role}. Known: {list(self._role_model_map)}")
        return model

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_not_exception_type((BudgetExceededError, ValueError)),
        reraise=True,
    )
    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        task_id: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        Raises:
            BudgetExceededError: token or dollar budget already spent.
            ValueError: unknown role.
        """
        self.budget.check()
        model = self.resolve_model(role)

        logger.debug(f"[ROUTER] {role} → {model} for {task_id or 'run'} ({len(messages)} messages)")
        start = time.monotonic()
        response = litellm.completion(**_build_kwargs(model, messages, temperature, max_tokens, response_format))
        elapsed_ms = int((time.monotonic() - start) * 1000)

        tokens, cost = self.budget.record(response, task_id)
        logger.debug(
            f"[ROUTER] {role} complete: {tokens} tokens, ${cost:.4f}, {elapsed_ms}ms "
            f"(run total {self.budget.usage.total_tokens} tokens)"
        )

        return RouterResponse(
            content=response.choices[0].message.content or "",
            model=model,
            tokens_used=tokens,
            cost=cost,
            latency_ms=elapsed_ms,
        )
