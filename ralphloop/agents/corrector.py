"""
🔧 Patch — The Corrector

Only appears when verification fails. Rewrites ONE spec section so the
next attempt has a fighting chance. Hardened against truncated and
malformed LLM JSON responses.
"""

from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from ralphloop.agents import BaseAgent, Proposal, ReasoningContext
from ralphloop.router import RouterResponse


class CorrectorAgent(BaseAgent):
    role = "corrector"
    name = "llm"

    system_prompt = """You are Patch, the spec corrector inside RALPHLOOP.

You are invoked ONLY when a task's verification fails.
You rewrite the BODY of exactly one section of a markdown specification
so the task can be implemented and verified on the next attempt.

You MUST respond with valid JSON only. No markdown wrapping.

Output schema:
{
  "replacement": "The full new body of the section (markdown, no heading line)",
  "rationale": "One sentence: what was wrong and what the new text fixes",
  "confidence": 0.0
}

CRITICAL RULES:
1. Change only what the failure requires. Keep every existing statement you do not need to fix.
2. NEVER include a heading line (#, ##, ###...) in the replacement.
3. NEVER introduce new Requirement/Property/Task anchors and never rename existing ones.
4. Close every code fence you open.
5. If tokens run out, prioritize completing the JSON structure.
"""

    # ------------------------------------------------------------------ #
    # Prompt Construction
    # ------------------------------------------------------------------ #

    def build_messages(self, context: ReasoningContext) -> list[dict[str, str]]:
        analysis = context.analysis
        diagnostics = (context.diagnostics or "")[:1000]  # Hard cap for token safety

        previous = ""
        if context.previous_root_causes:
            previous = "\n\nEARLIER ROOT CAUSES (did not get fixed):\n"
            for i, cause in enumerate(context.previous_root_causes[-2:], 1):
                previous += f"{i}. {cause}\n"

        user_content = f"""VERIFICATION FAILED (Attempt {context.attempt})

Task {context.task.id}: {context.task.description}
{context.task.details}

Failure kind: {analysis.kind.value} (confidence {analysis.confidence:.2f})
Root cause: {analysis.root_cause}
Location: {analysis.location or "unknown"}
Suggested direction: {analysis.suggestion}

DIAGNOSTICS (TRUNCATED):
{diagnostics}
{previous}
SECTION TO REWRITE: {context.anchor}
--- current body ---
{context.current_body}
--- end ---

Produce the JSON with the full replacement body."""

        return [self._system_msg(), self._user_msg(user_content)]

    # ------------------------------------------------------------------ #
    # Response Parsing
    # ------------------------------------------------------------------ #

    def parse_response(self, response: RouterResponse, context: ReasoningContext) -> Proposal:
        content = self._strip_markdown(response.content.strip())

        try:
            result = json.loads(content)
        except json.JSONDecodeError:
            logger.warning("[PATCH] Malformed JSON detected. Attempting recovery...")
            result = self._recover_json(content)

        if not isinstance(result, dict):
            result = {}

        confidence = result.get("confidence")
        try:
            confidence = max(0.0, min(1.0, float(confidence))) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None

        proposal = Proposal(
            replacement=str(result.get("replacement") or ""),
            rationale=str(result.get("rationale") or ""),
            confidence=confidence,
            extra={
                "_agent": "corrector",
                "_model": response.model,
                "_tokens": response.tokens_used,
                "parse_error": bool(result.get("parse_error", False)),
            },
        )

        logger.info(
            f"[PATCH] {context.anchor}: {proposal.rationale[:60] or 'no rationale'}... "
            f"({len(proposal.replacement)} chars)"
        )
        return proposal

    # ------------------------------------------------------------------ #
    # JSON Recovery Logic
    # ------------------------------------------------------------------ #

    def _strip_markdown(self, content: str) -> str:
        """Remove ``` or ```json wrappers."""
        if content.startswith("```"):
            content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content.strip())
        return content.strip()

    def _recover_json(self, content: str) -> dict[str, Any]:
        """
        Recover the largest valid JSON object from a noisy or truncated response.
        1. Extract the first full {...} block.
        2. Balance quotes, brackets, and braces.
        3. Give up with an empty replacement, which the synthesizer rejects.
        """
        extracted = self._extract_outer_json(content)
        if extracted:
            try:
                return json.loads(extracted)
            except json.JSONDecodeError:
                pass

        balanced = self._balance_json(content)
        if balanced:
            try:
                return json.loads(balanced)
            except json.JSONDecodeError:
                pass

        logger.error("[PATCH] JSON recovery failed. Returning empty proposal.")
        rationale = re.search(r'"rationale"\s*:\s*"([^"]+)"', content)
        return {
            "replacement": "",
            "rationale": rationale.group(1) if rationale else "Truncated response",
            "parse_error": True,
        }

    def _extract_outer_json(self, text: str) -> str | None:
        """First top-level JSON object, tracking braces outside strings."""
        start = text.find("{")
        if start == -1:
            return None

        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        return None

    def _balance_json(self, text: str) -> str | None:
        repaired = text
        if repaired.count('"') % 2 != 0:
            repaired += '"'
        if repaired.count("[") > repaired.count("]"):
            repaired += "]" * (repaired.count("[") - repaired.count("]"))
        if repaired.count("{") > repaired.count("}"):
            repaired += "}" * (repaired.count("{") - repaired.count("}"))
        return repaired if repaired != text else None
