"""Deterministic reasoner: keeps the section and appends a correction note."""

from __future__ import annotations

from ralphloop.agents import BaseReasoner, Proposal, ReasoningContext

NOTE_MARKER = "> **Correction note"


def render_note(context: ReasoningContext) -> str:
    analysis = context.analysis
    lines = [
        f"{NOTE_MARKER} (attempt {context.attempt}, {analysis.kind.value}):** {analysis.root_cause}",
    ]
    if analysis.location:
        lines.append(f"> Location: `{analysis.location}`")
    if analysis.suggestion:
        lines.append(f"> Guidance: {analysis.suggestion}")
    if analysis.recurring:
        lines.append("> This failure repeated the previous attempt; state the expected behavior explicitly.")
    return "\n".join(lines)


class TemplateReasoner(BaseReasoner):
    name = "template"

    def propose(self, context: ReasoningContext) -> Proposal:
        body = context.current_body.strip("\n").rstrip()
        note = render_note(context)
        replacement = f"{body}\n\n{note}" if body else note
        return Proposal(
            replacement=replacement,
            rationale=f"Root cause: {context.analysis.root_cause}. {context.analysis.suggestion}".strip(),
            confidence=context.analysis.confidence,
        )
