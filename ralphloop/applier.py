"""
RALPHLOOP Correction Applier

The only writer of the spec document. One correction at a time, all or
nothing:

    lock -> backup -> locate anchor -> check drift -> replace body -> validate
         -> atomic write        (any failure: restore backup, reject)
"""

from __future__ import annotations

from typing import Callable, Sequence

from loguru import logger
from pydantic import BaseModel

from ralphloop.document import (
    CorrectionError,
    CorrectionRejected,
    SpecDocument,
    SpecStore,
)
from ralphloop.synthesizer import CorrectionPlan

# Returns a list of problems; empty means the document is acceptable.
Validator = Callable[[SpecDocument], list[str]]


class ApplyResult(BaseModel):
    document: str
    anchor: str
    backup_path: str
    before_checksum: str
    after_checksum: str
    drifted: bool = False


class CorrectionApplier:
    def __init__(self, validators: Sequence[Validator] = ()):
        self.validators = list(validators)

    def apply(self, plan: CorrectionPlan, store: SpecStore) -> ApplyResult:
        if plan.document != store.document_id:
            raise CorrectionRejected(
                f"plan targets {plan.document}, store holds {store.document_id}", plan.anchor
            )

        with store.lock():
            original = store.read_bytes()
            backup_path = store.backup(original)
            try:
                before = SpecDocument(original.decode("utf-8"), store.document_id)
                before.find(plan.anchor)
                drifted = self._check_drift(before, plan)
                after = before.replace_body(plan.anchor, plan.replacement)
                self._validate(before, after, plan)
                store.write(after)
            except CorrectionError:
                store.restore(backup_path)
                raise
            except (OSError, ValueError) as e:
                store.restore(backup_path)
                raise CorrectionRejected(str(e), plan.anchor) from e

        logger.info(f"[APPLY] {plan.anchor} rewritten in {store.document_id} (backup {backup_path.name})")
        return ApplyResult(
            document=store.document_id,
            anchor=plan.anchor,
            backup_path=str(backup_path),
            before_checksum=before.checksum,
            after_checksum=after.checksum,
            drifted=drifted,
        )

    def _validate(self, before: SpecDocument, after: SpecDocument, plan: CorrectionPlan) -> None:
        problems = after.problems()
        for validator in self.validators:
            problems.extend(validator(after))
        if problems:
            raise CorrectionRejected("; ".join(problems), plan.anchor)

        missing = before.keys() - after.keys()
        if missing:
            raise CorrectionRejected(f"edit removes anchors: {', '.join(sorted(missing))}", plan.anchor)

        if plan.anchor not in after or after.body(plan.anchor).strip() != plan.replacement.strip():
            raise CorrectionRejected("replacement does not round-trip", plan.anchor)

    @staticmethod
    def _check_drift(before: SpecDocument, plan: CorrectionPlan) -> bool:
        """True when the document moved on since synthesis. Rejects if the target section itself changed."""
        if not plan.base_checksum or before.checksum == plan.base_checksum:
            return False
        if plan.base_body and before.body(plan.anchor) != plan.base_body:
            raise CorrectionRejected("section changed since the correction was synthesized", plan.anchor)
        logger.warning(f"[APPLY] {before.document_id} changed since synthesis; {plan.anchor} untouched, applying")
        return True
