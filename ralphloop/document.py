"""
RALPHLOOP Specification Document

An immutable, anchored view of the markdown spec. Anchors are headings of
the form

    ### Requirement R1: title
    ### Property P1: title
    ### Task T1: title

and are addressed by key ("Property P1"). A section's body runs from the
line after its heading to the next heading of the same or a higher level.
Headings inside fenced code blocks are ignored.

Edits never mutate a snapshot: replace_body() returns a new SpecDocument
with every byte outside the target body identical. SpecStore is the
file-backed side (read, backup, atomic write, lock).
"""

from __future__ import annotations

import hashlib
import re
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from loguru import logger

from ralphloop.fsutil import atomic_write_bytes, atomic_write_text, locked_file

ANCHOR_KINDS = ("Requirement", "Property", "Task")

_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_ANCHOR = re.compile(
    r"^(Requirement|Property|Task)\s+([A-Za-z0-9][\w.\-]*?)\s*(?::\s*(.*))?$",
    re.IGNORECASE,
)
_FENCE = re.compile(r"^\s{0,3}(`{3,}|~{3,})")


# ---------------------------------------------------------------------------
# Correction errors
# ---------------------------------------------------------------------------

class CorrectionError(Exception):
    """Base for anything that stops a correction from being applied."""
    pass


class AnchorNotFound(CorrectionError):
    def __init__(self, anchor: str):
        self.anchor = anchor
        super().__init__(f"Anchor not found: {anchor}")


class AnchorAmbiguous(CorrectionError):
    def __init__(self, anchor: str, count: int):
        self.anchor = anchor
        self.count = count
        super().__init__(f"Anchor is ambiguous: {anchor} appears {count} times")


class CorrectionRejected(CorrectionError):
    """Replacement was empty, broke document structure, or failed validation."""

    def __init__(self, reason: str, anchor: str | None = None):
        self.reason = reason
        self.anchor = anchor
        prefix = f"{anchor}: " if anchor else ""
        super().__init__(f"Correction rejected: {prefix}{reason}")


def anchor_key(kind: str, anchor_id: str) -> str:
    return f"{kind.capitalize()} {anchor_id}"


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Anchor:
    kind: str
    id: str
    title: str
    level: int
    line: int
    heading_start: int
    body_start: int
    body_end: int

    @property
    def key(self) -> str:
        return anchor_key(self.kind, self.id)


class SpecDocument:
    """Parsed, read-only snapshot of a spec document."""

    def __init__(self, text: str, document_id: str = "spec"):
        self.text = text
        self.document_id = document_id
        self.anchors, self.unclosed_fence = _scan(text)
        self._index: dict[str, list[Anchor]] = {}
        for anchor in self.anchors:
            self._index.setdefault(anchor.key, []).append(anchor)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __repr__(self) -> str:
        return f"SpecDocument({self.document_id!r}, anchors={len(self.anchors)})"

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()[:16]

    def keys(self) -> set[str]:
        return set(self._index)

    def of_kind(self, kind: str) -> list[Anchor]:
        kind = kind.capitalize()
        return [a for a in self.anchors if a.kind == kind]

    def find(self, key: str) -> Anchor:
        found = self._index.get(key, [])
        if not found:
            raise AnchorNotFound(key)
        if len(found) > 1:
            raise AnchorAmbiguous(key, len(found))
        return found[0]

    def body(self, key: str) -> str:
        anchor = self.find(key)
        return self.text[anchor.body_start:anchor.body_end]

    def duplicates(self) -> list[str]:
        return sorted(key for key, found in self._index.items() if len(found) > 1)

    def problems(self) -> list[str]:
        """Structural problems. Empty means well-formed."""
        issues = []
        if self.unclosed_fence is not None:
            issues.append(f"Unclosed code fence opened on line {self.unclosed_fence}")
        for key in self.duplicates():
            issues.append(f"Duplicate anchor: {key}")
        return issues

    def replace_body(self, key: str, new_body: str) -> "SpecDocument":
        """
        New snapshot with only ``key``'s body swapped. The heading line
        and the body's original leading/trailing blank space are kept.
        """
        anchor = self.find(key)
        old = self.text[anchor.body_start:anchor.body_end]
        content = new_body.strip("\n").rstrip()

        if old.strip():
            leading = old[: len(old) - len(old.lstrip("\n"))]
            trailing = old[len(old.rstrip()):]
        else:
            leading, trailing = "", old or "\n"
        if not trailing.endswith("\n") and anchor.body_end < len(self.text):
            trailing += "\n"

        head = self.text[:anchor.body_start]
        if not head.endswith("\n"):
            head += "\n"

        text = head + leading + content + trailing + self.text[anchor.body_end:]
        return SpecDocument(text, self.document_id)


def _scan(text: str) -> tuple[tuple[Anchor, ...], int | None]:
    """
    One pass over lines: track fences, collect headings with offsets,
    then close every anchor section at the next heading of level <= its own.
    """
    headings: list[tuple[int, int, int, int, str]] = []  # level, line, start, end, title
    fence: str | None = None
    fence_line: int | None = None
    offset = 0

    for lineno, line in enumerate(text.splitlines(keepends=True), start=1):
        start, offset = offset, offset + len(line)
        stripped = line.rstrip("\r\n")

        match = _FENCE.match(stripped)
        if match:
            marker = match.group(1)
            if fence is None:
                fence, fence_line = marker, lineno
            elif marker[0] == fence[0] and len(marker) >= len(fence) and not stripped.strip()[len(marker):].strip():
                fence, fence_line = None, None
            continue
        if fence is not None:
            continue

        heading = _HEADING.match(stripped)
        if heading:
            headings.append((len(heading.group(1)), lineno, start, offset, heading.group(2)))

    anchors: list[Anchor] = []
    for i, (level, lineno, start, end, title) in enumerate(headings):
        match = _ANCHOR.match(title)
        if not match or level < 2:
            continue
        body_end = len(text)
        for next_level, _, next_start, _, _ in headings[i + 1:]:
            if next_level <= level:
                body_end = next_start
                break
        anchors.append(Anchor(
            kind=match.group(1).capitalize(),
            id=match.group(2),
            title=(match.group(3) or "").strip(),
            level=level,
            line=lineno,
            heading_start=start,
            body_start=end,
            body_end=body_end,
        ))

    return tuple(anchors), fence_line


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------

class SpecStore:
    """
    The spec file on disk plus its backups.

    lock() serializes writers in-process (thread lock) and across
    processes (sidecar flock). Writes are atomic replaces.
    """

    def __init__(self, path: Path, backup_dir: Path | None = None, max_backups: int = 10):
        self.path = path
        self.backup_dir = backup_dir or path.parent / ".ralphloop" / "backups"
        self.max_backups = max_backups
        self._thread_lock = threading.Lock()

    @property
    def document_id(self) -> str:
        return self.path.name

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read(self) -> SpecDocument:
        return SpecDocument(self.path.read_text(encoding="utf-8"), self.document_id)

    def write(self, document: SpecDocument) -> None:
        atomic_write_text(self.path, document.text)

    @contextmanager
    def lock(self) -> Iterator[None]:
        with self._thread_lock:
            with locked_file(self.path):
                yield

    # -- backups --------------------------------------------------------------

    def backup(self, data: bytes | None = None) -> Path:
        """Write a timestamped copy of the current bytes and prune old ones."""
        data = self.read_bytes() if data is None else data
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backup_dir / f"{self.path.stem}.{stamp}{self.path.suffix}.bak"
        n = 1
        while target.exists():
            target = self.backup_dir / f"{self.path.stem}.{stamp}-{n}{self.path.suffix}.bak"
            n += 1
        atomic_write_bytes(target, data)
        self.prune()
        return target

    def backups(self) -> list[Path]:
        """Oldest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{self.path.stem}.*{self.path.suffix}.bak"))

    def prune(self) -> list[Path]:
        existing = self.backups()
        excess = existing[: max(0, len(existing) - self.max_backups)]
        for old in excess:
            try:
                old.unlink()
            except OSError as e:
                logger.warning(f"[SPEC] Could not prune backup {old.name}: {e}")
        return excess

    def restore(self, backup_path: Path) -> bool:
        """Put a backup's bytes back if the file differs. Returns True if it wrote."""
        data = backup_path.read_bytes()
        if self.path.exists() and self.read_bytes() == data:
            return False
        atomic_write_bytes(self.path, data)
        logger.warning(f"[SPEC] Restored {self.path.name} from {backup_path.name}")
        return True
