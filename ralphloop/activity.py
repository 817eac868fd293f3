"""
RALPHLOOP Activity Recorder

A small synchronous event bus plus a JSONL subscriber. Everything the
loop does worth auditing (transitions, verifications, corrections,
halts) is emitted here. Recording is best-effort: a subscriber that
fails is logged and skipped, and never aborts a run.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class ActivityEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_id: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActivityBus:
    """Synchronous fan-out to subscribers."""

    def __init__(self):
        self._subscribers: List[Callable[[ActivityEvent], None]] = []

    def subscribe(self, callback: Callable[[ActivityEvent], None]) -> None:
        self._subscribers.append(callback)

    def record(self, event: ActivityEvent) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[ACTIVITY] Subscriber failed on {event.event_type}: {e}")

    def emit(self, event_type: str, task_id: str | None = None, **payload: Any) -> ActivityEvent:
        """Build an ActivityEvent and record it."""
        event = ActivityEvent(event_type=event_type, task_id=task_id, payload=payload)
        self.record(event)
        return event


class JsonlActivityLog:
    """Appends one JSON object per event. Buffers up to ``batch_size`` lines."""

    def __init__(self, path: Path, batch_size: int = 1):
        self.path = path
        self.batch_size = batch_size
        self._buffer: list[str] = []

    def __call__(self, event: ActivityEvent) -> None:
        self._buffer.append(json.dumps(event.model_dump(mode="json"), sort_keys=True) + "\n")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.writelines(self._buffer)
        self._buffer.clear()

    def read(self) -> list[ActivityEvent]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [ActivityEvent.model_validate_json(line) for line in f if line.strip()]
