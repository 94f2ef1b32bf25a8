from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from autoverify.models import utcnow_iso

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def emit(hook: EventHook | None, event: str, **payload: Any) -> None:
    if hook is not None:
        hook({"event": event, **payload})


def fanout(*hooks: EventHook | None) -> EventHook:
    active = [hook for hook in hooks if hook is not None]

    def _dispatch(event: dict[str, Any]) -> None:
        for hook in active:
            hook(event)

    return _dispatch


class EventLog:
    """Appends lifecycle events to a JSONL file, keeping the newest entries."""

    def __init__(self, path: Path, *, max_events: int = 500) -> None:
        self.path = path
        self.max_events = max_events

    def __call__(self, event: dict[str, Any]) -> None:
        self.record(event)

    def record(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", utcnow_iso())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._trim()
        except OSError as exc:
            logger.warning("Could not append to event log %s: %s", self.path, exc)

    def _trim(self) -> None:
        lines = self.path.read_text(encoding="utf-8").splitlines()
        if len(lines) <= self.max_events:
            return
        self.path.write_text("\n".join(lines[-self.max_events:]) + "\n", encoding="utf-8")

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
        return events
