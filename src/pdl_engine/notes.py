"""Markdown development notes written from ``development_note`` events."""

from __future__ import annotations

import logging
from pathlib import Path
import threading

from .events.model import Event

LOGGER = logging.getLogger(__name__)

_HEADER = "# Development Notes\n"


def format_note(event: Event) -> str:
    """Render one event as a markdown section."""
    lines = [
        f"## {event.timestamp.isoformat()} [{event.phase_context}] {event.brief}",
        "",
        f"- type: {event.type}",
        f"- agent: {event.origin_agent}",
    ]
    if event.project_id:
        lines.append(f"- project: {event.project_id}")
    note = event.payload.get("note")
    if note:
        lines.extend(["", str(note).strip()])
    if event.references:
        lines.append("")
        lines.append("References:")
        lines.extend(f"- {reference}" for reference in event.references)
    return "\n".join(lines) + "\n\n"


class DevelopmentNotes:
    """Append-only markdown log of development notes.

    Without a path, notes are only logged.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        self.write(event)

    def write(self, event: Event) -> None:
        if self.path is None:
            LOGGER.info(
                "notes.logged",
                extra={
                    "event": "notes.logged",
                    "event_id": event.id,
                    "phase": event.phase_context,
                    "brief": event.brief,
                },
            )
            return
        entry = format_note(event)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", encoding="utf-8") as handle:
                if is_new:
                    handle.write(_HEADER + "\n")
                handle.write(entry)
        LOGGER.debug(
            "notes.written",
            extra={"event": "notes.written", "event_id": event.id, "path": str(self.path)},
        )

    def read(self) -> str:
        if self.path is None or not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")
