"""Durable local queue of outgoing events awaiting delivery."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from .events.model import Event
from .exceptions import MalformedIncomingEventError

LOGGER = logging.getLogger(__name__)

_COMPACT_AFTER_REMOVALS = 256


class OfflineBuffer:
    """Insertion-ordered event-id → event mapping.

    With a ``path`` every change is written to an append-only JSON-lines file
    (``{"op": "put", "event": {...}}`` / ``{"op": "remove", "id": ...}``) so
    undelivered events survive a restart. Without one the buffer lives in
    memory only.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._entries: dict[str, Event] = {}
        self._removed_since_compact = 0
        if self.path is not None:
            self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._entries

    def put(self, event: Event) -> bool:
        """Queue ``event``.

        Returns False when its id is already buffered or it cannot be encoded.
        """
        if event.id in self._entries:
            return False
        try:
            self._append_record({"op": "put", "event": event.to_wire()})
        except (TypeError, ValueError) as exc:
            LOGGER.error(
                "offline_buffer.put.unencodable",
                extra={
                    "event": "offline_buffer.put.unencodable",
                    "event_id": event.id,
                    "error": str(exc),
                },
            )
            return False
        self._entries[event.id] = event
        return True

    def pending(self) -> list[Event]:
        """Buffered events in enqueue order."""
        return list(self._entries.values())

    def peek(self) -> Event | None:
        return next(iter(self._entries.values()), None)

    def remove(self, event_id: str) -> bool:
        if self._entries.pop(event_id, None) is None:
            return False
        self._append_record({"op": "remove", "id": event_id})
        self._removed_since_compact += 1
        if not self._entries or self._removed_since_compact >= _COMPACT_AFTER_REMOVALS:
            self._compact()
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._compact()

    def _ensure_file(self) -> Path:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()
        _enforce_private_permissions(self.path)
        return self.path

    def _append_record(self, record: dict) -> None:
        if self.path is None:
            return
        target = self._ensure_file()
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")))
            handle.write("\n")

    def _compact(self) -> None:
        """Rewrite the log so it holds only live entries."""
        self._removed_since_compact = 0
        if self.path is None:
            return
        target = self._ensure_file()
        lines = [
            json.dumps({"op": "put", "event": event.to_wire()}, ensure_ascii=False)
            for event in self._entries.values()
        ]
        target.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")

    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            LOGGER.warning(
                "offline_buffer.load.failed",
                extra={
                    "event": "offline_buffer.load.failed",
                    "path": str(self.path),
                    "error": str(exc),
                },
            )
            return

        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                if record.get("op") == "remove":
                    self._entries.pop(str(record["id"]), None)
                    continue
                event = Event.from_wire(record["event"])
            except (
                ValueError,
                KeyError,
                TypeError,
                AttributeError,
                MalformedIncomingEventError,
            ) as exc:
                LOGGER.warning(
                    "offline_buffer.load.entry_invalid",
                    extra={
                        "event": "offline_buffer.load.entry_invalid",
                        "path": str(self.path),
                        "line": line_number,
                        "error": str(exc),
                    },
                )
                continue
            self._entries.setdefault(event.id, event)

        if self._entries:
            LOGGER.info(
                "offline_buffer.loaded",
                extra={
                    "event": "offline_buffer.loaded",
                    "path": str(self.path),
                    "pending": len(self._entries),
                },
            )


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix":
        return
    try:
        path.chmod(0o600)
    except OSError:
        LOGGER.warning("Unable to enforce 0600 permissions for %s", path)
