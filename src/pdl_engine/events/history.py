"""Bounded, insertion-ordered store of recent events."""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Iterator

from .model import Event

DEFAULT_HISTORY_CAP = 1000


class HistoryBuffer:
    """Keep the most recent ``cap`` events in arrival order.

    Eviction is strict FIFO by insertion order; event type and priority play no
    part in it.
    """

    def __init__(self, cap: int = DEFAULT_HISTORY_CAP) -> None:
        if cap < 1:
            raise ValueError("History cap must be at least 1.")
        self._cap = cap
        self._events: deque[Event] = deque()
        self._ids: Counter[str] = Counter()

    @property
    def cap(self) -> int:
        return self._cap

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events))

    def __contains__(self, event_id: object) -> bool:
        return isinstance(event_id, str) and self._ids[event_id] > 0

    def append(self, event: Event) -> list[Event]:
        """Add ``event`` at the tail and return whatever was evicted from the head."""
        self._events.append(event)
        self._ids[event.id] += 1
        evicted: list[Event] = []
        while len(self._events) > self._cap:
            oldest = self._events.popleft()
            self._ids[oldest.id] -= 1
            if self._ids[oldest.id] <= 0:
                del self._ids[oldest.id]
            evicted.append(oldest)
        return evicted

    def slice(self, n: int) -> list[Event]:
        """Return the ``n`` most recent events, oldest first."""
        if n <= 0:
            return []
        if n >= len(self._events):
            return list(self._events)
        return list(self._events)[-n:]

    def snapshot(self) -> list[Event]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()
        self._ids.clear()
