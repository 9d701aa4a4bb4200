"""Tests for the bounded event history."""

from __future__ import annotations

import unittest

from pdl_engine.events.history import DEFAULT_HISTORY_CAP, HistoryBuffer
from pdl_engine.events.model import Event


def _event(index: int) -> Event:
    return Event.create("custom", {"n": index}, phase_context="discovery")


class HistoryBufferTests(unittest.TestCase):
    """FIFO eviction and membership."""

    def test_default_cap(self) -> None:
        self.assertEqual(HistoryBuffer().cap, DEFAULT_HISTORY_CAP)
        self.assertEqual(DEFAULT_HISTORY_CAP, 1000)

    def test_rejects_non_positive_cap(self) -> None:
        with self.assertRaises(ValueError):
            HistoryBuffer(0)

    def test_overflow_evicts_oldest_first(self) -> None:
        buffer = HistoryBuffer(1000)
        events = [_event(i) for i in range(1, 1201)]
        for event in events:
            buffer.append(event)
        self.assertEqual(len(buffer), 1000)
        snapshot = buffer.snapshot()
        self.assertEqual(snapshot[0].payload["n"], 201)
        self.assertEqual(snapshot[-1].payload["n"], 1200)
        self.assertNotIn(events[0].id, buffer)
        self.assertIn(events[200].id, buffer)

    def test_append_returns_evicted_events(self) -> None:
        buffer = HistoryBuffer(2)
        first, second, third = _event(1), _event(2), _event(3)
        self.assertEqual(buffer.append(first), [])
        self.assertEqual(buffer.append(second), [])
        self.assertEqual(buffer.append(third), [first])

    def test_length_never_exceeds_cap(self) -> None:
        buffer = HistoryBuffer(5)
        for i in range(50):
            buffer.append(_event(i))
            self.assertLessEqual(len(buffer), 5)

    def test_slice_returns_most_recent_in_order(self) -> None:
        buffer = HistoryBuffer(10)
        for i in range(6):
            buffer.append(_event(i))
        self.assertEqual([e.payload["n"] for e in buffer.slice(3)], [3, 4, 5])
        self.assertEqual(len(buffer.slice(100)), 6)
        self.assertEqual(buffer.slice(0), [])

    def test_clear(self) -> None:
        buffer = HistoryBuffer(3)
        event = _event(1)
        buffer.append(event)
        buffer.clear()
        self.assertEqual(len(buffer), 0)
        self.assertNotIn(event.id, buffer)


if __name__ == "__main__":
    unittest.main()
