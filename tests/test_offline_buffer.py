"""Tests for the durable offline event buffer."""

from __future__ import annotations

import os
from pathlib import Path
import stat
import tempfile
import unittest

from pdl_engine.events.model import Event
from pdl_engine.offline_buffer import OfflineBuffer


def _event(index: int) -> Event:
    return Event.create("custom", {"n": index}, phase_context="discovery")


class OfflineBufferTests(unittest.TestCase):
    """Ordering, idempotence, and recovery from disk."""

    def test_memory_buffer_keeps_enqueue_order(self) -> None:
        buffer = OfflineBuffer()
        events = [_event(i) for i in range(3)]
        for event in events:
            self.assertTrue(buffer.put(event))
        self.assertFalse(buffer.put(events[0]))
        self.assertEqual([e.id for e in buffer.pending()], [e.id for e in events])
        self.assertIs(buffer.peek(), events[0])
        self.assertTrue(buffer.remove(events[0].id))
        self.assertFalse(buffer.remove(events[0].id))
        self.assertEqual(len(buffer), 2)

    def test_file_buffer_survives_restart(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "offline.jsonl"
            buffer = OfflineBuffer(path)
            events = [_event(i) for i in range(4)]
            for event in events:
                buffer.put(event)
            buffer.remove(events[1].id)

            reloaded = OfflineBuffer(path)

            self.assertEqual(
                [e.id for e in reloaded.pending()],
                [events[0].id, events[2].id, events[3].id],
            )
            self.assertEqual(reloaded.pending()[0], events[0])

    def test_corrupt_lines_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "offline.jsonl"
            event = _event(1)
            OfflineBuffer(path).put(event)
            with open(path, "a", encoding="utf-8") as handle:
                handle.write("{not json\n")
                handle.write('{"op": "put", "event": {"type": "x"}}\n')

            with self.assertLogs("pdl_engine.offline_buffer", level="WARNING") as logs:
                reloaded = OfflineBuffer(path)

            self.assertEqual([e.id for e in reloaded.pending()], [event.id])
            warnings = [line for line in logs.output if "entry_invalid" in line]
            self.assertEqual(len(warnings), 2)

    def test_draining_compacts_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "offline.jsonl"
            buffer = OfflineBuffer(path)
            event = _event(1)
            buffer.put(event)
            buffer.remove(event.id)
            self.assertEqual(path.read_text(encoding="utf-8"), "")

    @unittest.skipUnless(os.name == "posix", "POSIX permissions only")
    def test_file_is_private(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "offline.jsonl"
            OfflineBuffer(path).put(_event(1))
            mode = stat.S_IMODE(path.stat().st_mode)
            self.assertEqual(mode, 0o600)

    def test_unencodable_event_is_rejected_without_touching_the_log(self) -> None:
        class _Unencodable(Event):
            def to_wire(self) -> dict:
                return {"id": self.id, "payload": {"handle": object()}}

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "offline.jsonl"
            buffer = OfflineBuffer(path)
            good = _event(1)
            buffer.put(good)
            bad = _Unencodable(**vars(_event(2)))

            with self.assertLogs("pdl_engine.offline_buffer", level="ERROR") as logs:
                self.assertFalse(buffer.put(bad))

            self.assertTrue(any("put.unencodable" in line for line in logs.output))
            self.assertNotIn(bad.id, buffer)
            self.assertEqual([e.id for e in OfflineBuffer(path).pending()], [good.id])

    def test_clear(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "offline.jsonl"
            buffer = OfflineBuffer(path)
            buffer.put(_event(1))
            buffer.clear()
            self.assertEqual(len(buffer), 0)
            self.assertEqual(len(OfflineBuffer(path)), 0)


if __name__ == "__main__":
    unittest.main()
