"""Tests for the connectivity manager against the in-process hub."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
import json
import unittest

from pdl_engine.events.bus import EventBus
from pdl_engine.events.model import Event
from pdl_engine.managers.connectivity import ConnectivityManager, ConnectivityState
from pdl_engine.task_manager import TaskManager
from pdl_engine.transport import LocalHub, Transport

ENDPOINT = "room"
FAST_RETRY = 0.01


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class _UnencodableEvent(Event):
    def to_json(self) -> str:
        raise TypeError("Object of type socket is not JSON serializable")


def _unencodable() -> Event:
    event = Event.create("custom", {"n": 0}, phase_context="discovery")
    return _UnencodableEvent(**vars(event))


class OfflineModeTests(unittest.IsolatedAsyncioTestCase):
    """No endpoint or transport means permanently offline."""

    async def test_without_transport_manager_stays_offline(self) -> None:
        manager = ConnectivityManager()
        bus = EventBus(connectivity=manager)
        await manager.start()

        event_id = bus.emit("custom", {})

        self.assertIs(manager.state, ConnectivityState.OFFLINE)
        self.assertFalse(manager.is_connected)
        self.assertIn(event_id, manager.buffer)

    async def test_without_endpoint_manager_stays_offline(self) -> None:
        manager = ConnectivityManager(LocalHub().transport(), "")
        await manager.start()
        self.assertIs(manager.state, ConnectivityState.OFFLINE)

    def test_hub_transport_satisfies_protocol(self) -> None:
        self.assertIsInstance(LocalHub().transport(), Transport)


class ConnectedModeTests(unittest.IsolatedAsyncioTestCase):
    """Connect, flush, lose the link, and reconnect."""

    async def asyncSetUp(self) -> None:
        self.hub = LocalHub()
        self.tasks = TaskManager()
        self.received: list[dict] = []
        self.listener = self.hub.transport()
        self.listener.on_receive(lambda message: self.received.append(json.loads(message)))
        await self.listener.connect(ENDPOINT)
        self.manager = ConnectivityManager(
            self.hub.transport(),
            ENDPOINT,
            reconnect_interval_seconds=FAST_RETRY,
            tasks=self.tasks,
        )
        self.bus = EventBus(connectivity=self.manager)
        self.addAsyncCleanup(self.tasks.cancel_all)
        self.addAsyncCleanup(self.manager.stop)

    def _received_ids(self, event_type: str = "custom") -> list[str]:
        return [raw["id"] for raw in self.received if raw["type"] == event_type]

    async def test_connect_announces_system_event(self) -> None:
        transitions: list[tuple[str, str]] = []
        self.manager.on_state_change(
            lambda old, new: transitions.append((old.value, new.value))
        )

        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)

        system_events = [e for e in self.bus.history if e.type == "system"]
        self.assertEqual(len(system_events), 1)
        self.assertEqual(
            dict(system_events[0].payload), {"type": "connection", "status": "connected"}
        )
        self.assertEqual(
            transitions,
            [("disconnected", "connecting"), ("connecting", "connected")],
        )
        await wait_for(lambda: len(self._received_ids("system")) == 1)

    async def test_offline_emits_flush_in_order_before_later_events(self) -> None:
        self.hub.available = False
        await self.manager.start()
        await wait_for(lambda: self.manager.state is ConnectivityState.DISCONNECTED)

        early = [self.bus.emit("custom", {"n": i}) for i in range(3)]
        self.assertEqual([e.id for e in self.manager.buffer.pending()], early)

        self.hub.available = True
        await wait_for(lambda: self.manager.is_connected)
        late = self.bus.emit("custom", {"n": 3})
        await wait_for(lambda: late in self._received_ids())

        self.assertEqual(self._received_ids(), [*early, late])
        self.assertEqual(len(self.manager.buffer), 0)

    async def test_send_failure_requeues_and_reconnects(self) -> None:
        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)

        self.hub.available = False
        lost = self.bus.emit("custom", {"n": 1})
        await wait_for(lambda: self.manager.state is ConnectivityState.DISCONNECTED)
        await wait_for(lambda: lost in self.manager.buffer)
        self.assertNotIn(lost, self._received_ids())

        self.hub.available = True
        await wait_for(lambda: self.manager.is_connected)
        await wait_for(lambda: lost in self._received_ids())
        self.assertEqual(len(self.manager.buffer), 0)

    async def test_incoming_events_reach_bus_without_echo(self) -> None:
        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)
        await wait_for(lambda: len(self._received_ids("system")) == 1)
        remote = Event.create(
            "discovery", {"finding": "remote"}, phase_context="discovery", origin_agent="peer"
        )

        with self.assertLogs("pdl_engine.managers.connectivity", level="WARNING") as logs:
            await self.listener.send("definitely not json")
            await self.listener.send(remote.to_json())
            await wait_for(lambda: remote.id in self.bus.history)

        self.assertTrue(
            any("connectivity.incoming.malformed" in line for line in logs.output)
        )
        await asyncio.sleep(0.02)
        self.assertNotIn(remote.id, [raw["id"] for raw in self.received])

    async def test_non_json_payload_is_delivered_and_writer_survives(self) -> None:
        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)

        stamped = self.bus.emit(
            "custom", {"when": datetime(2024, 5, 1, tzinfo=UTC), "tags": {"x"}}
        )
        later = self.bus.emit("custom", {"n": 2})
        await wait_for(lambda: later in self._received_ids())

        self.assertEqual(self._received_ids(), [stamped, later])
        self.assertTrue(self.tasks.is_running("connectivity.writer"))
        self.assertIs(self.manager.state, ConnectivityState.CONNECTED)

    async def test_unencodable_event_is_dropped_while_connected(self) -> None:
        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)

        with self.assertLogs("pdl_engine.managers.connectivity", level="ERROR") as logs:
            self.manager.publish(_unencodable())
            later = self.bus.emit("custom", {"n": 2})
            await wait_for(lambda: later in self._received_ids())

        self.assertTrue(any("connectivity.encode.failed" in line for line in logs.output))
        self.assertEqual(self._received_ids(), [later])
        self.assertTrue(self.tasks.is_running("connectivity.writer"))

    async def test_unencodable_buffered_event_does_not_stall_reconnect(self) -> None:
        self.hub.available = False
        await self.manager.start()
        await wait_for(lambda: self.manager.state is ConnectivityState.DISCONNECTED)
        self.manager.publish(_unencodable())
        queued = self.bus.emit("custom", {"n": 1})

        with self.assertLogs("pdl_engine.managers.connectivity", level="ERROR"):
            self.hub.available = True
            await wait_for(lambda: self.manager.is_connected)

        await wait_for(lambda: queued in self._received_ids())
        self.assertEqual(self._received_ids(), [queued])
        self.assertEqual(len(self.manager.buffer), 0)

    async def test_stop_keeps_unsent_events_buffered(self) -> None:
        await self.manager.start()
        await wait_for(lambda: self.manager.is_connected)

        await self.manager.stop()
        event_id = self.bus.emit("custom", {})

        self.assertIs(self.manager.state, ConnectivityState.DISCONNECTED)
        self.assertFalse(self.tasks.is_running("connectivity.connect"))
        self.assertIn(event_id, self.manager.buffer)


if __name__ == "__main__":
    unittest.main()
