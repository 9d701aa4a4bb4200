"""Tests for the SQLite phase store."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
import tempfile
import unittest

from pdl_engine.events.model import Event
from pdl_engine.exceptions import PersistenceError, PersistenceIntegrityError
from pdl_engine.models import PhaseStatus, ProjectStatus
from pdl_engine.persistence import SQLiteStore


class SQLiteStoreTests(unittest.IsolatedAsyncioTestCase):
    """Projects, phases, agents, and the event log."""

    async def asyncSetUp(self) -> None:
        self.store = SQLiteStore()
        self.addAsyncCleanup(self.store.close)
        self.project = await self.store.create_project("Atlas", "atlas", "ada")

    async def _lifecycle(self) -> None:
        await self.store.create_phase(
            self.project.id, "discovery", status=PhaseStatus.ACTIVE
        )
        await self.store.create_phase(self.project.id, "planning")
        await self.store.create_phase(self.project.id, "development")

    async def test_project_lookup(self) -> None:
        self.assertEqual(await self.store.get_project(self.project.id), self.project)
        self.assertEqual(await self.store.get_project_by_slug("atlas"), self.project)
        self.assertIsNone(await self.store.get_project("missing"))
        self.assertEqual(self.project.status, ProjectStatus.ACTIVE)
        self.assertEqual(
            [p.slug for p in await self.store.list_projects(ProjectStatus.ACTIVE)],
            ["atlas"],
        )

    async def test_duplicate_slug_is_an_integrity_error(self) -> None:
        with self.assertRaises(PersistenceIntegrityError):
            await self.store.create_project("Other", "atlas", "bob")

    async def test_phases_keep_creation_order(self) -> None:
        await self._lifecycle()
        phases = await self.store.get_phases(self.project.id)
        self.assertEqual([p.name for p in phases], ["discovery", "planning", "development"])
        current = await self.store.get_current_phase(self.project.id)
        assert current is not None
        self.assertEqual(current.name, "discovery")
        self.assertTrue(current.is_active)

    async def test_schema_rejects_second_active_phase(self) -> None:
        await self._lifecycle()
        planning = await self.store.get_phase_by_name(self.project.id, "planning")
        assert planning is not None
        with self.assertRaises(PersistenceIntegrityError):
            await self.store.update_phase_status(planning.id, PhaseStatus.ACTIVE)
        with self.assertRaises(PersistenceIntegrityError):
            await self.store.create_phase(
                self.project.id, "launch", status=PhaseStatus.ACTIVE
            )

    async def test_apply_transition_moves_active_flag(self) -> None:
        await self._lifecycle()
        discovery = await self.store.get_phase_by_name(self.project.id, "discovery")
        planning = await self.store.get_phase_by_name(self.project.id, "planning")
        assert discovery is not None and planning is not None
        at = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

        completed, activated = await self.store.apply_transition(
            discovery.id,
            planning.id,
            at=at,
            gate_approved=True,
            gate_reviewer="ada",
            gate_notes="looks good",
        )

        self.assertIs(completed.status, PhaseStatus.COMPLETED)
        self.assertEqual(completed.end_date, at)
        self.assertTrue(completed.gate_approved)
        self.assertEqual(completed.gate_reviewer, "ada")
        self.assertEqual(completed.gate_review_date, at)
        self.assertIs(activated.status, PhaseStatus.ACTIVE)
        self.assertEqual(activated.start_date, at)

    async def test_apply_transition_rolls_back_when_target_invalid(self) -> None:
        await self._lifecycle()
        discovery = await self.store.get_phase_by_name(self.project.id, "discovery")
        assert discovery is not None

        with self.assertRaises(PersistenceIntegrityError):
            await self.store.apply_transition(
                discovery.id,
                "no-such-phase",
                at=datetime.now(UTC),
                gate_approved=False,
                gate_reviewer=None,
                gate_notes=None,
            )

        current = await self.store.get_current_phase(self.project.id)
        assert current is not None
        self.assertEqual(current.id, discovery.id)
        self.assertIsNone(current.end_date)

    async def test_apply_transition_requires_active_source(self) -> None:
        await self._lifecycle()
        planning = await self.store.get_phase_by_name(self.project.id, "planning")
        development = await self.store.get_phase_by_name(self.project.id, "development")
        assert planning is not None and development is not None
        with self.assertRaises(PersistenceIntegrityError):
            await self.store.apply_transition(
                planning.id,
                development.id,
                at=datetime.now(UTC),
                gate_approved=False,
                gate_reviewer=None,
                gate_notes=None,
            )

    async def test_record_gate_review(self) -> None:
        await self._lifecycle()
        planning = await self.store.get_phase_by_name(self.project.id, "planning")
        assert planning is not None
        updated = await self.store.record_gate_review(
            planning.id, approved=False, reviewer="bob", notes="needs work", at=datetime.now(UTC)
        )
        self.assertFalse(updated.gate_approved)
        self.assertEqual(updated.gate_notes, "needs work")
        with self.assertRaises(PersistenceError):
            await self.store.record_gate_review(
                "missing", approved=True, reviewer=None, notes=None, at=datetime.now(UTC)
            )

    async def test_agents_and_team(self) -> None:
        agent = await self.store.register_agent(
            "Ada", "human", email="ada@example.com", specializations=["research"]
        )
        self.assertEqual(agent.specializations, ("research",))
        self.assertEqual(await self.store.get_agent(agent.id), agent)

        member = await self.store.assign_agent(
            self.project.id, agent.id, role="lead", capacity_percentage=50
        )
        team = await self.store.get_project_team(self.project.id)

        self.assertEqual(member.role, "lead")
        self.assertEqual([m.agent.id for m in team], [agent.id])
        self.assertEqual(team[0].capacity_percentage, 50)
        with self.assertRaises(ValueError):
            await self.store.assign_agent(self.project.id, agent.id, capacity_percentage=0)
        with self.assertRaises(PersistenceIntegrityError):
            await self.store.assign_agent(self.project.id, agent.id)

    async def test_event_log_is_idempotent_and_filterable(self) -> None:
        base = datetime(2024, 1, 1, tzinfo=UTC)
        events = []
        for offset, (event_type, agent) in enumerate(
            [("discovery", "ada"), ("custom", "bob"), ("discovery", "bob")]
        ):
            event = Event.create(
                event_type,
                {"finding": f"f{offset}"},
                phase_context="discovery",
                origin_agent=agent,
                project_id=self.project.id,
            )
            events.append(
                Event(
                    id=event.id,
                    type=event.type,
                    timestamp=base + timedelta(minutes=offset),
                    phase_context=event.phase_context,
                    payload=event.payload,
                    brief=event.brief,
                    references=("ref-1",),
                    origin_agent=event.origin_agent,
                    project_id=event.project_id,
                )
            )
        for event in events:
            self.assertTrue(await self.store.log_event(event))
        self.assertFalse(await self.store.log_event(events[0]))

        stored = await self.store.get_events(self.project.id)
        self.assertEqual([e.id for e in stored], [e.id for e in reversed(events)])
        self.assertEqual(stored[-1], events[0])

        discovery = await self.store.get_events(self.project.id, event_type="discovery")
        self.assertEqual(len(discovery), 2)
        by_bob = await self.store.get_events(self.project.id, origin_agent="bob", limit=1)
        self.assertEqual([e.id for e in by_bob], [events[2].id])

    async def test_concurrent_phase_creation_is_serialized(self) -> None:
        names = [f"phase-{i}" for i in range(5)]
        await asyncio.gather(
            *(self.store.create_phase(self.project.id, name) for name in names)
        )
        phases = await self.store.get_phases(self.project.id)
        self.assertCountEqual([p.name for p in phases], names)

    async def test_log_event_requires_project(self) -> None:
        event = Event.create("custom", {}, phase_context="discovery")
        with self.assertRaises(PersistenceError):
            await self.store.log_event(event)


class FileBackedStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_open_is_idempotent_and_creates_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "state" / "pdl.sqlite3"
            store = SQLiteStore(path)
            self.assertFalse(path.exists())
            try:
                await store.open()
                await store.open()
                self.assertTrue(path.exists())
                self.assertEqual(await store.list_projects(), [])
            finally:
                await store.close()

    async def test_data_survives_reopen(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "state" / "pdl.sqlite3"
            store = SQLiteStore(path)
            project = await store.create_project("Atlas", "atlas", "ada")
            await store.close()

            reopened = SQLiteStore(path)
            try:
                self.assertEqual(await reopened.get_project_by_slug("atlas"), project)
            finally:
                await reopened.close()


if __name__ == "__main__":
    unittest.main()
