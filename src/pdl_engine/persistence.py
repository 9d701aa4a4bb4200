"""Durable storage for projects, phases, agents, and events.

The engine depends only on the ``PhaseStore`` protocol. ``SQLiteStore`` is the
bundled implementation: one ``aiosqlite`` connection, opened on first use, with
statements serialized by an ``asyncio.Lock`` so multi-statement operations
never interleave.

The single-active-phase invariant is also enforced by the schema through a
partial unique index, so a buggy caller cannot commit two active phases.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import aiosqlite

from .events.model import Event
from .exceptions import PersistenceError, PersistenceIntegrityError
from .models import (
    Agent,
    Phase,
    PhaseStatus,
    Project,
    ProjectStatus,
    TeamMember,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    slug        TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL,
    description TEXT,
    status      TEXT NOT NULL DEFAULT 'active'
                CHECK(status IN ('active', 'paused', 'completed', 'archived')),
    created_by  TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS phases (
    id               TEXT PRIMARY KEY,
    project_id       TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name             TEXT NOT NULL,
    display_name     TEXT,
    position         INTEGER NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending'
                     CHECK(status IN ('pending', 'active', 'completed', 'blocked', 'on_hold')),
    start_date       TEXT,
    end_date         TEXT,
    planned_end_date TEXT,
    gate_approved    INTEGER NOT NULL DEFAULT 0,
    gate_reviewer    TEXT,
    gate_notes       TEXT,
    gate_review_date TEXT,
    UNIQUE(project_id, name)
);

-- At most one active phase per project.
CREATE UNIQUE INDEX IF NOT EXISTS idx_phases_one_active
    ON phases(project_id) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS agents (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    email           TEXT UNIQUE,
    type            TEXT NOT NULL,
    specializations TEXT NOT NULL DEFAULT '[]',
    status          TEXT NOT NULL DEFAULT 'available'
);

CREATE TABLE IF NOT EXISTS project_agents (
    project_id          TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    agent_id            TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    role                TEXT,
    capacity_percentage INTEGER NOT NULL DEFAULT 100,
    assigned_at         TEXT NOT NULL,
    PRIMARY KEY (project_id, agent_id)
);

CREATE TABLE IF NOT EXISTS events (
    id            TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    type          TEXT NOT NULL,
    phase_context TEXT NOT NULL,
    origin_agent  TEXT NOT NULL,
    timestamp     TEXT NOT NULL,
    brief         TEXT NOT NULL,
    payload       TEXT NOT NULL DEFAULT '{}',
    refs          TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_events_project_timestamp ON events(project_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_project_type ON events(project_id, type);
"""


class PhaseStore(Protocol):
    """Persistence operations the engine composes. Each call is atomic on its own."""

    async def create_project(
        self,
        name: str,
        slug: str,
        created_by: str,
        description: str | None = None,
    ) -> Project: ...

    async def get_project(self, project_id: str) -> Project | None: ...

    async def get_project_by_slug(self, slug: str) -> Project | None: ...

    async def create_phase(
        self,
        project_id: str,
        name: str,
        *,
        display_name: str | None = None,
        status: PhaseStatus = PhaseStatus.PENDING,
        start_date: datetime | None = None,
        planned_end_date: datetime | None = None,
    ) -> Phase: ...

    async def get_phase_by_name(self, project_id: str, name: str) -> Phase | None: ...

    async def get_phases(self, project_id: str) -> list[Phase]: ...

    async def get_current_phase(self, project_id: str) -> Phase | None: ...

    async def update_phase_status(
        self,
        phase_id: str,
        status: PhaseStatus,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Phase: ...

    async def apply_transition(
        self,
        from_phase_id: str,
        to_phase_id: str,
        *,
        at: datetime,
        gate_approved: bool,
        gate_reviewer: str | None,
        gate_notes: str | None,
    ) -> tuple[Phase, Phase]: ...

    async def record_gate_review(
        self,
        phase_id: str,
        *,
        approved: bool,
        reviewer: str | None,
        notes: str | None,
        at: datetime,
    ) -> Phase: ...

    async def log_event(self, event: Event) -> bool: ...

    async def get_events(
        self,
        project_id: str,
        *,
        event_type: str | None = None,
        phase_context: str | None = None,
        origin_agent: str | None = None,
        limit: int | None = None,
    ) -> list[Event]: ...


def _now() -> datetime:
    return datetime.now(UTC)


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_text(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _row_to_project(row: aiosqlite.Row) -> Project:
    return Project(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        status=ProjectStatus(row["status"]),
        created_by=row["created_by"],
        description=row["description"],
        created_at=_from_text(row["created_at"]),
    )


def _row_to_phase(row: aiosqlite.Row) -> Phase:
    return Phase(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        status=PhaseStatus(row["status"]),
        display_name=row["display_name"] or row["name"],
        start_date=_from_text(row["start_date"]),
        end_date=_from_text(row["end_date"]),
        planned_end_date=_from_text(row["planned_end_date"]),
        gate_approved=bool(row["gate_approved"]),
        gate_reviewer=row["gate_reviewer"],
        gate_notes=row["gate_notes"],
        gate_review_date=_from_text(row["gate_review_date"]),
    )


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    try:
        specializations = tuple(json.loads(row["specializations"] or "[]"))
    except ValueError:
        specializations = ()
    return Agent(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        email=row["email"],
        specializations=specializations,
        status=row["status"],
    )


def _row_to_event(row: aiosqlite.Row) -> Event:
    return Event.from_wire(
        {
            "id": row["id"],
            "type": row["type"],
            "timestamp": row["timestamp"],
            "phase_context": row["phase_context"],
            "payload": json.loads(row["payload"] or "{}"),
            "brief": row["brief"],
            "references": json.loads(row["refs"] or "[]"),
            "origin_agent": row["origin_agent"],
            "project_id": row["project_id"],
        }
    )


async def open_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database with the PRAGMAs the store relies on."""
    target = str(db_path)
    if target != ":memory:":
        path = Path(target).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        target = str(path)
    db = await aiosqlite.connect(target, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA busy_timeout = 5000")
    await db.execute("PRAGMA foreign_keys = ON")
    if target != ":memory:":
        await db.execute("PRAGMA journal_mode = WAL")
    return db


class SQLiteStore:
    """SQLite-backed ``PhaseStore`` with project, agent, and event tables."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the connection and apply the schema; later calls are no-ops."""
        async with self._session():
            pass

    async def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            db = await open_db(self.db_path)
            try:
                await db.executescript(_SCHEMA)
                await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            except aiosqlite.Error as exc:
                await db.close()
                LOGGER.error(
                    "persistence.open.failed",
                    extra={
                        "event": "persistence.open.failed",
                        "path": self.db_path,
                        "error": str(exc),
                    },
                )
                raise PersistenceError(str(exc)) from exc
            self._db = db
        return self._db

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            try:
                yield await self._connection()
            except aiosqlite.IntegrityError as exc:
                raise PersistenceIntegrityError(str(exc)) from exc
            except aiosqlite.Error as exc:
                raise PersistenceError(str(exc)) from exc

    async def close(self) -> None:
        async with self._lock:
            if self._db is not None:
                await self._db.close()
                self._db = None

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        slug: str,
        created_by: str,
        description: str | None = None,
    ) -> Project:
        project_id = str(uuid4())
        async with self._session() as db:
            await db.execute(
                "INSERT INTO projects (id, slug, name, description, created_by, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (project_id, slug, name, description, created_by, _to_text(_now())),
            )
            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        return _row_to_project(row)

    async def get_project(self, project_id: str) -> Project | None:
        row = await self._fetch_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return _row_to_project(row) if row else None

    async def get_project_by_slug(self, slug: str) -> Project | None:
        row = await self._fetch_one("SELECT * FROM projects WHERE slug = ?", (slug,))
        return _row_to_project(row) if row else None

    async def list_projects(self, status: ProjectStatus | None = None) -> list[Project]:
        if status is None:
            rows = await self._fetch_all("SELECT * FROM projects ORDER BY created_at DESC", ())
        else:
            rows = await self._fetch_all(
                "SELECT * FROM projects WHERE status = ? ORDER BY created_at DESC",
                (ProjectStatus(status).value,),
            )
        return [_row_to_project(row) for row in rows]

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def create_phase(
        self,
        project_id: str,
        name: str,
        *,
        display_name: str | None = None,
        status: PhaseStatus = PhaseStatus.PENDING,
        start_date: datetime | None = None,
        planned_end_date: datetime | None = None,
    ) -> Phase:
        phase_id = str(uuid4())
        status = PhaseStatus(status)
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM phases WHERE project_id = ?",
                (project_id,),
            )
            (position,) = await cursor.fetchone()
            await db.execute(
                "INSERT INTO phases (id, project_id, name, display_name, position, status,"
                " start_date, planned_end_date) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    phase_id,
                    project_id,
                    name,
                    display_name or name,
                    position,
                    status.value,
                    _to_text(start_date),
                    _to_text(planned_end_date),
                ),
            )
            return await self._phase_by_id(db, phase_id)

    async def get_phase(self, phase_id: str) -> Phase | None:
        row = await self._fetch_one("SELECT * FROM phases WHERE id = ?", (phase_id,))
        return _row_to_phase(row) if row else None

    async def get_phase_by_name(self, project_id: str, name: str) -> Phase | None:
        row = await self._fetch_one(
            "SELECT * FROM phases WHERE project_id = ? AND name = ?", (project_id, name)
        )
        return _row_to_phase(row) if row else None

    async def get_phases(self, project_id: str) -> list[Phase]:
        rows = await self._fetch_all(
            "SELECT * FROM phases WHERE project_id = ? ORDER BY position", (project_id,)
        )
        return [_row_to_phase(row) for row in rows]

    async def get_current_phase(self, project_id: str) -> Phase | None:
        row = await self._fetch_one(
            "SELECT * FROM phases WHERE project_id = ? AND status = 'active'", (project_id,)
        )
        return _row_to_phase(row) if row else None

    async def update_phase_status(
        self,
        phase_id: str,
        status: PhaseStatus,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Phase:
        status = PhaseStatus(status)
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE phases SET status = ?,"
                " start_date = COALESCE(?, start_date),"
                " end_date = COALESCE(?, end_date)"
                " WHERE id = ?",
                (status.value, _to_text(start_date), _to_text(end_date), phase_id),
            )
            if cursor.rowcount != 1:
                raise PersistenceError(f"Unknown phase {phase_id!r}.")
            return await self._phase_by_id(db, phase_id)

    async def apply_transition(
        self,
        from_phase_id: str,
        to_phase_id: str,
        *,
        at: datetime,
        gate_approved: bool,
        gate_reviewer: str | None,
        gate_notes: str | None,
    ) -> tuple[Phase, Phase]:
        """Complete one phase and activate another in a single transaction.

        Raises:
            PersistenceIntegrityError: the source phase is no longer active or
                the target is not activatable; nothing is written.
        """
        stamp = _to_text(at)
        async with self._session() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                completed = await db.execute(
                    "UPDATE phases SET status = 'completed', end_date = ?,"
                    " gate_approved = ?, gate_reviewer = COALESCE(?, gate_reviewer),"
                    " gate_notes = COALESCE(?, gate_notes),"
                    " gate_review_date = CASE WHEN ? THEN ? ELSE gate_review_date END"
                    " WHERE id = ? AND status = 'active'",
                    (
                        stamp,
                        int(gate_approved),
                        gate_reviewer,
                        gate_notes,
                        int(gate_approved),
                        stamp,
                        from_phase_id,
                    ),
                )
                if completed.rowcount != 1:
                    raise PersistenceIntegrityError(
                        f"Phase {from_phase_id!r} is not active."
                    )
                activated = await db.execute(
                    "UPDATE phases SET status = 'active', start_date = ?, end_date = NULL"
                    " WHERE id = ? AND status != 'completed'",
                    (stamp, to_phase_id),
                )
                if activated.rowcount != 1:
                    raise PersistenceIntegrityError(
                        f"Phase {to_phase_id!r} cannot be activated."
                    )
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
            return (
                await self._phase_by_id(db, from_phase_id),
                await self._phase_by_id(db, to_phase_id),
            )

    async def record_gate_review(
        self,
        phase_id: str,
        *,
        approved: bool,
        reviewer: str | None,
        notes: str | None,
        at: datetime,
    ) -> Phase:
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE phases SET gate_approved = ?, gate_reviewer = ?, gate_notes = ?,"
                " gate_review_date = ? WHERE id = ?",
                (int(approved), reviewer, notes, _to_text(at), phase_id),
            )
            if cursor.rowcount != 1:
                raise PersistenceError(f"Unknown phase {phase_id!r}.")
            return await self._phase_by_id(db, phase_id)

    @staticmethod
    async def _phase_by_id(db: aiosqlite.Connection, phase_id: str) -> Phase:
        cursor = await db.execute("SELECT * FROM phases WHERE id = ?", (phase_id,))
        row = await cursor.fetchone()
        if row is None:
            raise PersistenceError(f"Unknown phase {phase_id!r}.")
        return _row_to_phase(row)

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def register_agent(
        self,
        name: str,
        agent_type: str,
        *,
        email: str | None = None,
        specializations: Iterable[str] = (),
    ) -> Agent:
        agent_id = str(uuid4())
        async with self._session() as db:
            await db.execute(
                "INSERT INTO agents (id, name, email, type, specializations)"
                " VALUES (?, ?, ?, ?, ?)",
                (agent_id, name, email, agent_type, json.dumps(list(specializations))),
            )
            cursor = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
            row = await cursor.fetchone()
        return _row_to_agent(row)

    async def get_agent(self, agent_id: str) -> Agent | None:
        row = await self._fetch_one("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return _row_to_agent(row) if row else None

    async def assign_agent(
        self,
        project_id: str,
        agent_id: str,
        *,
        role: str | None = None,
        capacity_percentage: int = 100,
    ) -> TeamMember:
        if not 0 < capacity_percentage <= 100:
            raise ValueError("capacity_percentage must be within 1..100.")
        assigned_at = _now()
        async with self._session() as db:
            await db.execute(
                "INSERT INTO project_agents (project_id, agent_id, role,"
                " capacity_percentage, assigned_at) VALUES (?, ?, ?, ?, ?)",
                (project_id, agent_id, role, capacity_percentage, _to_text(assigned_at)),
            )
            cursor = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
            row = await cursor.fetchone()
        return TeamMember(
            agent=_row_to_agent(row),
            project_id=project_id,
            role=role,
            capacity_percentage=capacity_percentage,
            assigned_at=assigned_at,
        )

    async def get_project_team(self, project_id: str) -> list[TeamMember]:
        rows = await self._fetch_all(
            "SELECT a.*, pa.role AS role, pa.capacity_percentage AS capacity_percentage,"
            " pa.assigned_at AS assigned_at, pa.project_id AS project_id"
            " FROM project_agents pa JOIN agents a ON pa.agent_id = a.id"
            " WHERE pa.project_id = ? ORDER BY pa.assigned_at",
            (project_id,),
        )
        return [
            TeamMember(
                agent=_row_to_agent(row),
                project_id=row["project_id"],
                role=row["role"],
                capacity_percentage=row["capacity_percentage"],
                assigned_at=_from_text(row["assigned_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def log_event(self, event: Event) -> bool:
        """Store a project-scoped event; returns False if it was already stored."""
        if not event.project_id:
            raise PersistenceError(f"Event {event.id!r} has no project_id.")
        async with self._session() as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO events (id, project_id, type, phase_context,"
                " origin_agent, timestamp, brief, payload, refs)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.project_id,
                    event.type,
                    event.phase_context,
                    event.origin_agent,
                    event.timestamp.isoformat(),
                    event.brief,
                    json.dumps(dict(event.payload), ensure_ascii=False, default=str),
                    json.dumps(list(event.references), ensure_ascii=False),
                ),
            )
            return cursor.rowcount == 1

    async def get_events(
        self,
        project_id: str,
        *,
        event_type: str | None = None,
        phase_context: str | None = None,
        origin_agent: str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Stored events for a project, newest first."""
        sql = "SELECT * FROM events WHERE project_id = ?"
        params: list[Any] = [project_id]
        if event_type is not None:
            sql += " AND type = ?"
            params.append(event_type)
        if phase_context is not None:
            sql += " AND phase_context = ?"
            params.append(phase_context)
        if origin_agent is not None:
            sql += " AND origin_agent = ?"
            params.append(origin_agent)
        sql += " ORDER BY timestamp DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._fetch_all(sql, tuple(params))
        return [_row_to_event(row) for row in rows]

    # ------------------------------------------------------------------

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> aiosqlite.Row | None:
        async with self._session() as db:
            cursor = await db.execute(sql, params)
            return await cursor.fetchone()

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        async with self._session() as db:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())
