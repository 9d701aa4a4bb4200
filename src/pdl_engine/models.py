"""Project, phase, and agent records shared by the store and the lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

PHASE_SEQUENCE: tuple[str, ...] = (
    "discovery",
    "planning",
    "development",
    "launch",
    "growth",
    "optimization",
)


class PhaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    ON_HOLD = "on_hold"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


@dataclass(frozen=True)
class Project:
    id: str
    slug: str
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    created_by: str = ""
    description: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Phase:
    """One lifecycle stage of one project."""

    id: str
    project_id: str
    name: str
    status: PhaseStatus
    display_name: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None
    planned_end_date: datetime | None = None
    gate_approved: bool = False
    gate_reviewer: str | None = None
    gate_notes: str | None = None
    gate_review_date: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is PhaseStatus.ACTIVE


@dataclass(frozen=True)
class Agent:
    id: str
    name: str
    type: str
    email: str | None = None
    specializations: tuple[str, ...] = ()
    status: str = "available"


@dataclass(frozen=True)
class TeamMember:
    """An agent as assigned to a project."""

    agent: Agent
    project_id: str
    role: str | None = None
    capacity_percentage: int = 100
    assigned_at: datetime | None = None
