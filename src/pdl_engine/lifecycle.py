"""Phase lifecycle state machine.

Phase status changes:
    pending   → active     (first phase of a lifecycle, or resumed manually)
    pending   → blocked | on_hold
    blocked   → pending | active | on_hold
    on_hold   → pending | active | blocked
    active    → blocked | on_hold
    active    → completed  (only through ``request_transition``)
    completed is terminal

A project has at most one ``active`` phase. ``request_transition`` moves the
active flag from one phase to another in a single store transaction and then
emits exactly one ``phase_transition`` event. Validation failures raise before
anything is written or emitted.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import logging

from .events.bus import EventBus
from .events.model import SYSTEM_AGENT
from .exceptions import (
    InvalidTransitionError,
    PersistenceError,
    PersistenceIntegrityError,
    TransitionInProgressError,
    UnknownPhaseError,
)
from .models import PHASE_SEQUENCE, Phase, PhaseStatus
from .persistence import PhaseStore

LOGGER = logging.getLogger(__name__)

VALID_STATUS_CHANGES: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset(
        [PhaseStatus.ACTIVE, PhaseStatus.BLOCKED, PhaseStatus.ON_HOLD]
    ),
    PhaseStatus.BLOCKED: frozenset(
        [PhaseStatus.PENDING, PhaseStatus.ACTIVE, PhaseStatus.ON_HOLD]
    ),
    PhaseStatus.ON_HOLD: frozenset(
        [PhaseStatus.PENDING, PhaseStatus.ACTIVE, PhaseStatus.BLOCKED]
    ),
    PhaseStatus.ACTIVE: frozenset([PhaseStatus.BLOCKED, PhaseStatus.ON_HOLD]),
    PhaseStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    project_id: str
    completed: Phase
    activated: Phase
    event_id: str


def _now() -> datetime:
    return datetime.now(UTC)


class PhaseStateMachine:
    """Validate and apply phase changes for any number of projects."""

    def __init__(self, store: PhaseStore, bus: EventBus) -> None:
        self.store = store
        self.bus = bus
        self._in_flight: set[str] = set()

    def is_busy(self, project_id: str) -> bool:
        return project_id in self._in_flight

    @contextmanager
    def _exclusive(self, project_id: str) -> Iterator[None]:
        if project_id in self._in_flight:
            raise TransitionInProgressError(project_id)
        self._in_flight.add(project_id)
        try:
            yield
        finally:
            self._in_flight.discard(project_id)

    async def request_transition(
        self,
        project_id: str,
        from_phase: str,
        to_phase: str,
        *,
        gate_approval: bool = False,
        notes: str = "",
        reason: str = "",
        triggered_by: str = SYSTEM_AGENT,
    ) -> TransitionResult:
        """Complete ``from_phase`` and activate ``to_phase``.

        Raises:
            TransitionInProgressError: another change for this project is in flight.
            InvalidTransitionError: ``from_phase`` is not the active phase,
                ``to_phase`` is unknown, equal to ``from_phase`` or already completed.
        """
        with self._exclusive(project_id):
            if to_phase == from_phase:
                raise InvalidTransitionError(
                    project_id, from_phase, to_phase, "source and target are the same phase"
                )
            current = await self.store.get_current_phase(project_id)
            if current is None or current.name != from_phase:
                active = current.name if current is not None else "none"
                raise InvalidTransitionError(
                    project_id,
                    from_phase,
                    to_phase,
                    f"{from_phase!r} is not the active phase (active: {active})",
                )
            target = await self.store.get_phase_by_name(project_id, to_phase)
            if target is None:
                raise InvalidTransitionError(
                    project_id, from_phase, to_phase, f"project has no phase {to_phase!r}"
                )
            if target.status is PhaseStatus.COMPLETED:
                raise InvalidTransitionError(
                    project_id, from_phase, to_phase, f"{to_phase!r} is already completed"
                )

            try:
                completed, activated = await self.store.apply_transition(
                    current.id,
                    target.id,
                    at=_now(),
                    gate_approved=gate_approval,
                    gate_reviewer=triggered_by if gate_approval else None,
                    gate_notes=notes or None,
                )
            except PersistenceIntegrityError as exc:
                raise InvalidTransitionError(
                    project_id, from_phase, to_phase, str(exc)
                ) from exc

            payload = {
                "from": from_phase,
                "to": to_phase,
                "gate_approval": gate_approval,
                "notes": notes,
            }
            if reason:
                payload["reason"] = reason
            event_id = self.bus.emit(
                "phase_transition",
                payload,
                origin_agent=triggered_by,
                phase_context=from_phase,
                project_id=project_id,
            )
        LOGGER.info(
            "lifecycle.transitioned",
            extra={
                "event": "lifecycle.transitioned",
                "project_id": project_id,
                "from_phase": from_phase,
                "to_phase": to_phase,
                "gate_approval": gate_approval,
                "event_id": event_id,
            },
        )
        return TransitionResult(project_id, completed, activated, event_id)

    async def change_status(
        self,
        project_id: str,
        phase_name: str,
        status: PhaseStatus | str,
        *,
        reason: str = "",
        triggered_by: str = SYSTEM_AGENT,
    ) -> Phase:
        """Move a phase between non-terminal statuses and emit ``phase_status_changed``."""
        new_status = PhaseStatus(status)
        with self._exclusive(project_id):
            phase = await self.store.get_phase_by_name(project_id, phase_name)
            if phase is None:
                raise InvalidTransitionError(
                    project_id, phase_name, phase_name, f"project has no phase {phase_name!r}"
                )
            if new_status not in VALID_STATUS_CHANGES[phase.status]:
                raise InvalidTransitionError(
                    project_id,
                    phase_name,
                    phase_name,
                    f"status {phase.status.value!r} cannot change to {new_status.value!r}",
                )
            start_date = None
            if new_status is PhaseStatus.ACTIVE:
                current = await self.store.get_current_phase(project_id)
                if current is not None:
                    raise InvalidTransitionError(
                        project_id,
                        phase_name,
                        phase_name,
                        f"phase {current.name!r} is already active",
                    )
                start_date = phase.start_date or _now()
            try:
                updated = await self.store.update_phase_status(
                    phase.id, new_status, start_date=start_date
                )
            except PersistenceIntegrityError as exc:
                raise InvalidTransitionError(
                    project_id, phase_name, phase_name, str(exc)
                ) from exc

            payload = {
                "phase": phase_name,
                "from_status": phase.status.value,
                "to_status": new_status.value,
            }
            if reason:
                payload["reason"] = reason
            self.bus.emit(
                "phase_status_changed",
                payload,
                origin_agent=triggered_by,
                phase_context=phase_name,
                project_id=project_id,
            )
        return updated

    async def record_gate_review(
        self,
        project_id: str,
        phase_name: str,
        *,
        approved: bool,
        reviewer: str = SYSTEM_AGENT,
        notes: str = "",
    ) -> Phase:
        """Store a gate decision for a phase and emit ``gate_review``.

        Raises:
            TransitionInProgressError: another change for this project is in flight.
            UnknownPhaseError: the project has no phase named ``phase_name``.
        """
        with self._exclusive(project_id):
            phase = await self.store.get_phase_by_name(project_id, phase_name)
            if phase is None:
                raise UnknownPhaseError(
                    f"Project {project_id!r} has no phase {phase_name!r}."
                )
            updated = await self.store.record_gate_review(
                phase.id, approved=approved, reviewer=reviewer, notes=notes or None, at=_now()
            )
            self.bus.emit(
                "gate_review",
                {
                    "gate": phase_name,
                    "status": "approved" if approved else "rejected",
                    "reviewer": reviewer,
                    "notes": notes,
                },
                origin_agent=reviewer,
                phase_context=phase_name,
                project_id=project_id,
            )
        return updated

    async def initialize_lifecycle(
        self, project_id: str, phases: Iterable[str] = PHASE_SEQUENCE
    ) -> list[Phase]:
        """Create the project's phases, the first one active.

        Returns the existing phases unchanged if the lifecycle was already set up.
        """
        names = list(dict.fromkeys(phases))
        if not names:
            raise ValueError("A lifecycle needs at least one phase.")
        if await self.store.get_project(project_id) is None:
            raise PersistenceError(f"Unknown project {project_id!r}.")
        with self._exclusive(project_id):
            existing = await self.store.get_phases(project_id)
            if existing:
                return existing
            created = [
                await self.store.create_phase(
                    project_id,
                    names[0],
                    display_name=names[0].title(),
                    status=PhaseStatus.ACTIVE,
                    start_date=_now(),
                )
            ]
            for name in names[1:]:
                created.append(
                    await self.store.create_phase(
                        project_id, name, display_name=name.title()
                    )
                )
        LOGGER.info(
            "lifecycle.initialized",
            extra={
                "event": "lifecycle.initialized",
                "project_id": project_id,
                "phases": names,
            },
        )
        return created
