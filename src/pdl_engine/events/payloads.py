"""Typed payload variants keyed by event type.

Event payloads travel as plain dicts so new event types need no registration.
Known types declare their fields here; ``parse_payload`` returns the typed
variant when the payload fits and ``None`` otherwise.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EventPayload(BaseModel):
    """Base class for known payload variants."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def brief(self) -> str:
        raise NotImplementedError


class PhaseTransitionPayload(EventPayload):
    from_phase: str = Field(alias="from")
    to_phase: str = Field(alias="to")
    gate_approval: bool = False
    notes: str = ""
    reason: str = ""

    def brief(self) -> str:
        return f"Phase: {self.from_phase} → {self.to_phase}"


class PhaseStatusChangedPayload(EventPayload):
    phase: str
    from_status: str
    to_status: str
    reason: str = ""

    def brief(self) -> str:
        return f"Status {self.phase}: {self.from_status} → {self.to_status}"


class AgentAssignedPayload(EventPayload):
    agent: str
    role: str = ""
    task: str = ""

    def brief(self) -> str:
        return f"Agent: {self.agent} ({self.role})"


class DiscoveryPayload(EventPayload):
    finding: str
    source: str = ""
    confidence: str | float = "medium"

    def brief(self) -> str:
        return f"Found: {self.finding}"


class ResearchCompletePayload(EventPayload):
    topic: str
    conclusion: str
    references: list[str] = Field(default_factory=list)

    def brief(self) -> str:
        return f"Research: {self.topic} - {self.conclusion}"


class GateReviewPayload(EventPayload):
    gate: str
    status: str
    reviewer: str = ""
    notes: str = ""

    def brief(self) -> str:
        return f"Gate {self.gate}: {self.status}"


class DevelopmentNotePayload(EventPayload):
    note: str

    def brief(self) -> str:
        return f"Note: {self.note}"


class SystemPayload(EventPayload):
    kind: str = Field(alias="type")
    status: str = ""

    def brief(self) -> str:
        return f"System: {self.kind} {self.status}".rstrip()


PAYLOAD_MODELS: dict[str, type[EventPayload]] = {
    "phase_transition": PhaseTransitionPayload,
    "phase_status_changed": PhaseStatusChangedPayload,
    "agent_assigned": AgentAssignedPayload,
    "discovery": DiscoveryPayload,
    "research_complete": ResearchCompletePayload,
    "gate_review": GateReviewPayload,
    "development_note": DevelopmentNotePayload,
    "system": SystemPayload,
}


def parse_payload(event_type: str, payload: dict[str, Any]) -> EventPayload | None:
    """Return the typed variant for ``payload`` or ``None`` if it has none or does not fit."""
    model = PAYLOAD_MODELS.get(event_type)
    if model is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError:
        return None
