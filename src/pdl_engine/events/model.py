"""Immutable event record, brief synthesis, and the JSON wire format."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import json
import time
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import to_jsonable_python

from ..exceptions import MalformedIncomingEventError
from .payloads import EventPayload, parse_payload

SYSTEM_AGENT = "system"
MAX_BRIEF_LENGTH = 60
_ELLIPSIS = "..."


def generate_event_id() -> str:
    """Return a new event id of the form ``evt_<epoch-ms>_<9 hex chars>``."""
    return f"evt_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def truncate_brief(text: str, limit: int = MAX_BRIEF_LENGTH) -> str:
    """Collapse whitespace and cap ``text`` at ``limit`` characters."""
    normalized = " ".join(str(text).split())
    if len(normalized) <= limit:
        return normalized
    return normalized[: limit - len(_ELLIPSIS)] + _ELLIPSIS


def synthesize_brief(event_type: str, payload: Mapping[str, Any]) -> str:
    """Build a short human summary for an event from its payload."""
    typed = parse_payload(event_type, dict(payload))
    if typed is not None:
        return truncate_brief(typed.brief())
    try:
        encoded = json.dumps(dict(payload), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        encoded = str(dict(payload))
    return truncate_brief(f"{event_type}: {encoded[:50]}...")


def _freeze_payload(payload: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Copy ``payload`` into a read-only mapping of JSON-safe values.

    Datetimes, sets, tuples, and models become their JSON forms; anything
    else pydantic cannot serialize is stored as ``str(value)``.
    """
    return MappingProxyType(to_jsonable_python(dict(payload or {}), fallback=str))


@dataclass(frozen=True)
class Event:
    """A single coordination event.

    Instances are never mutated after construction; ``payload`` is exposed as a
    read-only mapping and ``references`` as a tuple.
    """

    id: str
    type: str
    timestamp: datetime
    phase_context: str
    payload: Mapping[str, Any]
    brief: str
    references: tuple[str, ...] = ()
    origin_agent: str = SYSTEM_AGENT
    project_id: str | None = None

    @classmethod
    def create(
        cls,
        event_type: str,
        payload: Mapping[str, Any] | None,
        *,
        phase_context: str,
        brief: str | None = None,
        references: Iterable[str] = (),
        origin_agent: str | None = None,
        project_id: str | None = None,
    ) -> Event:
        """Build a locally emitted event, synthesizing the brief when absent."""
        frozen = _freeze_payload(payload)
        summary = (
            truncate_brief(brief)
            if brief and brief.strip()
            else synthesize_brief(event_type, frozen)
        )
        return cls(
            id=generate_event_id(),
            type=event_type,
            timestamp=datetime.now(UTC),
            phase_context=phase_context,
            payload=frozen,
            brief=summary,
            references=tuple(str(item) for item in references),
            origin_agent=origin_agent or SYSTEM_AGENT,
            project_id=project_id,
        )

    @property
    def typed_payload(self) -> EventPayload | None:
        """Typed payload variant for known event types, or ``None``."""
        return parse_payload(self.type, dict(self.payload))

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-compatible representation sent to peers."""
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "phase_context": self.phase_context,
            "payload": to_jsonable_python(dict(self.payload), fallback=str),
            "brief": self.brief,
            "references": list(self.references),
            "origin_agent": self.origin_agent,
            "project_id": self.project_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any] | str | bytes) -> Event:
        """Decode a peer message.

        Accepts a JSON string or an already-decoded mapping. The brief is
        truncated but never re-synthesized.

        Raises:
            MalformedIncomingEventError: the message is not a valid event.
        """
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (TypeError, ValueError) as exc:
                raise MalformedIncomingEventError(f"Invalid JSON: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise MalformedIncomingEventError("Event payload must be a JSON object.")
        try:
            wire = _WireEvent.model_validate(dict(raw))
        except ValidationError as exc:
            raise MalformedIncomingEventError(str(exc)) from exc

        timestamp = wire.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(
            id=wire.id,
            type=wire.type,
            timestamp=timestamp,
            phase_context=wire.phase_context,
            payload=_freeze_payload(wire.payload),
            brief=truncate_brief(wire.brief),
            references=tuple(wire.references),
            origin_agent=wire.origin_agent or SYSTEM_AGENT,
            project_id=wire.project_id,
        )


class _WireEvent(BaseModel):
    """Validation model for incoming peer events.

    Field aliases also accept the short keys used by browser peers
    (``phase``, ``data``, ``agent``).
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    timestamp: datetime
    phase_context: str = Field(
        default="", validation_alias=AliasChoices("phase_context", "phase")
    )
    payload: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("payload", "data")
    )
    brief: str = ""
    references: list[str] = Field(default_factory=list)
    origin_agent: str = Field(
        default=SYSTEM_AGENT, validation_alias=AliasChoices("origin_agent", "agent")
    )
    project_id: str | None = None
