"""Domain exception hierarchy for the phase lifecycle engine."""

from __future__ import annotations


class PDLError(RuntimeError):
    """Base class for all engine-level errors."""


class InvalidTransitionError(PDLError):
    """Raised when a phase transition is not legal for the project's current state."""

    def __init__(
        self,
        project_id: str,
        from_phase: str,
        to_phase: str,
        reason: str,
    ) -> None:
        self.project_id = project_id
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.reason = reason
        super().__init__(
            f"Invalid phase transition for project {project_id!r}: "
            f"{from_phase!r} → {to_phase!r} ({reason})"
        )


class TransitionInProgressError(PDLError):
    """Raised when another transition for the same project is still in flight."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(
            f"A phase transition for project {project_id!r} is already in progress."
        )


class HookExecutionError(PDLError):
    """Raised (and absorbed) when a hook handler fails."""

    def __init__(self, event_type: str, handler_name: str, cause: BaseException) -> None:
        self.event_type = event_type
        self.handler_name = handler_name
        self.cause = cause
        super().__init__(f"Hook {handler_name} failed for {event_type!r}: {cause}")


class TransportError(PDLError):
    """Raised when the transport cannot connect, send, or receive."""


class MalformedIncomingEventError(PDLError):
    """Raised when a peer message cannot be decoded into an event."""


class PersistenceError(PDLError):
    """Raised when the persistence collaborator fails."""


class PersistenceIntegrityError(PersistenceError):
    """Raised when a write would violate a stored invariant."""


class ConfigValidationError(PDLError):
    """Raised when configuration cannot be validated safely."""


class UnknownPhaseError(PDLError, LookupError):
    """Raised when a project has no phase with the requested name."""
