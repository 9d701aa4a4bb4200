"""Top-level package for the phase lifecycle and event coordination engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ensure_config_dir, load_config
    from .engine import Engine
    from .events import Event, EventBus, EventFilter, HistoryBuffer, HookRegistry
    from .exceptions import (
        ConfigValidationError,
        HookExecutionError,
        InvalidTransitionError,
        MalformedIncomingEventError,
        PDLError,
        PersistenceError,
        TransitionInProgressError,
        TransportError,
    )
    from .lifecycle import PhaseStateMachine, TransitionResult
    from .managers import ConnectivityManager, ConnectivityState
    from .persistence import SQLiteStore

__all__ = [
    "ConfigValidationError",
    "ConnectivityManager",
    "ConnectivityState",
    "Engine",
    "Event",
    "EventBus",
    "EventFilter",
    "HistoryBuffer",
    "HookExecutionError",
    "HookRegistry",
    "InvalidTransitionError",
    "MalformedIncomingEventError",
    "PDLError",
    "PersistenceError",
    "PhaseStateMachine",
    "SQLiteStore",
    "TransitionInProgressError",
    "TransitionResult",
    "TransportError",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTIONS = {
    "ConfigValidationError",
    "HookExecutionError",
    "InvalidTransitionError",
    "MalformedIncomingEventError",
    "PDLError",
    "PersistenceError",
    "TransitionInProgressError",
    "TransportError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import pdl_engine`` stays cheap."""
    if name == "Engine":
        from .engine import Engine

        return Engine
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"Event", "EventBus", "EventFilter", "HistoryBuffer", "HookRegistry"}:
        from . import events

        return getattr(events, name)
    if name in {"PhaseStateMachine", "TransitionResult"}:
        from .lifecycle import PhaseStateMachine, TransitionResult

        return {"PhaseStateMachine": PhaseStateMachine, "TransitionResult": TransitionResult}[
            name
        ]
    if name in {"ConnectivityManager", "ConnectivityState"}:
        from .managers import ConnectivityManager, ConnectivityState

        return {
            "ConnectivityManager": ConnectivityManager,
            "ConnectivityState": ConnectivityState,
        }[name]
    if name == "SQLiteStore":
        from .persistence import SQLiteStore

        return SQLiteStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
