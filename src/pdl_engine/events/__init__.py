"""Event record, bounded history, hook registry, and the event bus."""

from .bus import EventBus, EventFilter
from .history import HistoryBuffer
from .hooks import ANY_EVENT, HookBinding, HookRegistry
from .model import Event, synthesize_brief, truncate_brief

__all__ = [
    "ANY_EVENT",
    "Event",
    "EventBus",
    "EventFilter",
    "HistoryBuffer",
    "HookBinding",
    "HookRegistry",
    "synthesize_brief",
    "truncate_brief",
]
