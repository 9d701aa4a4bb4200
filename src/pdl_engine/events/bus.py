"""Event bus: history, hook dispatch, and hand-off to the connectivity manager.

Usage:
    bus = EventBus(connectivity=ConnectivityManager(transport, "pdl"))

    def on_transition(event):
        print(event.brief)

    bus.hooks.register("phase_transition", on_transition)
    event_id = bus.emit("phase_transition", {"from": "discovery", "to": "planning"})
"""

from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from .history import HistoryBuffer
from .hooks import HookRegistry
from .model import SYSTEM_AGENT, Event

if TYPE_CHECKING:
    from ..managers.connectivity import ConnectivityManager

LOGGER = logging.getLogger(__name__)

DEFAULT_INITIAL_PHASE = "discovery"
DEFAULT_SEEN_IDS = 10_000


@dataclass(frozen=True)
class EventFilter:
    """Conjunctive filter over the in-memory history; ``None`` fields match anything."""

    phase_context: str | None = None
    origin_agent: str | None = None
    event_type: str | None = None
    project_id: str | None = None
    limit: int | None = None

    def matches(self, event: Event) -> bool:
        if self.phase_context is not None and event.phase_context != self.phase_context:
            return False
        if self.origin_agent is not None and event.origin_agent != self.origin_agent:
            return False
        if self.event_type is not None and event.type != self.event_type:
            return False
        if self.project_id is not None and event.project_id != self.project_id:
            return False
        return True


class EventBus:
    """Accept local and peer events and process them one at a time.

    Every event is appended to the history, dispatched to hooks, and (for local
    emissions only) forwarded to the connectivity manager. An ``emit`` issued
    from inside a hook is queued and processed once the current event's
    dispatch has finished.
    """

    def __init__(
        self,
        *,
        history: HistoryBuffer | None = None,
        hooks: HookRegistry | None = None,
        connectivity: ConnectivityManager | None = None,
        initial_phase: str = DEFAULT_INITIAL_PHASE,
        system_agent: str = SYSTEM_AGENT,
        seen_ids: int = DEFAULT_SEEN_IDS,
    ) -> None:
        self.history = history or HistoryBuffer()
        self.hooks = hooks or HookRegistry()
        self.connectivity = connectivity
        self.system_agent = system_agent
        self._current_phase = initial_phase
        self._queue: deque[tuple[Event, bool]] = deque()
        self._draining = False
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_cap = max(seen_ids, self.history.cap)
        if connectivity is not None:
            connectivity.attach(self)

    @property
    def current_phase(self) -> str:
        return self._current_phase

    @current_phase.setter
    def current_phase(self, phase: str) -> None:
        self._current_phase = phase

    def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        brief: str | None = None,
        references: Iterable[str] = (),
        origin_agent: str | None = None,
        phase_context: str | None = None,
        project_id: str | None = None,
    ) -> str:
        """Create, record, dispatch, and forward a local event; return its id.

        Returns as soon as synchronous hooks have run. Async hooks keep running
        in the background.
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("Event type must be a non-empty string.")
        event = Event.create(
            event_type.strip(),
            payload,
            phase_context=phase_context or self._current_phase,
            brief=brief,
            references=references,
            origin_agent=origin_agent or self.system_agent,
            project_id=project_id,
        )
        self._enqueue(event, forward=True)
        return event.id

    def on_event(self, raw_event: Event | Mapping[str, Any]) -> bool:
        """Accept an event from a peer.

        The peer's brief is kept as is. Ids processed within the last
        ``seen_ids`` events (never fewer than the history cap) are ignored so
        their hooks never run twice; an id replayed after falling out of that
        window is treated as new. Returns True when the event was accepted.

        Raises:
            MalformedIncomingEventError: ``raw_event`` is a mapping that does
                not decode into an event.
        """
        event = raw_event if isinstance(raw_event, Event) else Event.from_wire(raw_event)
        if event.id in self._seen or any(queued.id == event.id for queued, _ in self._queue):
            LOGGER.debug(
                "bus.incoming.duplicate",
                extra={"event": "bus.incoming.duplicate", "event_id": event.id},
            )
            return False
        self._enqueue(event, forward=False)
        return True

    def query(self, event_filter: EventFilter | None = None) -> list[Event]:
        """Filtered view of the in-memory history, oldest first."""
        criteria = event_filter or EventFilter()
        matched = [event for event in self.history if criteria.matches(event)]
        if criteria.limit is not None and criteria.limit >= 0:
            matched = matched[-criteria.limit :] if criteria.limit else []
        return matched

    def recent(self, n: int) -> list[Event]:
        return self.history.slice(n)

    def _enqueue(self, event: Event, *, forward: bool) -> None:
        self._queue.append((event, forward))
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current, should_forward = self._queue.popleft()
                self._process(current, should_forward)
        finally:
            self._draining = False

    def _process(self, event: Event, forward: bool) -> None:
        self.history.append(event)
        self._remember(event.id)
        handled = self.hooks.dispatch(event.type, event)
        LOGGER.debug(
            "bus.dispatched",
            extra={
                "event": "bus.dispatched",
                "event_id": event.id,
                "event_type": event.type,
                "handlers": handled,
                "local": forward,
            },
        )
        if not forward or self.connectivity is None:
            return
        try:
            self.connectivity.publish(event)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error(
                "bus.forward.failed",
                extra={
                    "event": "bus.forward.failed",
                    "event_id": event.id,
                    "error": str(exc),
                },
            )

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        self._seen.move_to_end(event_id)
        while len(self._seen) > self._seen_cap:
            self._seen.popitem(last=False)
