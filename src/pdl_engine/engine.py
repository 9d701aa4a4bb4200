"""Engine facade wiring the bus, hooks, connectivity, store, and lifecycle together.

Usage:
    engine = Engine.from_config(load_config())
    async with engine:
        project = await engine.create_project("Atlas", "atlas", created_by="alice")
        await engine.transition_phase(project.id, "discovery", "planning")
        engine.log_discovery("Users want offline mode", project_id=project.id)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging
from typing import Any

from .events.bus import DEFAULT_INITIAL_PHASE, EventBus, EventFilter
from .events.history import DEFAULT_HISTORY_CAP, HistoryBuffer
from .events.hooks import ANY_EVENT, HookBinding, HookHandler, HookRegistry
from .events.model import SYSTEM_AGENT, Event
from .exceptions import PersistenceError
from .lifecycle import PhaseStateMachine, TransitionResult
from .managers.connectivity import (
    DEFAULT_RECONNECT_INTERVAL_SECONDS,
    ConnectivityManager,
)
from .models import PHASE_SEQUENCE, Project
from .notes import DevelopmentNotes
from .offline_buffer import OfflineBuffer
from .persistence import PhaseStore, SQLiteStore
from .task_manager import TaskManager
from .transport import Transport

LOGGER = logging.getLogger(__name__)

DEFAULT_RECENT_EVENTS = 10

# Default hooks run before anything registered with the default priority.
_STATE_HOOK_PRIORITY = 100


class Engine:
    """One agent's view of the phase lifecycle and its event stream."""

    def __init__(
        self,
        *,
        store: PhaseStore | None = None,
        transport: Transport | None = None,
        endpoint: str | None = None,
        offline_buffer: OfflineBuffer | None = None,
        notes: DevelopmentNotes | None = None,
        history_cap: int = DEFAULT_HISTORY_CAP,
        recent_events: int = DEFAULT_RECENT_EVENTS,
        initial_phase: str = DEFAULT_INITIAL_PHASE,
        system_agent: str = SYSTEM_AGENT,
        reconnect_interval_seconds: float = DEFAULT_RECONNECT_INTERVAL_SECONDS,
        tasks: TaskManager | None = None,
    ) -> None:
        self.tasks = tasks or TaskManager()
        self.store: PhaseStore = store or SQLiteStore()
        self.notes = notes
        self.recent_events = recent_events
        self.connectivity = ConnectivityManager(
            transport,
            endpoint,
            offline_buffer=offline_buffer,
            reconnect_interval_seconds=reconnect_interval_seconds,
            tasks=self.tasks,
        )
        self.bus = EventBus(
            history=HistoryBuffer(history_cap),
            hooks=HookRegistry(self.tasks),
            connectivity=self.connectivity,
            initial_phase=initial_phase,
            system_agent=system_agent,
        )
        self.lifecycle = PhaseStateMachine(self.store, self.bus)
        self._active_agents: list[str] = []
        self._register_default_hooks()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Mapping[str, Any]],
        *,
        transport: Transport | None = None,
        store: PhaseStore | None = None,
    ) -> Engine:
        """Build an engine from a validated ``load_config`` result."""
        engine_cfg = config["engine"]
        connectivity_cfg = config["connectivity"]
        notes_cfg = config["notes"]
        notes = None
        if notes_cfg.get("enabled", True):
            notes = DevelopmentNotes(notes_cfg.get("path") or None)
        return cls(
            store=store or SQLiteStore(config["persistence"]["database_path"]),
            transport=transport,
            endpoint=connectivity_cfg.get("endpoint") or None,
            offline_buffer=OfflineBuffer(connectivity_cfg.get("offline_buffer_path") or None),
            notes=notes,
            history_cap=engine_cfg["history_cap"],
            recent_events=engine_cfg["recent_events"],
            initial_phase=engine_cfg["initial_phase"],
            system_agent=engine_cfg["system_agent"],
            reconnect_interval_seconds=connectivity_cfg["reconnect_interval_seconds"],
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        open_store = getattr(self.store, "open", None)
        if open_store is not None:
            await open_store()
        await self.connectivity.start()

    async def flush(self) -> None:
        """Wait for async hooks (including durable hand-off) to finish.

        Reconnect and writer loops keep running.
        """
        await self.tasks.drain()

    async def stop(self) -> None:
        await self.connectivity.stop()
        await self.tasks.cancel_all()

    async def close(self) -> None:
        await self.stop()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def register_hook(
        self,
        event_type: str,
        handler: HookHandler,
        *,
        priority: int = 0,
        is_async: bool = False,
    ) -> HookBinding:
        return self.bus.hooks.register(
            event_type, handler, priority=priority, is_async=is_async
        )

    def _register_default_hooks(self) -> None:
        hooks = self.bus.hooks
        hooks.register(
            "phase_transition", self._track_phase, priority=_STATE_HOOK_PRIORITY
        )
        hooks.register(
            "phase_status_changed",
            self._track_activation,
            priority=_STATE_HOOK_PRIORITY,
        )
        hooks.register(
            "agent_assigned", self._track_agent, priority=_STATE_HOOK_PRIORITY
        )
        if self.notes is not None:
            hooks.register("development_note", self.notes.write)
        hooks.register(ANY_EVENT, self._persist_event, is_async=True)

    def _track_phase(self, event: Event) -> None:
        target = event.payload.get("to")
        if isinstance(target, str) and target:
            self.bus.current_phase = target

    def _track_activation(self, event: Event) -> None:
        phase = event.payload.get("phase")
        if event.payload.get("to_status") == "active" and isinstance(phase, str):
            self.bus.current_phase = phase

    def _track_agent(self, event: Event) -> None:
        agent = event.payload.get("agent")
        if isinstance(agent, str) and agent and agent not in self._active_agents:
            self._active_agents.append(agent)

    async def _persist_event(self, event: Event) -> None:
        if not event.project_id:
            return
        try:
            await self.store.log_event(event)
        except PersistenceError as exc:
            LOGGER.warning(
                "engine.persist.failed",
                extra={
                    "event": "engine.persist.failed",
                    "event_id": event.id,
                    "project_id": event.project_id,
                    "error": str(exc),
                },
            )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @property
    def current_phase(self) -> str:
        return self.bus.current_phase

    @property
    def active_agents(self) -> list[str]:
        return list(self._active_agents)

    async def create_project(
        self,
        name: str,
        slug: str,
        *,
        created_by: str | None = None,
        description: str | None = None,
        phases: Iterable[str] = PHASE_SEQUENCE,
    ) -> Project:
        """Create a project with its full lifecycle, the first phase active."""
        project = await self.store.create_project(
            name, slug, created_by or self.bus.system_agent, description
        )
        created = await self.lifecycle.initialize_lifecycle(project.id, phases)
        self.bus.current_phase = created[0].name
        return project

    async def transition_phase(
        self,
        project_id: str,
        from_phase: str,
        to_phase: str,
        reason: str = "",
        *,
        gate_approval: bool = False,
        notes: str = "",
        triggered_by: str | None = None,
    ) -> TransitionResult:
        return await self.lifecycle.request_transition(
            project_id,
            from_phase,
            to_phase,
            gate_approval=gate_approval,
            notes=notes,
            reason=reason,
            triggered_by=triggered_by or self.bus.system_agent,
        )

    def emit_event(
        self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any
    ) -> str:
        return self.bus.emit(event_type, payload, **options)

    def get_event_history(
        self,
        *,
        phase_context: str | None = None,
        origin_agent: str | None = None,
        event_type: str | None = None,
        project_id: str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """In-memory history only, oldest first."""
        return self.bus.query(
            EventFilter(
                phase_context=phase_context,
                origin_agent=origin_agent,
                event_type=event_type,
                project_id=project_id,
                limit=limit,
            )
        )

    async def get_project_history(
        self,
        project_id: str,
        *,
        event_type: str | None = None,
        phase_context: str | None = None,
        origin_agent: str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Durably stored events for one project, newest first."""
        return await self.store.get_events(
            project_id,
            event_type=event_type,
            phase_context=phase_context,
            origin_agent=origin_agent,
            limit=limit,
        )

    def get_current_state(self) -> dict[str, Any]:
        return {
            "phase": self.bus.current_phase,
            "active_agents": self.active_agents,
            "recent_events": self.bus.recent(self.recent_events),
            "connected": self.connectivity.is_connected,
            "connectivity": self.connectivity.state.value,
            "buffered": len(self.connectivity.buffer),
        }

    def assign_agent(
        self,
        agent: str,
        role: str,
        task: str | None = None,
        *,
        origin_agent: str | None = None,
        project_id: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {"agent": agent, "role": role}
        if task is not None:
            payload["task"] = task
        return self.bus.emit(
            "agent_assigned", payload, origin_agent=origin_agent, project_id=project_id
        )

    def log_discovery(
        self,
        finding: str,
        source: str | None = None,
        confidence: str | float | None = None,
        *,
        references: Iterable[str] = (),
        origin_agent: str | None = None,
        project_id: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {"finding": finding}
        if source is not None:
            payload["source"] = source
        if confidence is not None:
            payload["confidence"] = confidence
        return self.bus.emit(
            "discovery",
            payload,
            references=references,
            origin_agent=origin_agent,
            project_id=project_id,
        )

    def log_research(
        self,
        topic: str,
        conclusion: str,
        references: Iterable[str] = (),
        *,
        origin_agent: str | None = None,
        project_id: str | None = None,
    ) -> str:
        refs = list(references)
        return self.bus.emit(
            "research_complete",
            {"topic": topic, "conclusion": conclusion, "references": refs},
            references=refs,
            origin_agent=origin_agent,
            project_id=project_id,
        )

    def add_development_note(
        self,
        note: str,
        *,
        references: Iterable[str] = (),
        origin_agent: str | None = None,
        project_id: str | None = None,
    ) -> str:
        return self.bus.emit(
            "development_note",
            {"note": note},
            references=references,
            origin_agent=origin_agent,
            project_id=project_id,
        )
