"""Priority-ordered hook registry and failure-isolating dispatch.

Usage:
    registry = HookRegistry(tasks)

    def on_transition(event):
        print(event.payload["to"])

    registry.register("phase_transition", on_transition, priority=10)
    registry.dispatch("phase_transition", event)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import inspect
import itertools
import logging
from typing import Any

from ..exceptions import HookExecutionError
from ..task_manager import TaskManager
from .model import Event

LOGGER = logging.getLogger(__name__)

ANY_EVENT = "*"

HookHandler = Callable[[Event], Any]


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


@dataclass(frozen=True)
class HookBinding:
    """A handler bound to an event type."""

    event_type: str
    handler: HookHandler
    priority: int = 0
    is_async: bool = False
    sequence: int = field(default=0, compare=False)

    @property
    def name(self) -> str:
        return _handler_name(self.handler)


def _order_key(binding: HookBinding) -> tuple[int, int]:
    # Descending priority; registration order breaks ties.
    return (-binding.priority, binding.sequence)


class HookRegistry:
    """Table of event type → handlers, kept sorted on every registration."""

    def __init__(self, tasks: TaskManager | None = None) -> None:
        self._bindings: dict[str, list[HookBinding]] = {}
        self._sequence = itertools.count()
        self._tasks = tasks or TaskManager()

    def register(
        self,
        event_type: str,
        handler: HookHandler,
        *,
        priority: int = 0,
        is_async: bool = False,
    ) -> HookBinding:
        """Bind ``handler`` to ``event_type`` (``"*"`` binds to every event).

        Handlers with equal priority run in registration order.
        """
        binding = HookBinding(
            event_type=event_type,
            handler=handler,
            priority=priority,
            is_async=is_async,
            sequence=next(self._sequence),
        )
        bucket = self._bindings.setdefault(event_type, [])
        bucket.append(binding)
        bucket.sort(key=_order_key)
        LOGGER.debug(
            "hook.registered",
            extra={
                "event": "hook.registered",
                "event_type": event_type,
                "handler": binding.name,
                "priority": priority,
                "is_async": is_async,
            },
        )
        return binding

    def unregister(self, binding: HookBinding) -> bool:
        """Remove a binding; returns False when it was not registered."""
        bucket = self._bindings.get(binding.event_type, [])
        for index, candidate in enumerate(bucket):
            if candidate.sequence == binding.sequence:
                del bucket[index]
                if not bucket:
                    self._bindings.pop(binding.event_type, None)
                return True
        return False

    def bindings_for(self, event_type: str) -> list[HookBinding]:
        """Specific and wildcard bindings merged into dispatch order."""
        specific = self._bindings.get(event_type, [])
        if event_type == ANY_EVENT:
            return list(specific)
        wildcard = self._bindings.get(ANY_EVENT, [])
        if not wildcard:
            return list(specific)
        return sorted([*specific, *wildcard], key=_order_key)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._bindings.values())

    def dispatch(self, event_type: str, event: Event) -> int:
        """Run every handler bound to ``event_type`` in priority order.

        A failing handler never interrupts dispatch to the remaining handlers
        and never propagates to the caller. Returns the number of handlers
        invoked.
        """
        bindings = self.bindings_for(event_type)
        for binding in bindings:
            if binding.is_async:
                self._invoke_async(binding, event)
            else:
                self._invoke_sync(binding, event)
        return len(bindings)

    def _invoke_sync(self, binding: HookBinding, event: Event) -> None:
        try:
            result = binding.handler(event)
        except Exception as exc:
            self._log_failure("hook.sync.failed", binding, event, exc)
            return
        if inspect.isawaitable(result):
            # A coroutine handler registered as sync still runs, detached.
            self._schedule(binding, event, result)

    def _invoke_async(self, binding: HookBinding, event: Event) -> None:
        try:
            result = binding.handler(event)
        except Exception as exc:
            self._log_failure("hook.async.failed", binding, event, exc)
            return
        if inspect.isawaitable(result):
            self._schedule(binding, event, result)

    def _schedule(
        self, binding: HookBinding, event: Event, awaitable: Awaitable[Any]
    ) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            LOGGER.warning(
                "hook.async.no_loop",
                extra={
                    "event": "hook.async.no_loop",
                    "event_type": event.type,
                    "event_id": event.id,
                    "handler": binding.name,
                },
            )
            return

        async def _guarded() -> None:
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_failure("hook.async.failed", binding, event, exc)

        self._tasks.spawn(_guarded(), label=f"hook:{event.type}:{binding.name}")

    @staticmethod
    def _log_failure(
        event_name: str, binding: HookBinding, event: Event, exc: Exception
    ) -> None:
        error = HookExecutionError(event.type, binding.name, exc)
        LOGGER.error(
            event_name,
            extra={
                "event": event_name,
                "event_type": event.type,
                "event_id": event.id,
                "handler": binding.name,
                "error_type": type(exc).__name__,
                "error": str(error),
            },
        )
