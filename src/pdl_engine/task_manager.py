"""Lifecycle tracking for detached asyncio work (async hooks, reconnects, writers)."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous background tasks so shutdown can cancel them."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
        label: str | None = None,
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the resulting task.

        A named spawn replaces (without cancelling) a prior task of that name.
        """
        task = asyncio.get_running_loop().create_task(coro, name=name or label)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Track an existing task, optionally under a unique name."""
        if name is not None:
            self._named[name] = task
            task.add_done_callback(self._log_exception)
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
            task.add_done_callback(self._log_exception)

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        try:
            exc = task.exception()
        except Exception:
            return
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        named = sum(1 for task in self._named.values() if not task.done())
        return named + sum(1 for task in self._anonymous if not task.done())

    async def cancel(self, name: str) -> None:
        """Cancel a named task and wait for it to finish."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks = [*self._named.values(), *(t for t in self._anonymous if not t.done())]
        for task in all_tasks:
            if not task.done():
                task.cancel()
        for task in all_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # Already reported by _log_exception.
                continue
        self._named.clear()
        self._anonymous.clear()

    async def drain(self) -> None:
        """Wait until every anonymous task, including ones spawned meanwhile, is done.

        Named tasks are long-lived loops (reconnects, writers) and are left
        running; stop them with ``cancel`` or ``cancel_all``.
        """
        while True:
            pending = [
                task
                for task in self._anonymous
                if not task.done() and task is not asyncio.current_task()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def discard(self, name: str) -> None:
        """Stop tracking a named task without cancelling it."""
        self._named.pop(name, None)
