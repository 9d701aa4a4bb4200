"""Online/offline duality for outgoing and incoming events.

State diagram:
    offline       (no endpoint or transport; terminal, never connects)
    disconnected → connecting   (startup, or fixed backoff after a lost link)
    connecting   → connected    (handshake done and offline buffer flushed)
    connecting   → disconnected (handshake or flush failed)
    connected    → disconnected (send failure or transport close)

While not connected every outgoing event goes to the offline buffer; the
buffer is replayed in enqueue order before anything emitted later.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from enum import Enum
import inspect
import logging
from typing import Any, Protocol

from ..events.model import Event
from ..exceptions import MalformedIncomingEventError, TransportError
from ..offline_buffer import OfflineBuffer
from ..task_manager import TaskManager
from ..transport import Transport

LOGGER = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL_SECONDS = 5.0

_CONNECT_TASK = "connectivity.connect"
_WRITER_TASK = "connectivity.writer"


class ConnectivityState(str, Enum):
    OFFLINE = "offline"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EventSink(Protocol):
    """The side of the event bus the connectivity manager talks to."""

    def on_event(self, raw_event: Event | Mapping[str, Any]) -> bool: ...

    def emit(self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any) -> str: ...


StateCallback = Callable[[ConnectivityState, ConnectivityState], Any]


class ConnectivityManager:
    """Stream events to peers when connected, buffer them durably otherwise."""

    def __init__(
        self,
        transport: Transport | None = None,
        endpoint: str | None = None,
        *,
        offline_buffer: OfflineBuffer | None = None,
        reconnect_interval_seconds: float = DEFAULT_RECONNECT_INTERVAL_SECONDS,
        tasks: TaskManager | None = None,
    ) -> None:
        self._transport = transport
        self._endpoint = (endpoint or "").strip()
        self.buffer = offline_buffer or OfflineBuffer()
        self.reconnect_interval = max(0.0, reconnect_interval_seconds)
        self._tasks = tasks or TaskManager()
        self._sink: EventSink | None = None
        self._outbox: asyncio.Queue[Event] | None = None
        self._in_flight: Event | None = None
        self._stopped = False
        self._on_state_change: list[StateCallback] = []

        if self._transport is None or not self._endpoint:
            self._state = ConnectivityState.OFFLINE
        else:
            self._state = ConnectivityState.DISCONNECTED
            self._transport.on_receive(self._handle_message)
            self._transport.on_close(self._handle_close)

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectivityState.CONNECTED

    def attach(self, sink: EventSink) -> None:
        """Route incoming peer events and connection announcements to ``sink``."""
        self._sink = sink

    def on_state_change(self, callback: StateCallback) -> None:
        """Register ``callback(old_state, new_state)``."""
        self._on_state_change.append(callback)

    async def start(self) -> None:
        """Begin connecting unless the manager is permanently offline."""
        self._stopped = False
        if self._state is ConnectivityState.OFFLINE:
            LOGGER.info(
                "connectivity.offline",
                extra={"event": "connectivity.offline", "buffered": len(self.buffer)},
            )
            return
        if self._state is ConnectivityState.CONNECTED or self._tasks.is_running(
            _CONNECT_TASK
        ):
            return
        self._tasks.spawn(self._connect_loop(initial_delay=0.0), name=_CONNECT_TASK)

    async def stop(self) -> None:
        """Cancel reconnect attempts and the writer, keeping unsent events buffered."""
        self._stopped = True
        await self._tasks.cancel(_CONNECT_TASK)
        await self._tasks.cancel(_WRITER_TASK)
        self._requeue_outbox()
        if self._transport is not None and self._transport.is_open:
            try:
                await self._transport.close()
            except (TransportError, OSError) as exc:
                LOGGER.warning(
                    "connectivity.close.failed",
                    extra={"event": "connectivity.close.failed", "error": str(exc)},
                )
        if self._state is not ConnectivityState.OFFLINE:
            self._set_state(ConnectivityState.DISCONNECTED)

    def publish(self, event: Event) -> None:
        """Hand an outgoing event over for delivery."""
        if self._state is ConnectivityState.CONNECTED and self._outbox is not None:
            self._outbox.put_nowait(event)
            return
        self.buffer.put(event)
        LOGGER.debug(
            "connectivity.buffered",
            extra={
                "event": "connectivity.buffered",
                "event_id": event.id,
                "state": self._state.value,
                "buffered": len(self.buffer),
            },
        )

    async def _connect_loop(self, initial_delay: float) -> None:
        delay = initial_delay
        while not self._stopped:
            if delay > 0:
                await asyncio.sleep(delay)
            delay = self.reconnect_interval
            assert self._transport is not None

            self._set_state(ConnectivityState.CONNECTING)
            try:
                await self._transport.connect(self._endpoint)
                await self._flush_buffer()
            except (TransportError, OSError) as exc:
                LOGGER.warning(
                    "connectivity.connect.failed",
                    extra={
                        "event": "connectivity.connect.failed",
                        "endpoint": self._endpoint,
                        "retry_in_seconds": self.reconnect_interval,
                        "error": str(exc),
                    },
                )
                self._set_state(ConnectivityState.DISCONNECTED)
                continue

            # No await between the final flush check and this point, so nothing
            # emitted meanwhile can be stranded in the buffer.
            self._outbox = asyncio.Queue()
            self._set_state(ConnectivityState.CONNECTED)
            self._tasks.spawn(self._writer(self._outbox), name=_WRITER_TASK)
            if self._sink is not None:
                self._sink.emit("system", {"type": "connection", "status": "connected"})
            return

    async def _flush_buffer(self) -> None:
        assert self._transport is not None
        flushed = 0
        while (event := self.buffer.peek()) is not None:
            message = _encode(event)
            if message is not None:
                await self._transport.send(message)
                flushed += 1
            self.buffer.remove(event.id)
        if flushed:
            LOGGER.info(
                "connectivity.flushed",
                extra={"event": "connectivity.flushed", "count": flushed},
            )

    async def _writer(self, outbox: asyncio.Queue[Event]) -> None:
        assert self._transport is not None
        while True:
            event = await outbox.get()
            message = _encode(event)
            if message is None:
                continue
            self._in_flight = event
            try:
                await self._transport.send(message)
            except (TransportError, OSError) as exc:
                self._connection_lost(exc)
                return
            # Cleared only on success; a cancelled send stays in flight for requeue.
            self._in_flight = None

    def _handle_close(self, error: BaseException | None) -> None:
        if self._state is ConnectivityState.CONNECTED:
            self._connection_lost(error)

    def _connection_lost(self, error: BaseException | None) -> None:
        if self._state is not ConnectivityState.CONNECTED:
            return
        LOGGER.warning(
            "connectivity.lost",
            extra={
                "event": "connectivity.lost",
                "endpoint": self._endpoint,
                "retry_in_seconds": self.reconnect_interval,
                "error": str(error) if error else "",
            },
        )
        writer = self._tasks.get(_WRITER_TASK)
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        self._tasks.discard(_WRITER_TASK)
        self._requeue_outbox()
        self._set_state(ConnectivityState.DISCONNECTED)
        if not self._stopped:
            self._tasks.spawn(
                self._connect_loop(initial_delay=self.reconnect_interval),
                name=_CONNECT_TASK,
            )

    def _requeue_outbox(self) -> None:
        """Move the in-flight event and queued events back to the offline buffer."""
        if self._in_flight is not None:
            self.buffer.put(self._in_flight)
            self._in_flight = None
        if self._outbox is not None:
            while not self._outbox.empty():
                self.buffer.put(self._outbox.get_nowait())
        self._outbox = None

    def _handle_message(self, message: str) -> None:
        try:
            event = Event.from_wire(message)
        except MalformedIncomingEventError as exc:
            LOGGER.warning(
                "connectivity.incoming.malformed",
                extra={"event": "connectivity.incoming.malformed", "error": str(exc)},
            )
            return
        if self._sink is None:
            return
        try:
            self._sink.on_event(event)
        except Exception as exc:
            LOGGER.error(
                "connectivity.incoming.failed",
                extra={
                    "event": "connectivity.incoming.failed",
                    "event_id": event.id,
                    "error": str(exc),
                },
            )

    def _set_state(self, new_state: ConnectivityState) -> None:
        old_state = self._state
        if new_state is old_state:
            return
        self._state = new_state
        LOGGER.info(
            "connectivity.state.changed",
            extra={
                "event": "connectivity.state.changed",
                "old": old_state.value,
                "new": new_state.value,
            },
        )
        for callback in list(self._on_state_change):
            try:
                result = callback(old_state, new_state)
                if inspect.isawaitable(result):
                    self._tasks.spawn(result, label="connectivity.state_callback")
            except Exception as exc:
                LOGGER.error(
                    "connectivity.state_callback.failed",
                    extra={"event": "connectivity.state_callback.failed", "error": str(exc)},
                )


def _encode(event: Event) -> str | None:
    """Wire form of ``event``, or ``None`` (logged) when it cannot be encoded."""
    try:
        return event.to_json()
    except (TypeError, ValueError) as exc:
        LOGGER.error(
            "connectivity.encode.failed",
            extra={
                "event": "connectivity.encode.failed",
                "event_id": event.id,
                "event_type": event.type,
                "error": str(exc),
            },
        )
        return None
