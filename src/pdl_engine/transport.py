"""Transport contract consumed by the connectivity manager, plus an in-process hub.

The engine never frames network traffic itself. Anything that can deliver a
JSON string to peers and report incoming strings satisfies ``Transport``.
``LocalHub`` relays messages between engines in the same process, which is
enough for several agents sharing one event loop and for tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
from typing import Protocol, runtime_checkable

from .exceptions import TransportError

LOGGER = logging.getLogger(__name__)

ReceiveHandler = Callable[[str], None]
CloseHandler = Callable[[BaseException | None], None]


@runtime_checkable
class Transport(Protocol):
    """Minimal duplex message channel.

    ``connect`` completes the handshake or raises ``TransportError``. Once
    connected, incoming messages go to the ``on_receive`` handler and loss of
    the link is reported once through the ``on_close`` handler.
    """

    @property
    def is_open(self) -> bool: ...

    async def connect(self, endpoint: str) -> None: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def on_receive(self, handler: ReceiveHandler) -> None: ...

    def on_close(self, handler: CloseHandler) -> None: ...


class LocalHub:
    """Relay that broadcasts every message to the other members of a channel."""

    def __init__(self) -> None:
        self.available = True
        self._channels: dict[str, list[HubTransport]] = {}

    def transport(self) -> HubTransport:
        return HubTransport(self)

    def members(self, endpoint: str) -> list[HubTransport]:
        return list(self._channels.get(endpoint, []))

    def _join(self, endpoint: str, member: HubTransport) -> None:
        if not self.available:
            raise TransportError(f"Hub endpoint {endpoint!r} is unavailable.")
        channel = self._channels.setdefault(endpoint, [])
        if member not in channel:
            channel.append(member)

    def _leave(self, endpoint: str, member: HubTransport) -> None:
        channel = self._channels.get(endpoint, [])
        if member in channel:
            channel.remove(member)
        if not channel:
            self._channels.pop(endpoint, None)

    def _broadcast(self, endpoint: str, sender: HubTransport, message: str) -> None:
        for member in self.members(endpoint):
            if member is not sender:
                member._deliver(message)

    def disconnect_all(self, error: BaseException | None = None) -> None:
        """Drop every open link, as a network outage would."""
        for endpoint in list(self._channels):
            for member in self.members(endpoint):
                member._drop(error or TransportError("Hub connection lost."))


class HubTransport:
    """One member's link to a ``LocalHub``."""

    def __init__(self, hub: LocalHub) -> None:
        self._hub = hub
        self._endpoint: str | None = None
        self._receive_handlers: list[ReceiveHandler] = []
        self._close_handlers: list[CloseHandler] = []

    @property
    def is_open(self) -> bool:
        return self._endpoint is not None

    def on_receive(self, handler: ReceiveHandler) -> None:
        self._receive_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def connect(self, endpoint: str) -> None:
        await asyncio.sleep(0)
        self._hub._join(endpoint, self)
        self._endpoint = endpoint

    async def send(self, message: str) -> None:
        if self._endpoint is None:
            raise TransportError("Transport is not connected.")
        if not self._hub.available:
            self._drop(TransportError("Hub became unavailable."))
            raise TransportError("Hub became unavailable.")
        await asyncio.sleep(0)
        self._hub._broadcast(self._endpoint, self, message)

    async def close(self) -> None:
        if self._endpoint is None:
            return
        self._hub._leave(self._endpoint, self)
        self._endpoint = None

    def _deliver(self, message: str) -> None:
        loop = asyncio.get_running_loop()
        for handler in list(self._receive_handlers):
            loop.call_soon(handler, message)

    def _drop(self, error: BaseException | None) -> None:
        if self._endpoint is None:
            return
        self._hub._leave(self._endpoint, self)
        self._endpoint = None
        for handler in list(self._close_handlers):
            try:
                handler(error)
            except Exception as exc:
                LOGGER.error(
                    "transport.close_handler.failed",
                    extra={"event": "transport.close_handler.failed", "error": str(exc)},
                )
