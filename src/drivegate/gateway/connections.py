"""Tracking of live client connections so they can be dropped on demand."""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable

import structlog
from uvicorn.protocols.http.h11_impl import H11Protocol

from ..common.metrics import ACTIVE_CONNECTIONS_GAUGE


LOGGER = structlog.get_logger("drivegate.gateway.connections")


class ConnectionTracker:
    """Live transports accepted by one listening socket."""

    def __init__(self) -> None:
        self._connections: dict[asyncio.BaseTransport, asyncio.Future[None]] = {}

    def add(self, transport: asyncio.BaseTransport) -> None:
        self._connections[transport] = asyncio.get_running_loop().create_future()
        ACTIVE_CONNECTIONS_GAUGE.inc()

    def discard(self, transport: asyncio.BaseTransport) -> None:
        closed = self._connections.pop(transport, None)
        if closed is None:
            return
        ACTIVE_CONNECTIONS_GAUGE.dec()
        if not closed.done():
            closed.set_result(None)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, transport: object) -> bool:
        return transport in self._connections

    async def destroy_all(self) -> int:
        """Abort every live connection and wait until each reports closed."""

        waiters = list(self._connections.values())
        transports = list(self._connections)
        for transport in transports:
            transport.abort()
        if waiters:
            await asyncio.gather(*waiters)
        if transports:
            LOGGER.info("connections_destroyed", count=len(transports))
        return len(transports)


class TrackedH11Protocol(H11Protocol):
    """uvicorn h11 protocol reporting connection open/close to a tracker."""

    def __init__(self, *args: Any, tracker: ConnectionTracker, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._tracker = tracker

    def connection_made(self, transport: asyncio.Transport) -> None:  # type: ignore[override]
        super().connection_made(transport)
        self._tracker.add(transport)

    def connection_lost(self, exc: Exception | None) -> None:
        super().connection_lost(exc)
        self._tracker.discard(self.transport)


def tracked_protocol(tracker: ConnectionTracker) -> Callable[..., TrackedH11Protocol]:
    """Protocol factory for ``uvicorn.Config(http=...)`` bound to ``tracker``."""

    return partial(TrackedH11Protocol, tracker=tracker)
