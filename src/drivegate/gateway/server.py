"""Listening socket lifecycle for the drive gateway."""

from __future__ import annotations

import asyncio
import enum
import socket
from typing import Any, Callable, Optional

import structlog
import uvicorn

from ..common.settings import DEFAULT_PORT
from .connections import ConnectionTracker, tracked_protocol
from .handler import AccessFilter, GatewayState, IdentifierDecoder, create_app
from .links import build_link, format_host
from .resolvers import Resolver


LOGGER = structlog.get_logger("drivegate.gateway.server")

EVENTS = ("request-error", "suspend", "resume")

_STARTUP_POLL_SECONDS = 0.01
_STOP_POLL_SECONDS = 0.05


class ServerState(str, enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    SUSPENDING = "suspending"
    SUSPENDED = "suspended"
    RESUMING = "resuming"
    CLOSING = "closing"


def bind_socket(host: Optional[str], port: int) -> socket.socket:
    """Bind and listen on ``host:port``; the caller owns the returned socket."""

    family = socket.AF_INET6 if host and ":" in host else socket.AF_INET
    address = host or "0.0.0.0"
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((address, port))
        sock.listen(2048)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class DriveServer:
    """HTTP server exposing drives, with suspend/resume support.

    The listening socket is owned here and handed to an embedded uvicorn
    server as a duplicate, so stopping uvicorn on suspend leaves the port
    bound until :meth:`resume` rebinds it.
    """

    def __init__(
        self,
        resolver: Resolver,
        *,
        host: Optional[str] = None,
        port: int = DEFAULT_PORT,
        any_port: bool = True,
        access_filter: Optional[AccessFilter] = None,
        identifier_param: str = "drive",
        version_params: tuple[str, ...] = ("version", "checkout"),
        decode_identifier: Optional[IdentifierDecoder] = None,
        drain_timeout: float = 5.0,
        metrics_path: Optional[str] = None,
        metrics_token: Optional[str] = None,
    ) -> None:
        self.resolver = resolver
        self.host = host
        self.any_port = any_port
        self.drain_timeout = drain_timeout
        self.app = create_app(
            resolver,
            access_filter=access_filter,
            identifier_param=identifier_param,
            version_params=version_params,
            decode_identifier=decode_identifier,
            metrics_path=metrics_path,
            metrics_token=metrics_token,
        )
        self.gateway: GatewayState = self.app.state.gateway
        self.gateway.error_listeners.append(self._on_request_error)

        self._port = port
        self._state = ServerState.CLOSED
        self._closed = False
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Future] = None
        self._tracker = ConnectionTracker()
        self._listeners: dict[str, list[Callable[..., Any]]] = {event: [] for event in EVENTS}

        self._opening: Optional[asyncio.Future] = None
        self._suspending: Optional[asyncio.Future] = None
        self._resuming: Optional[asyncio.Future] = None
        self._closing: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "DriveServer":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # state

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> int:
        """Bound port once listening, the configured port before that."""
        return self._port

    def address(self) -> Optional[tuple[str, int]]:
        if self._socket is None:
            return None
        host, port = self._socket.getsockname()[:2]
        return host, port

    @property
    def opened(self) -> bool:
        return self._opening is not None and self._opening.done() and not self._opening.cancelled() and self._opening.exception() is None

    @property
    def suspended(self) -> bool:
        return self._state is ServerState.SUSPENDED

    @property
    def closing(self) -> bool:
        return self.gateway.closing

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connections(self) -> int:
        return len(self._tracker)

    # events

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown event {event!r}")
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> bool:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:  # noqa: BLE001
                LOGGER.exception("listener_failed", event=event)

    def _on_request_error(self, error: BaseException) -> None:
        self._emit("request-error", error)

    # lifecycle

    async def open(self) -> None:
        if self.closing or self._closed:
            raise RuntimeError("server is closed")
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open())
        await asyncio.shield(self._opening)

    async def _open(self) -> None:
        self._state = ServerState.OPENING
        try:
            self._socket = self._listen(self._port)
            await self._start_server()
        except BaseException:
            self._close_socket()
            self._state = ServerState.CLOSED
            raise
        self._state = ServerState.OPEN
        LOGGER.info("server_listening", host=self.host, port=self.port)

    async def suspend(self) -> None:
        """Stop accepting, drop live connections and keep the port bound."""

        if self._opening is not None and not self.closing:
            # waits for an open that is still in progress
            await asyncio.shield(self._opening)
        if self._resuming is not None:
            await asyncio.shield(self._resuming)
        if self.closing or self._state in (ServerState.SUSPENDED, ServerState.CLOSED):
            return
        if self._suspending is None:
            self._suspending = asyncio.ensure_future(self._suspend())
        await asyncio.shield(self._suspending)

    async def _suspend(self) -> None:
        self._state = ServerState.SUSPENDING
        try:
            await self._stop_server()
        finally:
            self._suspending = None
        self._state = ServerState.SUSPENDED
        LOGGER.info("server_suspended", port=self.port)
        self._emit("suspend")

    async def resume(self) -> None:
        """Rebind the recorded port, or an ephemeral one when it was taken meanwhile."""

        if self._resuming is None:
            if self._state is not ServerState.SUSPENDED or self.closing:
                return
            self._resuming = asyncio.ensure_future(self._resume())
        await asyncio.shield(self._resuming)

    async def _resume(self) -> None:
        self._state = ServerState.RESUMING
        try:
            self._close_socket()
            self._socket = self._listen(self._port)
            await self._start_server()
        except BaseException:
            self._close_socket()
            self._state = ServerState.SUSPENDED
            raise
        finally:
            self._resuming = None
        self._state = ServerState.OPEN
        LOGGER.info("server_resumed", port=self.port)
        self._emit("resume")

    async def close(self) -> None:
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._close())
        await asyncio.shield(self._closing)

    async def _close(self) -> None:
        # nothing is reported for requests torn down from here on
        self.gateway.closing = True
        pending = [task for task in (self._opening, self._resuming, self._suspending) if task is not None]
        if pending:
            await asyncio.wait(pending)

        self._state = ServerState.CLOSING
        try:
            await self._stop_server()
            self._close_socket()
            await self.resolver.close()
        finally:
            self._state = ServerState.CLOSED
            self._closed = True
        LOGGER.info("server_closed", port=self.port)

    # helpers

    def _listen(self, port: int) -> socket.socket:
        try:
            sock = bind_socket(self.host, port)
        except OSError as exc:
            if not self.any_port or port == 0:
                raise
            LOGGER.warning("port_unavailable", host=self.host, port=port, error=str(exc))
            sock = bind_socket(self.host, 0)
        self._port = sock.getsockname()[1]
        return sock

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    async def _start_server(self) -> None:
        assert self._socket is not None
        config = uvicorn.Config(
            self.app,
            log_config=None,
            lifespan="off",
            access_log=False,
            http=tracked_protocol(self._tracker),
        )
        server = uvicorn.Server(config)
        # uvicorn closes the sockets it serves on shutdown
        task = asyncio.ensure_future(server.serve(sockets=[self._socket.dup()]))
        while not server.started:
            if task.done():
                task.result()
                raise RuntimeError("embedded server exited during startup")
            await asyncio.sleep(_STARTUP_POLL_SECONDS)
        self._server = server
        self._server_task = task

    async def _stop_server(self) -> None:
        server, task = self._server, self._server_task
        self._server = None
        self._server_task = None
        if server is not None:
            server.should_exit = True
            server.force_exit = True
        if task is not None:
            # connections accepted before uvicorn stops listening are dropped as well
            while not task.done():
                await self._tracker.destroy_all()
                await asyncio.wait({task}, timeout=_STOP_POLL_SECONDS)
            task.result()
        await self._tracker.destroy_all()
        if not await self.gateway.wait_idle(self.drain_timeout):
            LOGGER.warning("requests_still_pending", count=self.gateway.inflight, timeout=self.drain_timeout)

    def get_link(
        self,
        path: str,
        *,
        host: Optional[str] = None,
        https: bool = False,
        identifier: Any = None,
        version: Optional[int] = None,
    ) -> str:
        if host is None:
            host = f"{format_host(self.host)}:{self.port}"
        return build_link(
            path,
            host=host,
            https=https,
            identifier=identifier,
            version=version,
            identifier_param=self.gateway.identifier_param,
            version_param=self.gateway.version_params[0],
        )
