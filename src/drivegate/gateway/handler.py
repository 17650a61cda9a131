"""Request handling: resolve a drive, look up the entry and stream its bytes."""

from __future__ import annotations

import asyncio
import inspect
import mimetypes
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Message, Receive, Scope, Send

from ..common.http_security import metrics_guard
from ..common.keys import encode_key
from ..common.metrics import (
    BYTES_SERVED_COUNTER,
    GLOBAL_REGISTRY,
    NOT_FOUND_COUNTER,
    RELEASE_FAILURES_COUNTER,
    REQUEST_COUNTER,
    REQUEST_ERRORS_COUNTER,
    REQUEST_LATENCY_HISTOGRAM,
)
from ..drives.base import Drive, Entry, SnapshotUnavailable
from .links import normalize_path
from .ranges import resolve_range
from .resolvers import DriveRequest, Lease, Resolver


LOGGER = structlog.get_logger("drivegate.gateway")
TRACER = trace.get_tracer("drivegate.gateway")

DEFAULT_CONTENT_TYPE = "application/octet-stream"

AccessFilter = Callable[[Any, str, Drive], Union[bool, Awaitable[bool]]]
IdentifierDecoder = Callable[[str], Any]
ErrorListener = Callable[[BaseException], None]


class BadRequest(ValueError):
    """Request parameters that cannot be routed to a drive."""


def content_type_for(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path, strict=False)
    return guessed or DEFAULT_CONTENT_TYPE


def describe_identifier(identifier: Any) -> Optional[str]:
    if identifier is None:
        return None
    if isinstance(identifier, (bytes, bytearray)) and len(identifier) == 32:
        return encode_key(bytes(identifier))
    return str(identifier)


@dataclass
class RequestContext:
    """Everything known about one request while it is being served."""

    method: str
    path: str
    identifier: Any = None
    version: int = 0
    range_header: Optional[str] = None
    lease: Optional[Lease] = None
    snapshot: Optional[Drive] = None
    status_code: Optional[int] = None
    bytes_sent: int = 0
    headers_sent: bool = False
    body_complete: bool = False
    disconnected: bool = False
    error: Optional[BaseException] = None

    @property
    def drive(self) -> Optional[Drive]:
        return self.lease.drive if self.lease is not None else None


@dataclass
class GatewayState:
    """Configuration and shared bookkeeping for every request of one app."""

    resolver: Resolver
    access_filter: Optional[AccessFilter] = None
    identifier_param: str = "drive"
    version_params: tuple[str, ...] = ("version", "checkout")
    decode_identifier: Optional[IdentifierDecoder] = None
    closing: bool = False
    error_listeners: list[ErrorListener] = field(default_factory=list)
    _inflight: set[asyncio.Future] = field(default_factory=set, repr=False)

    def parse_request(self, request: Request) -> RequestContext:
        params = request.query_params

        identifier: Any = params.get(self.identifier_param) or None
        if identifier is not None and self.decode_identifier is not None:
            try:
                identifier = self.decode_identifier(identifier)
            except ValueError as exc:
                raise BadRequest(f"invalid {self.identifier_param}: {exc}") from exc

        version = 0
        raw_version = next((params[name] for name in self.version_params if params.get(name)), None)
        if raw_version is not None:
            if not (raw_version.isascii() and raw_version.isdigit()):
                raise BadRequest(f"invalid version {raw_version!r}")
            version = int(raw_version)

        return RequestContext(
            method=request.method,
            path=normalize_path(request.scope["path"]),
            identifier=identifier,
            version=version,
            range_header=request.headers.get("range") or None,
        )

    def report_error(self, error: BaseException) -> None:
        REQUEST_ERRORS_COUNTER.inc()
        LOGGER.error("request_error", error=repr(error), exc_info=error)
        for listener in list(self.error_listeners):
            try:
                listener(error)
            except Exception:  # noqa: BLE001
                LOGGER.exception("request_error_listener_failed")

    def begin(self) -> asyncio.Future:
        done = asyncio.get_running_loop().create_future()
        self._inflight.add(done)
        return done

    def finish(self, done: asyncio.Future) -> None:
        self._inflight.discard(done)
        if not done.done():
            done.set_result(None)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight requests to finish; ``False`` when the timeout expired first."""

        pending = [done for done in self._inflight if not done.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending


class DriveResponse(Response):
    """Response that acquires a drive, looks up the entry and streams it.

    As with Starlette's ``FileResponse`` the status and headers depend on
    the entry, so all of the work happens when the response is sent.
    """

    def __init__(self, state: GatewayState, context: RequestContext) -> None:
        self.state = state
        self.context = context
        self.status_code = status.HTTP_200_OK
        self.media_type = None
        self.background = None
        self.init_headers()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        ctx = self.context
        done = self.state.begin()
        started = time.perf_counter()
        REQUEST_COUNTER.inc()
        attributes = {"drivegate.path": ctx.path, "drivegate.version": ctx.version, "http.method": ctx.method}
        if ctx.identifier is not None:
            attributes["drivegate.identifier"] = describe_identifier(ctx.identifier)
        with TRACER.start_as_current_span("drivegate.request", attributes=attributes) as span:
            try:
                try:
                    await self._run(receive, send)
                finally:
                    await self._teardown()
                await self._end(send)
            finally:
                self.state.finish(done)
                if ctx.status_code is not None:
                    span.set_attribute("http.status_code", ctx.status_code)
                span.set_attribute("drivegate.bytes_sent", ctx.bytes_sent)
                self._log_completion(time.perf_counter() - started)
        if self.background is not None:
            await self.background()

    async def _run(self, receive: Receive, send: Send) -> None:
        ctx = self.context
        serving = asyncio.ensure_future(self._serve(self._tracking(send)))
        watching = asyncio.ensure_future(self._watch_disconnect(receive))
        try:
            await asyncio.wait({serving, watching}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not serving.done():
                if ctx.body_complete:
                    await asyncio.wait({serving})
                else:
                    ctx.disconnected = True
                    serving.cancel()
            watching.cancel()
            await asyncio.wait({serving, watching})
            if not watching.cancelled():
                watching.exception()
        if not serving.cancelled() and serving.exception() is not None:
            ctx.error = serving.exception()

    async def _watch_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    def _tracking(self, send: Send) -> Send:
        ctx = self.context

        async def tracked(message: Message) -> None:
            if message["type"] == "http.response.start":
                ctx.headers_sent = True
                ctx.status_code = message["status"]
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                ctx.body_complete = True

        return tracked

    async def _serve(self, send: Send) -> None:
        ctx = self.context
        state = self.state

        lease = await state.resolver.acquire(DriveRequest(ctx.identifier, ctx.path, ctx.version))
        if lease is None:
            await self._send_empty(send, status.HTTP_404_NOT_FOUND)
            return
        ctx.lease = lease
        if state.closing:
            return

        if state.access_filter is not None:
            allowed = state.access_filter(ctx.identifier, ctx.path, lease.drive)
            if inspect.isawaitable(allowed):
                allowed = await allowed
            if not allowed:
                # filtered paths are indistinguishable from missing ones
                await self._send_empty(send, status.HTTP_404_NOT_FOUND)
                return

        try:
            ctx.snapshot = lease.drive.checkout(ctx.version) if ctx.version else lease.drive
            entry = await ctx.snapshot.entry(ctx.path)
        except SnapshotUnavailable:
            if state.closing:
                return
            await self._send_empty(send, status.HTTP_404_NOT_FOUND)
            return
        if state.closing:
            return

        if entry is None or entry.blob is None:
            await self._send_empty(send, status.HTTP_404_NOT_FOUND)
            return
        await self._stream(send, entry)

    async def _stream(self, send: Send, entry: Entry) -> None:
        ctx = self.context
        total = entry.blob.byte_length
        self.headers["content-type"] = content_type_for(ctx.path)
        self.headers["accept-ranges"] = "bytes"

        window = resolve_range(total, ctx.range_header)
        if window is None:
            self.headers["content-length"] = "0"
            await self._start(send, status.HTTP_206_PARTIAL_CONTENT)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            return

        if window.partial:
            self.headers["content-range"] = window.content_range
        self.headers["content-length"] = str(window.length)
        await self._start(send, status.HTTP_206_PARTIAL_CONTENT if window.partial else status.HTTP_200_OK)

        if ctx.method == "HEAD" or window.length == 0:
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            return

        stream = ctx.snapshot.read_stream(ctx.path, start=window.start, length=window.length)
        try:
            async for chunk in stream:
                if not chunk:
                    continue
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                ctx.bytes_sent += len(chunk)
                BYTES_SERVED_COUNTER.inc(len(chunk))
        finally:
            await _close_stream(stream)
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _start(self, send: Send, status_code: int) -> None:
        self.status_code = status_code
        await send({"type": "http.response.start", "status": status_code, "headers": self.raw_headers})

    async def _send_empty(self, send: Send, status_code: int) -> None:
        if status_code == status.HTTP_404_NOT_FOUND:
            NOT_FOUND_COUNTER.inc()
        self.status_code = status_code
        await send({"type": "http.response.start", "status": status_code, "headers": [(b"content-length", b"0")]})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _teardown(self) -> None:
        ctx = self.context
        lease = ctx.lease
        if lease is None:
            return
        if ctx.snapshot is not None and ctx.snapshot is not lease.drive:
            try:
                await ctx.snapshot.close()
            except Exception:  # noqa: BLE001
                LOGGER.warning("checkout_close_failed", path=ctx.path, version=ctx.version, exc_info=True)
        try:
            await self.state.resolver.release(lease)
        except Exception as exc:  # noqa: BLE001
            RELEASE_FAILURES_COUNTER.inc()
            LOGGER.warning(
                "drive_release_failed",
                identifier=describe_identifier(ctx.identifier),
                path=ctx.path,
                error=repr(exc),
            )
            if ctx.error is None:
                ctx.error = exc

    async def _end(self, send: Send) -> None:
        ctx = self.context
        error = ctx.error
        if error is None or self.state.closing:
            return
        if not ctx.headers_sent and not ctx.disconnected:
            ctx.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
            await self._send_empty(send, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.state.report_error(error)
        if ctx.headers_sent and not ctx.body_complete and not ctx.disconnected:
            # headers are out; failing the ASGI call makes the server drop the connection
            raise error

    def _log_completion(self, duration: float) -> None:
        ctx = self.context
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": ctx.method,
            "path": ctx.path,
            "identifier": describe_identifier(ctx.identifier),
            "version": ctx.version,
            "status": ctx.status_code,
            "bytes": ctx.bytes_sent,
            "disconnected": ctx.disconnected,
            "duration_ms": round(duration * 1000, 2),
        }
        if ctx.status_code is not None and ctx.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)


async def _close_stream(stream: AsyncIterator[bytes]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


def create_app(
    resolver: Resolver,
    *,
    access_filter: Optional[AccessFilter] = None,
    identifier_param: str = "drive",
    version_params: tuple[str, ...] = ("version", "checkout"),
    decode_identifier: Optional[IdentifierDecoder] = None,
    metrics_path: Optional[str] = None,
    metrics_token: Optional[str] = None,
) -> FastAPI:
    """Build the ASGI app serving every path from the drives ``resolver`` hands out."""

    state = GatewayState(
        resolver=resolver,
        access_filter=access_filter,
        identifier_param=identifier_param,
        version_params=version_params,
        decode_identifier=decode_identifier,
    )
    # every path belongs to the drives, so no docs/openapi routes
    app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
    app.state.gateway = state

    @app.exception_handler(StarletteHTTPException)
    async def empty_error_response(request: Request, exc: StarletteHTTPException) -> Response:
        status_code = exc.status_code
        if status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            LOGGER.info("bad_request", method=request.method, path=request.scope["path"], reason="method not allowed")
            status_code = status.HTTP_400_BAD_REQUEST
        return Response(status_code=status_code)

    if metrics_path:

        @app.get(
            metrics_path,
            response_class=PlainTextResponse,
            include_in_schema=False,
            dependencies=[Depends(metrics_guard(metrics_token))],
        )
        async def metrics_endpoint() -> PlainTextResponse:
            return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{path:path}", methods=["GET", "HEAD"], include_in_schema=False)
    async def serve_drive_file(request: Request) -> Response:
        gateway: GatewayState = request.app.state.gateway
        try:
            context = gateway.parse_request(request)
        except BadRequest as exc:
            LOGGER.info("bad_request", method=request.method, path=request.scope["path"], reason=str(exc))
            return Response(status_code=status.HTTP_400_BAD_REQUEST)
        return DriveResponse(gateway, context)

    return app
