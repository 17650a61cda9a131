from __future__ import annotations

import asyncio
import socket

import httpx
import pytest

from drivegate.drives.base import Blob, Entry
from drivegate.drives.memory import MemoryDrive
from drivegate.gateway.resolvers import CallbackBroker, StaticRegistry
from drivegate.gateway.server import DriveServer, ServerState, bind_socket


class HugeDrive(MemoryDrive):
    """Pretends to hold one very large file generated on the fly."""

    SIZE = 256 * 1024 * 1024

    async def entry(self, path):
        return Entry(key=path, blob=Blob(byte_length=self.SIZE))

    def read_stream(self, path, *, start=0, length=None):
        return self._generate(length if length is not None else self.SIZE - start)

    async def _generate(self, remaining):
        chunk = b"\0" * (64 * 1024)
        while remaining > 0:
            piece = chunk[: min(len(chunk), remaining)]
            remaining -= len(piece)
            yield piece
            await asyncio.sleep(0)


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(trust_env=False, timeout=10.0)


def _server(resolver, **kwargs) -> DriveServer:
    kwargs.setdefault("host", "127.0.0.1")
    kwargs.setdefault("port", 0)
    return DriveServer(resolver, **kwargs)


@pytest.mark.asyncio
async def test_serves_over_tcp(drive) -> None:
    await drive.put("/index.html", b"<h1>hi</h1>")
    async with _server(StaticRegistry(default=drive)) as server:
        assert server.state is ServerState.OPEN
        assert server.port != 0
        assert server.address() == ("127.0.0.1", server.port)
        async with _client() as client:
            response = await client.get(server.get_link("/index.html"))
            ranged = await client.get(server.get_link("/index.html"), headers={"Range": "bytes=4-7"})
    assert response.status_code == 200
    assert response.text == "<h1>hi</h1>"
    assert response.headers["content-type"].startswith("text/html")
    assert ranged.status_code == 206
    assert ranged.content == b"hi</"
    assert server.closed
    assert server.state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_get_link_uses_bound_port(drive) -> None:
    async with _server(StaticRegistry(default=drive)) as server:
        link = server.get_link("/a b.txt", identifier="docs", version=2)
        assert link == f"http://127.0.0.1:{server.port}/a%20b.txt?drive=docs&version=2"
        assert server.get_link("/x", host="example.org", https=True) == "https://example.org/x"


@pytest.mark.asyncio
async def test_suspend_and_resume_keep_port(drive) -> None:
    await drive.put("/a.txt", b"still here")
    suspended, resumed = [], []
    server = _server(StaticRegistry(default=drive))
    server.add_listener("suspend", lambda: suspended.append(True))
    server.add_listener("resume", lambda: resumed.append(True))
    try:
        await server.open()
        port = server.port
        async with _client() as client:
            assert (await client.get(server.get_link("/a.txt"))).status_code == 200

        await asyncio.gather(server.suspend(), server.suspend())
        assert server.suspended
        assert server.state is ServerState.SUSPENDED
        await server.suspend()
        assert suspended == [True]

        await asyncio.gather(server.resume(), server.resume())
        assert server.state is ServerState.OPEN
        await server.resume()
        assert resumed == [True]
        assert server.port == port

        async with _client() as client:
            response = await client.get(server.get_link("/a.txt"))
        assert response.text == "still here"
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_suspend_drops_live_connections(drive, counting_broker) -> None:
    server = _server(CallbackBroker(counting_broker.acquire, counting_broker.release))
    await server.open()
    try:
        async with _client() as client:
            # the lookup waits for a version that never arrives
            pending = asyncio.ensure_future(client.get(server.get_link("/later", version=3)))
            for _ in range(200):
                if counting_broker.acquired:
                    break
                await asyncio.sleep(0.01)
            assert counting_broker.acquired

            await server.suspend()
            assert counting_broker.released == [None]
            assert server.connections == 0
            with pytest.raises(httpx.TransportError):
                await pending
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_falls_back_to_free_port_when_taken(drive) -> None:
    blocker = bind_socket("127.0.0.1", 0)
    taken = blocker.getsockname()[1]
    try:
        async with _server(StaticRegistry(default=drive), port=taken) as server:
            assert server.port not in (0, taken)
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_without_any_port_bind_failure_raises(drive) -> None:
    blocker = bind_socket("127.0.0.1", 0)
    taken = blocker.getsockname()[1]
    server = _server(StaticRegistry(default=drive), port=taken, any_port=False)
    try:
        with pytest.raises(OSError):
            await server.open()
        assert server.state is ServerState.CLOSED
    finally:
        blocker.close()
        await server.close()


@pytest.mark.asyncio
async def test_resume_moves_to_new_port_when_original_is_taken(drive) -> None:
    server = _server(StaticRegistry(default=drive))
    await server.open()
    try:
        port = server.port
        await server.suspend()
        # take the port over while the server is suspended
        server._close_socket()
        blocker = bind_socket("127.0.0.1", port)
        try:
            await server.resume()
            assert server.port != port
            assert server.state is ServerState.OPEN
        finally:
            blocker.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_close_during_large_transfer_aborts_and_releases_once(counting_broker) -> None:
    counting_broker.drive = HugeDrive()
    errors = []
    server = _server(CallbackBroker(counting_broker.acquire, counting_broker.release))
    server.add_listener("request-error", errors.append)
    await server.open()

    received = 0
    with pytest.raises(httpx.TransportError):
        async with _client() as client:
            async with client.stream("GET", server.get_link("/huge.bin")) as response:
                assert response.status_code == 200
                assert response.headers["content-length"] == str(HugeDrive.SIZE)
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received >= 1024 * 1024 and not server.closing:
                        asyncio.ensure_future(server.close())

    await server.close()
    assert 0 < received < HugeDrive.SIZE
    assert counting_broker.released == [None]
    assert errors == []


@pytest.mark.asyncio
async def test_close_releases_pending_future_version_lookup(drive, counting_broker) -> None:
    server = _server(CallbackBroker(counting_broker.acquire, counting_broker.release))
    await server.open()

    async with _client() as client:
        pending = asyncio.ensure_future(client.get(server.get_link("/a", version=10)))
        for _ in range(200):
            if counting_broker.acquired:
                break
            await asyncio.sleep(0.01)
        await server.close()
        with pytest.raises(httpx.TransportError):
            await pending

    assert counting_broker.released == [None]


@pytest.mark.asyncio
async def test_request_errors_reach_listeners(counting_broker) -> None:
    class Exploding(MemoryDrive):
        async def entry(self, path):
            raise RuntimeError("kaboom")

    counting_broker.drive = Exploding()
    errors = []
    async with _server(CallbackBroker(counting_broker.acquire, counting_broker.release)) as server:
        server.add_listener("request-error", errors.append)
        async with _client() as client:
            response = await client.get(server.get_link("/x"))
    assert response.status_code == 500
    assert [str(error) for error in errors] == ["kaboom"]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_final(drive) -> None:
    server = _server(StaticRegistry(default=drive))
    await server.open()
    await asyncio.gather(server.close(), server.close())
    await server.close()
    assert server.closed
    with pytest.raises(RuntimeError):
        await server.open()
    await server.resume()
    assert server.state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_suspend_opens_first(drive) -> None:
    server = _server(StaticRegistry(default=drive))
    try:
        await server.suspend()
        assert server.opened
        assert server.suspended
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_close_closes_resolver(drive) -> None:
    registry = StaticRegistry(default=drive)
    async with _server(registry):
        assert len(registry) == 1
    assert len(registry) == 0


def test_unknown_listener_event(drive) -> None:
    server = _server(StaticRegistry(default=drive))
    with pytest.raises(ValueError):
        server.add_listener("connection", print)
    assert server.remove_listener("suspend", print) is False


def test_bind_socket_reports_conflicts() -> None:
    blocker = bind_socket("127.0.0.1", 0)
    try:
        with pytest.raises(OSError):
            bind_socket("127.0.0.1", blocker.getsockname()[1])
    finally:
        blocker.close()
    assert isinstance(blocker, socket.socket)


@pytest.mark.asyncio
async def test_suspend_waits_for_open_in_progress(drive) -> None:
    await drive.put("/a.txt", b"x")
    suspended = []
    server = _server(StaticRegistry(default=drive))
    server.add_listener("suspend", lambda: suspended.append(True))
    try:
        opening = asyncio.ensure_future(server.open())
        await asyncio.sleep(0)
        await server.suspend()
        await opening

        assert server.suspended
        assert server.state is ServerState.SUSPENDED
        assert suspended == [True]
        async with httpx.AsyncClient(trust_env=False, timeout=0.5) as client:
            with pytest.raises(httpx.TransportError):
                await client.get(server.get_link("/a.txt"))
    finally:
        await server.close()
