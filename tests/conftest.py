from __future__ import annotations

import httpx
import pytest

from drivegate.drives.memory import MemoryDrive


DRIVE_KEY = bytes(range(32))


@pytest.fixture
def drive() -> MemoryDrive:
    return MemoryDrive(key=DRIVE_KEY, chunk_size=1024)


@pytest.fixture
def asgi_client():
    """Factory for httpx clients talking to an app in-process."""

    def _make(app, *, raise_app_exceptions: bool = True) -> httpx.AsyncClient:
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
        return httpx.AsyncClient(transport=transport, base_url="http://testserver")

    return _make


class CountingBroker:
    """Records acquire/release calls made through a ``CallbackBroker``."""

    def __init__(self, drive) -> None:
        self.drive = drive
        self.acquired = []
        self.released = []

    def acquire(self, request):
        self.acquired.append(request)
        return self.drive

    def release(self, identifier, drive) -> None:
        self.released.append(identifier)


@pytest.fixture
def counting_broker(drive) -> CountingBroker:
    return CountingBroker(drive)
