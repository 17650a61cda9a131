"""Versioned in-memory drive."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from ..common.keys import encode_key
from .base import Blob, DriveClosed, DriveError, Entry, SnapshotUnavailable


LOGGER = structlog.get_logger("drivegate.drives.memory")

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class _Record:
    path: str
    data: Optional[bytes]


def _normalize(path: str) -> str:
    return "/" + "/".join(part for part in path.split("/") if part)


class MemoryDrive:
    """Append-only drive keeping every version of every file in memory.

    Each ``put``/``delete`` appends a record and bumps ``version`` by one, so
    a checkout of an older version keeps serving the content it had then.
    """

    def __init__(
        self,
        key: Optional[bytes] = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        wait: bool = True,
    ) -> None:
        self.key = key if key is not None else os.urandom(32)
        self.chunk_size = max(1, chunk_size)
        self.wait = wait
        self.closed = False
        self._log: list[_Record] = []
        self._appended = asyncio.Event()

    @property
    def id(self) -> str:
        return encode_key(self.key)

    @property
    def version(self) -> int:
        return len(self._log)

    async def put(self, path: str, data: bytes | str) -> int:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self._append(_Record(_normalize(path), bytes(data)))

    async def delete(self, path: str) -> int:
        return self._append(_Record(_normalize(path), None))

    def _append(self, record: _Record) -> int:
        if self.closed:
            raise DriveClosed("drive is closed")
        self._log.append(record)
        appended, self._appended = self._appended, asyncio.Event()
        appended.set()
        LOGGER.debug("drive_append", path=record.path, version=self.version, deleted=record.data is None)
        return self.version

    async def wait_for_version(self, version: int) -> None:
        while self.version < version:
            if self.closed:
                raise SnapshotUnavailable(f"drive closed before reaching version {version}")
            if not self.wait:
                raise SnapshotUnavailable(f"version {version} is not available (current {self.version})")
            await self._appended.wait()

    def _lookup(self, path: str, version: int) -> Optional[_Record]:
        path = _normalize(path)
        for record in reversed(self._log[:version]):
            if record.path == path:
                return record
        return None

    async def entry(self, path: str) -> Optional[Entry]:
        return await self._entry_at(path, self.version)

    async def _entry_at(self, path: str, version: int) -> Optional[Entry]:
        if self.closed:
            raise DriveClosed("drive is closed")
        record = self._lookup(path, version)
        if record is None or record.data is None:
            return None
        return Entry(key=record.path, blob=Blob(byte_length=len(record.data)))

    def checkout(self, version: int) -> "MemorySnapshot":
        return MemorySnapshot(self, version)

    def read_stream(self, path: str, *, start: int = 0, length: Optional[int] = None) -> AsyncIterator[bytes]:
        return self._read_at(path, self.version, start, length)

    async def _read_at(self, path: str, version: int, start: int, length: Optional[int]) -> AsyncIterator[bytes]:
        record = self._lookup(path, version)
        if record is None or record.data is None:
            raise DriveError(f"no blob stored at {path}")
        data = record.data
        end = len(data) if length is None else min(len(data), start + length)
        position = start
        while position < end:
            chunk_end = min(end, position + self.chunk_size)
            yield data[position:chunk_end]
            position = chunk_end
            # give other requests a turn between chunks
            await asyncio.sleep(0)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._appended.set()


class MemorySnapshot:
    """Read-only view of a :class:`MemoryDrive` pinned to one version."""

    def __init__(self, drive: MemoryDrive, version: int) -> None:
        self.drive = drive
        self.key = drive.key
        self._version = version
        self.closed = False

    @property
    def version(self) -> int:
        return self._version

    async def entry(self, path: str) -> Optional[Entry]:
        await self.drive.wait_for_version(self._version)
        if self.closed:
            raise SnapshotUnavailable("snapshot is closed")
        return await self.drive._entry_at(path, self._version)

    def checkout(self, version: int) -> "MemorySnapshot":
        return MemorySnapshot(self.drive, version)

    def read_stream(self, path: str, *, start: int = 0, length: Optional[int] = None) -> AsyncIterator[bytes]:
        if self.closed:
            raise SnapshotUnavailable("snapshot is closed")
        return self.drive._read_at(path, self._version, start, length)

    async def close(self) -> None:
        self.closed = True
