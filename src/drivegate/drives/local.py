"""Drive backed by a directory on the local filesystem."""

from __future__ import annotations

import asyncio
import stat
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from ..common.keys import encode_key
from .base import Blob, DriveClosed, DriveError, Entry, SnapshotUnavailable


DEFAULT_CHUNK_SIZE = 64 * 1024


def sanitize_path(root: Path, path: str) -> Optional[Path]:
    """Map a drive path onto ``root``; paths escaping the root map to ``None``."""

    resolved_root = root.resolve()
    candidate = resolved_root.joinpath(*[part for part in path.split("/") if part])
    resolved = candidate.resolve(strict=False)
    if resolved != resolved_root and resolved_root not in resolved.parents:
        return None
    return resolved


class LocalDrive:
    """Unversioned drive serving the files below ``root``."""

    def __init__(self, root: Path | str, *, key: Optional[bytes] = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.root = Path(root).expanduser()
        self.key = key
        self.chunk_size = max(1, chunk_size)
        self.closed = False

    @property
    def id(self) -> Optional[str]:
        return encode_key(self.key) if self.key is not None else None

    @property
    def version(self) -> int:
        return 0

    async def entry(self, path: str) -> Optional[Entry]:
        if self.closed:
            raise DriveClosed("drive is closed")
        target = sanitize_path(self.root, path)
        if target is None:
            return None
        try:
            info = await asyncio.to_thread(target.stat)
        except (FileNotFoundError, NotADirectoryError):
            return None
        if not stat.S_ISREG(info.st_mode):
            return None
        return Entry(key=path, blob=Blob(byte_length=info.st_size), executable=bool(info.st_mode & 0o111))

    def checkout(self, version: int) -> "LocalDrive":
        raise SnapshotUnavailable(f"{self.root} is not versioned; version {version} cannot be checked out")

    def read_stream(self, path: str, *, start: int = 0, length: Optional[int] = None) -> AsyncIterator[bytes]:
        return self._read(path, start, length)

    async def _read(self, path: str, start: int, length: Optional[int]) -> AsyncIterator[bytes]:
        target = sanitize_path(self.root, path)
        if target is None:
            raise DriveError(f"{path} is outside of the drive root")
        handle: BinaryIO = await asyncio.to_thread(target.open, "rb")
        try:
            await asyncio.to_thread(handle.seek, start)
            remaining = length
            while remaining is None or remaining > 0:
                size = self.chunk_size if remaining is None else min(self.chunk_size, remaining)
                chunk = await asyncio.to_thread(handle.read, size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk
        finally:
            handle.close()

    async def close(self) -> None:
        self.closed = True
