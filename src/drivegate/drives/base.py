"""Drive contract consumed by the gateway."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, runtime_checkable


class DriveError(Exception):
    """Base error raised by drive implementations."""

    code = "DRIVE_ERROR"


class SnapshotUnavailable(DriveError):
    """The requested version cannot be served by the drive."""

    code = "SNAPSHOT_NOT_AVAILABLE"


class DriveClosed(DriveError):
    code = "DRIVE_CLOSED"


@dataclass(frozen=True)
class Blob:
    byte_length: int


@dataclass(frozen=True)
class Entry:
    """Metadata for one path in a drive.

    An entry without a blob (for example a symlink or a deletion marker) is
    served exactly like a missing path.
    """

    key: str
    blob: Optional[Blob] = None
    executable: bool = False
    metadata: Optional[dict[str, Any]] = None


@runtime_checkable
class Drive(Protocol):
    """Protocol every content store handed to the gateway must satisfy."""

    key: Optional[bytes]

    @property
    def version(self) -> int:
        ...

    async def entry(self, path: str) -> Optional[Entry]:
        """Return the entry stored at ``path`` or ``None``."""
        ...

    def checkout(self, version: int) -> "Drive":
        """Return an independently closable view of the drive at ``version``."""
        ...

    def read_stream(self, path: str, *, start: int = 0, length: Optional[int] = None) -> AsyncIterator[bytes]:
        ...

    async def close(self) -> None:
        ...
