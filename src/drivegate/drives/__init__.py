"""Content stores the gateway can serve from."""

from .base import Blob, Drive, DriveClosed, DriveError, Entry, SnapshotUnavailable
from .local import LocalDrive
from .memory import MemoryDrive, MemorySnapshot

__all__ = [
    "Blob",
    "Drive",
    "DriveClosed",
    "DriveError",
    "Entry",
    "LocalDrive",
    "MemoryDrive",
    "MemorySnapshot",
    "SnapshotUnavailable",
]
