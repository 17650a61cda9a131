from __future__ import annotations

import asyncio

import pytest

from drivegate.drives import Blob, Drive, DriveClosed, DriveError, Entry, LocalDrive, MemoryDrive, SnapshotUnavailable
from drivegate.drives.local import sanitize_path


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def test_drives_satisfy_protocol(tmp_path) -> None:
    assert isinstance(MemoryDrive(), Drive)
    assert isinstance(LocalDrive(tmp_path), Drive)


@pytest.mark.asyncio
async def test_memory_drive_versions_and_checkouts() -> None:
    drive = MemoryDrive(chunk_size=3)
    assert drive.version == 0
    await drive.put("/a.txt", "first")
    await drive.put("a.txt", b"second!")
    await drive.delete("/a.txt")
    assert drive.version == 3

    assert await drive.entry("/a.txt") is None

    snapshot = drive.checkout(1)
    entry = await snapshot.entry("/a.txt")
    assert entry == Entry(key="/a.txt", blob=Blob(byte_length=5))
    assert await _collect(snapshot.read_stream("/a.txt")) == b"first"

    snapshot = drive.checkout(2)
    assert await _collect(snapshot.read_stream("/a.txt", start=1, length=4)) == b"econ"


@pytest.mark.asyncio
async def test_memory_read_stream_is_chunked() -> None:
    drive = MemoryDrive(chunk_size=4)
    await drive.put("/f", b"0123456789")
    chunks = [chunk async for chunk in drive.read_stream("/f", start=2)]
    assert chunks == [b"2345", b"6789"]


@pytest.mark.asyncio
async def test_memory_snapshot_waits_for_future_version() -> None:
    drive = MemoryDrive()
    await drive.put("/a", b"1")
    pending = asyncio.ensure_future(drive.checkout(2).entry("/b"))
    await asyncio.sleep(0)
    assert not pending.done()

    await drive.put("/b", b"22")
    entry = await asyncio.wait_for(pending, 1)
    assert entry.blob.byte_length == 2


@pytest.mark.asyncio
async def test_memory_snapshot_without_wait_is_unavailable() -> None:
    drive = MemoryDrive(wait=False)
    with pytest.raises(SnapshotUnavailable):
        await drive.checkout(1).entry("/a")


@pytest.mark.asyncio
async def test_memory_close_fails_pending_checkouts() -> None:
    drive = MemoryDrive()
    pending = asyncio.ensure_future(drive.checkout(5).entry("/a"))
    await asyncio.sleep(0)
    await drive.close()
    with pytest.raises(SnapshotUnavailable):
        await asyncio.wait_for(pending, 1)
    with pytest.raises(DriveClosed):
        await drive.entry("/a")


@pytest.mark.asyncio
async def test_memory_read_of_missing_blob_fails() -> None:
    drive = MemoryDrive()
    with pytest.raises(DriveError):
        await _collect(drive.read_stream("/missing"))


def test_snapshot_unavailable_code() -> None:
    assert SnapshotUnavailable("x").code == "SNAPSHOT_NOT_AVAILABLE"


@pytest.mark.asyncio
async def test_local_drive_entries_and_ranges(tmp_path) -> None:
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "file.bin").write_bytes(bytes(range(100)))
    drive = LocalDrive(tmp_path, chunk_size=16)

    entry = await drive.entry("/sub/file.bin")
    assert entry.blob.byte_length == 100
    assert await drive.entry("/sub") is None
    assert await drive.entry("/nope") is None
    assert await _collect(drive.read_stream("/sub/file.bin", start=10, length=20)) == bytes(range(10, 30))


@pytest.mark.asyncio
async def test_local_drive_is_not_versioned(tmp_path) -> None:
    drive = LocalDrive(tmp_path)
    with pytest.raises(SnapshotUnavailable):
        drive.checkout(3)


def test_sanitize_path_stays_inside_root(tmp_path) -> None:
    assert sanitize_path(tmp_path, "/a/b") == (tmp_path / "a" / "b").resolve()
    assert sanitize_path(tmp_path, "/../../etc/passwd") is None


@pytest.mark.asyncio
async def test_local_drive_refuses_symlink_escape(tmp_path) -> None:
    outside = tmp_path / "outside.txt"
    outside.write_text("secret")
    root = tmp_path / "root"
    root.mkdir()
    (root / "link.txt").symlink_to(outside)
    assert await LocalDrive(root).entry("/link.txt") is None
