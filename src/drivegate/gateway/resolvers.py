"""Strategies for turning a request identifier into a drive handle."""

from __future__ import annotations

import abc
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

import structlog

from ..common.keys import InvalidKey, encode_key, normalize_key
from ..drives.base import Drive


LOGGER = structlog.get_logger("drivegate.gateway.resolvers")


class ConfigurationError(ValueError):
    """Raised when a registry is asked to do something inconsistent."""


class LeaseError(RuntimeError):
    pass


@dataclass(frozen=True)
class DriveRequest:
    """Routing information handed to a resolver for one HTTP request."""

    identifier: Any
    path: str
    version: int = 0


@dataclass(eq=False)
class Lease:
    """A drive borrowed for the lifetime of one request."""

    identifier: Any
    drive: Drive
    released: bool = False


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class Resolver(abc.ABC):
    """Acquire/release protocol the request handler drives.

    Every lease returned by :meth:`acquire` is passed to :meth:`release`
    exactly once by the handler, whatever happened in between.
    """

    @abc.abstractmethod
    async def acquire(self, request: DriveRequest) -> Optional[Lease]:
        ...

    async def release(self, lease: Lease) -> None:
        if lease.released:
            raise LeaseError(f"lease for {lease.identifier!r} was already released")
        lease.released = True
        await self._release(lease)

    async def _release(self, lease: Lease) -> None:
        return None

    async def close(self) -> None:
        return None


class StaticRegistry(Resolver):
    """Explicit identifier → drive mapping.

    Drives are registered as the default (identifier ``None``), under an
    alias, or under the canonical z-base-32 form of their own key. The
    registry never closes the drives it holds.
    """

    def __init__(self, default: Optional[Drive] = None) -> None:
        self._drives: dict[Optional[str], Drive] = {}
        if default is not None:
            self.add(default, default=True)

    @staticmethod
    def registry_key(drive: Optional[Drive], *, default: bool = False, alias: Optional[str] = None) -> Optional[str]:
        if default and alias:
            raise ConfigurationError("a drive cannot be both the default and aliased")
        if default:
            return None
        if alias:
            return alias
        key = getattr(drive, "key", None) if drive is not None else None
        if key is None:
            raise ConfigurationError("non-default drives need an alias or a readable key")
        return encode_key(key)

    def add(self, drive: Drive, *, default: bool = False, alias: Optional[str] = None) -> Optional[str]:
        identifier = self.registry_key(drive, default=default, alias=alias)
        if identifier in self._drives and self._drives[identifier] is not drive:
            LOGGER.info("drive_replaced", identifier=identifier)
        self._drives[identifier] = drive
        LOGGER.debug("drive_added", identifier=identifier)
        return identifier

    def delete(self, drive: Optional[Drive] = None, *, default: bool = False, alias: Optional[str] = None) -> bool:
        identifier = self.registry_key(drive, default=default, alias=alias)
        removed = self._drives.pop(identifier, None)
        if removed is not None:
            LOGGER.debug("drive_deleted", identifier=identifier)
        return removed is not None

    def get(self, identifier: Optional[str]) -> Optional[Drive]:
        if isinstance(identifier, (bytes, bytearray)):
            identifier = encode_key(bytes(identifier))
        drive = self._drives.get(identifier)
        if drive is not None or identifier is None:
            return drive
        try:
            canonical = normalize_key(identifier)
        except InvalidKey:
            return None
        return self._drives.get(canonical)

    def identifiers(self) -> list[Optional[str]]:
        return list(self._drives)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._drives

    def __iter__(self) -> Iterator[Drive]:
        return iter(list(self._drives.values()))

    def __len__(self) -> int:
        return len(self._drives)

    async def acquire(self, request: DriveRequest) -> Optional[Lease]:
        drive = self.get(request.identifier)
        if drive is None:
            return None
        return Lease(identifier=request.identifier, drive=drive)

    async def close(self) -> None:
        self._drives.clear()


AcquireCallback = Callable[[DriveRequest], Union[Optional[Drive], Awaitable[Optional[Drive]]]]
ReleaseCallback = Callable[[Any, Drive], Union[None, Awaitable[None]]]


class CallbackBroker(Resolver):
    """Resolver delegating to caller supplied ``acquire``/``release`` callables.

    Both callables may be plain functions or coroutines. ``acquire`` may
    return a drive that is still initializing as long as its routing
    metadata is available.
    """

    def __init__(self, acquire: AcquireCallback, release: Optional[ReleaseCallback] = None) -> None:
        self._acquire = acquire
        self._release_callback = release

    async def acquire(self, request: DriveRequest) -> Optional[Lease]:
        drive = await _resolve(self._acquire(request))
        if drive is None:
            return None
        return Lease(identifier=request.identifier, drive=drive)

    async def _release(self, lease: Lease) -> None:
        if self._release_callback is None:
            return
        await _resolve(self._release_callback(lease.identifier, lease.drive))
