"""HTTP ``Range`` header handling."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


_SPEC_RE = re.compile(r"^\s*(\d*)\s*-\s*(\d*)\s*$")


class RangeError(Enum):
    UNSATISFIABLE = -1
    MALFORMED = -2


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class ByteWindow:
    """Concrete slice of a blob the response will carry."""

    start: int
    length: int
    total: int
    partial: bool = False

    @property
    def end(self) -> int:
        return self.start + self.length - 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def parse_range_header(total: int, header: str) -> Union[list[ByteRange], RangeError]:
    """Parse ``header`` against a blob of ``total`` bytes.

    Supports ``a-b``, open ended ``a-`` and suffix ``-n`` specs separated by
    commas. Ends past the blob are clamped, specs that cannot be satisfied are
    skipped, and ranges are returned in request order.
    """

    unit, sep, specs = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return RangeError.MALFORMED

    ranges: list[ByteRange] = []
    for spec in specs.split(","):
        match = _SPEC_RE.match(spec)
        if match is None:
            continue
        first, last = match.groups()
        if not first and not last:
            continue
        if not first:
            start = total - int(last)
            end = total - 1
        else:
            start = int(first)
            end = int(last) if last else total - 1
        end = min(end, total - 1)
        if start < 0 or start > end:
            continue
        ranges.append(ByteRange(start, end))

    if not ranges:
        return RangeError.UNSATISFIABLE
    return ranges


def resolve_range(total: int, header: Optional[str]) -> Optional[ByteWindow]:
    """Translate an optional ``Range`` header into the window to serve.

    ``None`` means the header could not be satisfied; callers answer those
    with an empty 206 rather than 416.
    Only the first range of a multi-range request is served.
    """

    if header is None:
        return ByteWindow(start=0, length=total, total=total)
    parsed = parse_range_header(total, header)
    if isinstance(parsed, RangeError):
        return None
    first = parsed[0]
    return ByteWindow(start=first.start, length=first.length, total=total, partial=True)
