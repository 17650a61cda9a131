"""Building absolute links to files served by the gateway."""

from __future__ import annotations

import posixpath
from typing import Any, Optional
from urllib.parse import quote

from ..common.keys import encode_key


# characters encodeURIComponent leaves untouched beyond quote()'s defaults
_SEGMENT_SAFE = "!*'()"


def normalize_path(path: str) -> str:
    """Resolve ``path`` against ``/``: drop ``.``/``..`` segments and trailing slashes."""

    normalized = posixpath.normpath("/" + path)
    return "/" + normalized.lstrip("/")


def format_host(address: Optional[str]) -> str:
    if not address or address in ("::", "0.0.0.0"):
        return "localhost"
    if ":" in address and not address.startswith("["):
        return f"[{address}]"
    return address


def encode_pathname(pathname: str) -> str:
    return "/".join(quote(segment, safe=_SEGMENT_SAFE) for segment in pathname.split("/"))


def _format_identifier(identifier: Any) -> str:
    if isinstance(identifier, (bytes, bytearray)):
        return encode_key(bytes(identifier))
    return quote(str(identifier), safe=_SEGMENT_SAFE)


def build_link(
    path: str,
    *,
    host: str,
    https: bool = False,
    identifier: Any = None,
    version: Optional[int] = None,
    identifier_param: str = "drive",
    version_param: str = "version",
) -> str:
    """Return ``proto://host/path?identifier&version`` for ``path``.

    ``host`` may carry a port or be an externally visible name when the
    gateway sits behind a reverse proxy.
    """

    proto = "https" if https else "http"
    params = []
    if identifier is not None:
        params.append(f"{identifier_param}={_format_identifier(identifier)}")
    if version:
        params.append(f"{version_param}={int(version)}")
    query = ("?" + "&".join(params)) if params else ""
    return f"{proto}://{host}{encode_pathname(normalize_path(path))}{query}"
