"""Access control for the gateway's metrics endpoint.

Drive files are public to anyone who can reach the socket; only the
metrics route is guarded.
"""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Callable, Optional

from fastapi import HTTPException, Request, status


def is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return host == "localhost"


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow a matching bearer token, or loopback clients when no token is configured."""
    if token:
        supplied = request.headers.get("authorization", "")
        if not hmac.compare_digest(supplied.encode(), f"Bearer {token}".encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not is_loopback(request.client.host if request.client else None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics are only served to localhost")


def metrics_guard(token: Optional[str]) -> Callable[[Request], None]:
    """FastAPI dependency enforcing :func:`require_metrics_access` with ``token``."""

    def _guard(request: Request) -> None:
        require_metrics_access(request, token)

    return _guard
