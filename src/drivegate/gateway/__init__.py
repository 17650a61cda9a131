"""HTTP gateway serving byte ranges of files held in drives."""

from .handler import DriveResponse, GatewayState, create_app
from .links import build_link, encode_pathname, format_host, normalize_path
from .ranges import ByteWindow, resolve_range
from .resolvers import CallbackBroker, ConfigurationError, DriveRequest, Lease, LeaseError, Resolver, StaticRegistry
from .server import DriveServer, ServerState

__all__ = [
    "ByteWindow",
    "CallbackBroker",
    "ConfigurationError",
    "DriveRequest",
    "DriveResponse",
    "DriveServer",
    "GatewayState",
    "Lease",
    "LeaseError",
    "Resolver",
    "ServerState",
    "StaticRegistry",
    "build_link",
    "create_app",
    "encode_pathname",
    "format_host",
    "normalize_path",
    "resolve_range",
]
