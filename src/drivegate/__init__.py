"""Read-only HTTP access to versioned drives."""

from .gateway import CallbackBroker, DriveServer, StaticRegistry, create_app

__all__ = ["CallbackBroker", "DriveServer", "StaticRegistry", "create_app"]
