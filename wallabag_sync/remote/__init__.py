"""Remote wallabag service: client contract, errors and HTTP implementation."""

from wallabag_sync.remote.client import RemoteClient
from wallabag_sync.remote.errors import (
    AuthError,
    NotFoundError,
    RemoteError,
    RemoteValidationError,
    TransportError,
)
from wallabag_sync.remote.wallabag_client import WallabagClient

__all__ = [
    "AuthError",
    "NotFoundError",
    "RemoteClient",
    "RemoteError",
    "RemoteValidationError",
    "TransportError",
    "WallabagClient",
]
