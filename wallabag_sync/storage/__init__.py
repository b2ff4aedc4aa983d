"""Embedded SQLite cache of wallabag entities and staged offline changes."""

from wallabag_sync.storage.local_store import (
    LocalStore,
    LocalStoreError,
    StoreBusyError,
    StoreExistsError,
)

__all__ = ["LocalStore", "LocalStoreError", "StoreBusyError", "StoreExistsError"]
