"""Data models for the wallabag sync engine."""

from wallabag_sync.models.config import (
    AppConfig,
    LoggingConfig,
    StoreConfig,
    SyncSettings,
    WallabagConfig,
)
from wallabag_sync.models.entities import (
    EPOCH,
    AnnotationRow,
    EntityKind,
    EntityState,
    EntryRow,
    LocalEntrySnapshot,
    NewAnnotation,
    NewTagLink,
    NewUrl,
    Range,
    RemoteAnnotation,
    RemoteEntry,
    RemoteTag,
    TagRemoval,
    TagRow,
    check_url,
)

__all__ = [
    "EPOCH",
    "AnnotationRow",
    "AppConfig",
    "EntityKind",
    "EntityState",
    "EntryRow",
    "LocalEntrySnapshot",
    "LoggingConfig",
    "NewAnnotation",
    "NewTagLink",
    "NewUrl",
    "Range",
    "RemoteAnnotation",
    "RemoteEntry",
    "RemoteTag",
    "StoreConfig",
    "SyncSettings",
    "TagRemoval",
    "TagRow",
    "WallabagConfig",
    "check_url",
]
