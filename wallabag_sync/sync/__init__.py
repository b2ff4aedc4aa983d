"""Synchronization between the local store and the wallabag server."""

from wallabag_sync.sync.change_detector import ChangeDetector
from wallabag_sync.sync.models import ChangeSet, ItemFailure, SyncMode, SyncReport
from wallabag_sync.sync.push_plan import PushItem, PushOp, PushPlan
from wallabag_sync.sync.sync_engine import SyncEngine, SyncError
from wallabag_sync.sync.timestamp_tracker import TimestampTracker

__all__ = [
    "ChangeDetector",
    "ChangeSet",
    "ItemFailure",
    "PushItem",
    "PushOp",
    "PushPlan",
    "SyncEngine",
    "SyncError",
    "SyncMode",
    "SyncReport",
    "TimestampTracker",
]
