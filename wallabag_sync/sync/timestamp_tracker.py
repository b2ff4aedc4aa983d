"""Timestamp tracking for maintaining synchronization state."""

from datetime import datetime

import structlog

from wallabag_sync.storage.local_store import LocalStore

log = structlog.stdlib.get_logger()


class TimestampTracker:
    """Loads and saves the last-sync time kept in the store's config record."""

    def __init__(self, store: LocalStore):
        """
        Initialize timestamp tracker.

        Args:
            store: Local store holding the config record
        """
        self._store = store

    def load_last_sync(self) -> datetime:
        """
        Load the time of the last completed sync.

        Returns:
            The stored timestamp; the epoch for a store that never synced
        """
        last_sync = self._store.get_last_sync()
        log.info("last_sync_loaded", last_sync=last_sync.isoformat())
        return last_sync

    def save_last_sync(self, timestamp: datetime) -> bool:
        """
        Advance the last-sync time.

        Args:
            timestamp: Time the pull phase of the completed run began

        Returns:
            True if the stored value moved forward, False if it was already newer
        """
        advanced = self._store.set_last_sync(timestamp)
        if advanced:
            log.info("last_sync_saved", last_sync=timestamp.isoformat())
        else:
            log.warning("last_sync_not_advanced", requested=timestamp.isoformat())
        return advanced
