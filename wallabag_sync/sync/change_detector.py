"""Change detection for classifying pulled entries against the local cache."""

from datetime import datetime
from typing import Iterable

import structlog

from wallabag_sync.models.entities import AnnotationRow, LocalEntrySnapshot
from wallabag_sync.sync.models import ChangeSet

log = structlog.stdlib.get_logger()


class ChangeDetector:
    """Detects new, modified and deleted entries by comparing ``updated_at``."""

    def detect_changes(
        self,
        snapshots: list[LocalEntrySnapshot],
        stored_timestamps: dict[int, datetime],
        full_listing: bool = False,
    ) -> ChangeSet:
        """
        Classify pulled entries.

        Args:
            snapshots: Normalized remote entries from the pull
            stored_timestamps: ``updated_at`` of cached entries, keyed by id
            full_listing: True when ``snapshots`` is the complete remote
                listing, which makes missing ids detectable as deletions

        Returns:
            ChangeSet with new, modified, unchanged and deleted entries
        """
        log.info(
            "detecting_changes",
            remote_entry_count=len(snapshots),
            stored_entry_count=len(stored_timestamps),
            full_listing=full_listing,
        )

        change_set = ChangeSet()
        for snapshot in snapshots:
            entry = snapshot.entry
            stored = stored_timestamps.get(entry.id)
            if stored is None:
                change_set.new_entries.append(snapshot)
            elif self.is_modified(entry.updated_at, stored):
                change_set.modified_entries.append(snapshot)
            else:
                change_set.unchanged_entries.append(snapshot)

        if full_listing:
            change_set.deleted_entry_ids = self.detect_deleted(
                {s.entry.id for s in snapshots}, set(stored_timestamps)
            )

        log.info(
            "changes_detected",
            new_entries=len(change_set.new_entries),
            modified_entries=len(change_set.modified_entries),
            unchanged_entries=len(change_set.unchanged_entries),
            deleted_entries=len(change_set.deleted_entry_ids),
            total_changes=change_set.total_changes,
        )
        return change_set

    def detect_deleted(self, remote_ids: set[int], stored_ids: set[int]) -> list[int]:
        """Ids cached locally but absent from a complete remote listing."""
        deleted = sorted(stored_ids - remote_ids)
        if deleted:
            log.info("deleted_entities_detected", count=len(deleted))
        return deleted

    def changed_annotations(
        self, remote: Iterable[AnnotationRow], stored: dict[int, AnnotationRow]
    ) -> list[AnnotationRow]:
        """Remote annotations that are new or whose ``updated_at`` differs from the cache."""
        return [
            annotation
            for annotation in remote
            if annotation.id not in stored
            or self.is_modified(annotation.updated_at, stored[annotation.id].updated_at)
        ]

    @staticmethod
    def is_modified(remote_updated_at: datetime, stored_updated_at: datetime) -> bool:
        # Any difference wins, including an older remote value after a server restore.
        return remote_updated_at != stored_updated_at
