"""Data models for synchronization operations."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from wallabag_sync.models.entities import EntityKind, LocalEntrySnapshot


class SyncMode(str, Enum):
    """How much of the remote listing a sync run pulls."""

    INCREMENTAL = "incremental"
    FULL = "full"


class ItemFailure(BaseModel):
    """One staged or pulled item that could not be reconciled in this run."""

    kind: EntityKind = Field(..., description="Kind of the offending entity")
    operation: str = Field(..., description="Push or pull operation that failed")
    local_id: int | None = Field(default=None, description="Staging id, for staged creations")
    server_id: int | None = Field(default=None, description="Server id, when known")
    error_type: str = Field(..., description="Class name of the remote or local error")
    message: str = Field(default="", description="Error message")
    retryable: bool = Field(
        default=False, description="Whether the item is left staged for the next run"
    )


class ChangeSet(BaseModel):
    """Pulled entries classified against the local cache."""

    new_entries: list[LocalEntrySnapshot] = Field(
        default_factory=list, description="Entries not cached locally yet"
    )
    modified_entries: list[LocalEntrySnapshot] = Field(
        default_factory=list, description="Cached entries whose remote updated_at changed"
    )
    unchanged_entries: list[LocalEntrySnapshot] = Field(
        default_factory=list, description="Cached entries with an identical updated_at"
    )
    deleted_entry_ids: list[int] = Field(
        default_factory=list, description="Cached entry ids missing from a full listing"
    )

    @property
    def has_changes(self) -> bool:
        """Check if there are any changes to process."""
        return bool(self.new_entries or self.modified_entries or self.deleted_entry_ids)

    @property
    def total_changes(self) -> int:
        """Get total number of changes."""
        return len(self.new_entries) + len(self.modified_entries) + len(self.deleted_entry_ids)


class SyncReport(BaseModel):
    """Report of synchronization operation results."""

    mode: SyncMode = Field(..., description="Mode the run was started with")
    pushed: int = Field(default=0, ge=0, description="Staged changes accepted by the server")
    pulled: int = Field(default=0, ge=0, description="Entities inserted or changed by the pull")
    deleted: int = Field(default=0, ge=0, description="Entities removed on either side")
    failures: list[ItemFailure] = Field(
        default_factory=list, description="Per-item failures; those items stay staged"
    )
    start_time: datetime = Field(..., description="Sync start timestamp")
    end_time: datetime | None = Field(default=None, description="Sync end timestamp")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Sync duration in seconds")
    cancelled: bool = Field(default=False, description="Run was interrupted between items")
    last_sync_advanced: bool = Field(
        default=False, description="Whether the stored last-sync timestamp moved forward"
    )

    @property
    def total_changes(self) -> int:
        """Get total number of changes processed."""
        return self.pushed + self.pulled + self.deleted

    @property
    def success(self) -> bool:
        """Check if sync completed without item failures or cancellation."""
        return not self.failures and not self.cancelled
