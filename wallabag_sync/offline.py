"""Offline mutations: edits go to the local cache and its staging tables."""

import json
from typing import Any, Sequence

import structlog

from wallabag_sync.models.entities import (
    AnnotationRow,
    EntityKind,
    EntryRow,
    NewAnnotation,
    NewTagLink,
    NewUrl,
    Range,
    check_url,
)
from wallabag_sync.storage.local_store import LocalStore
from wallabag_sync.sync.entity_mapper import apply_edits

log = structlog.stdlib.get_logger()


def _check_label(label: str) -> str:
    label = label.strip()
    if not label or "," in label:
        raise ValueError(f"Invalid tag label: {label!r}")
    return label


class OfflineEditor:
    """Client-facing edits that work without a network connection.

    Every method is rejected with :class:`StoreBusyError` while a sync run
    holds the store.
    """

    def __init__(self, store: LocalStore):
        self._store = store

    # Entries

    def add_url(
        self,
        url: str,
        title: str | None = None,
        tags: Sequence[str] = (),
        is_archived: bool = False,
        is_starred: bool = False,
    ) -> NewUrl:
        """
        Save a url to be created on the server at the next sync.

        Args:
            url: Absolute http(s) url
            title: Optional title overriding the one the server extracts
            tags: Labels to attach on creation
            is_archived: Create the entry as archived
            is_starred: Create the entry as starred

        Returns:
            The staged NewUrl

        Raises:
            ValueError: If the url or a label is invalid
        """
        check_url(url)
        labels = [_check_label(label) for label in tags]
        with self._store.exclusive_edit():
            new_url = self._store.stage_new_url(url, title, labels, is_archived, is_starred)
        log.info("url_staged", new_url_id=new_url.id, url=url)
        return new_url

    def cancel_new_url(self, new_url_id: int) -> bool:
        """Drop a staged url and everything staged against it."""
        with self._store.exclusive_edit():
            return self._store.unstage_new_url(new_url_id)

    def update_entry(self, entry_id: int, **changes: Any) -> EntryRow:
        """
        Edit fields of a cached entry; the edit is pushed at the next sync.

        ``published_by`` takes a list of author names.

        Raises:
            LookupError: If the entry is not cached
            ValueError: If a field cannot be edited
        """
        if isinstance(changes.get("published_by"), (list, tuple)):
            changes["published_by"] = json.dumps(list(changes["published_by"]))
        with self._store.exclusive_edit():
            row = self._require_entry(entry_id)
            updated = apply_edits(row, changes)
            if updated is not row:
                self._store.upsert_entry(updated)
        log.info("entry_edited", entry_id=entry_id, pending_fields=sorted(updated.pending_fields))
        return updated

    def archive(self, entry_id: int, archived: bool = True) -> EntryRow:
        return self.update_entry(entry_id, is_archived=archived)

    def star(self, entry_id: int, starred: bool = True) -> EntryRow:
        return self.update_entry(entry_id, is_starred=starred)

    def delete_entry(self, entry_id: int) -> None:
        with self._store.exclusive_edit():
            self._require_entry(entry_id)
            self._store.stage_deletion(EntityKind.ENTRY, entry_id)
        log.info("entry_deletion_staged", entry_id=entry_id)

    # Annotations

    def add_annotation(
        self,
        quote: str,
        text: str = "",
        ranges: Sequence[Range] = (),
        entry_id: int | None = None,
        new_url_id: int | None = None,
    ) -> NewAnnotation:
        """
        Annotate a cached entry or a staged url.

        Exactly one of ``entry_id`` and ``new_url_id`` must be given.

        Raises:
            LookupError: If the referenced entry or staged url does not exist
            ValueError: If both or neither reference is given
        """
        if (entry_id is None) == (new_url_id is None):
            raise ValueError("exactly one of entry_id and new_url_id must be set")
        encoded = json.dumps([r.model_dump(by_alias=True) for r in ranges])
        with self._store.exclusive_edit():
            self._require_target(entry_id, new_url_id)
            annotation = self._store.stage_new_annotation(
                quote, text, encoded, entry_id=entry_id, new_url_id=new_url_id
            )
        log.info("annotation_staged", new_annotation_id=annotation.id)
        return annotation

    def update_annotation(self, annotation_id: int, text: str) -> AnnotationRow:
        with self._store.exclusive_edit():
            row = self._store.get_annotation(annotation_id)
            if row is None:
                raise LookupError(f"Annotation {annotation_id} is not cached")
            updated = apply_edits(row, {"text": text})
            if updated is not row:
                self._store.upsert_annotation(updated)
        return updated

    def delete_annotation(self, annotation_id: int) -> None:
        with self._store.exclusive_edit():
            if self._store.get_annotation(annotation_id) is None:
                raise LookupError(f"Annotation {annotation_id} is not cached")
            self._store.stage_deletion(EntityKind.ANNOTATION, annotation_id)
        log.info("annotation_deletion_staged", annotation_id=annotation_id)

    # Tags

    def tag_entry(
        self, label: str, entry_id: int | None = None, new_url_id: int | None = None
    ) -> NewTagLink:
        """Attach a label to a cached entry or a staged url at the next sync."""
        label = _check_label(label)
        if (entry_id is None) == (new_url_id is None):
            raise ValueError("exactly one of entry_id and new_url_id must be set")
        with self._store.exclusive_edit():
            self._require_target(entry_id, new_url_id)
            link = self._store.stage_tag_link(label, entry_id=entry_id, new_url_id=new_url_id)
        log.info("tag_link_staged", label=label, entry_id=entry_id, new_url_id=new_url_id)
        return link

    def untag_entry(self, entry_id: int, tag_id: int) -> None:
        """Detach a tag from a cached entry locally and on the server at the next sync."""
        with self._store.exclusive_edit():
            self._require_entry(entry_id)
            if tag_id not in {t.id for t in self._store.get_entry_tags(entry_id)}:
                raise LookupError(f"Entry {entry_id} is not tagged with {tag_id}")
            self._store.stage_tag_removal(entry_id, tag_id)
        log.info("tag_removal_staged", entry_id=entry_id, tag_id=tag_id)

    def delete_tag(self, tag_id: int) -> None:
        with self._store.exclusive_edit():
            if self._store.get_tag(tag_id) is None:
                raise LookupError(f"Tag {tag_id} is not cached")
            self._store.stage_deletion(EntityKind.TAG, tag_id)
        log.info("tag_deletion_staged", tag_id=tag_id)

    # Helpers

    def _require_entry(self, entry_id: int) -> EntryRow:
        row = self._store.get_entry(entry_id)
        if row is None:
            raise LookupError(f"Entry {entry_id} is not cached")
        return row

    def _require_target(self, entry_id: int | None, new_url_id: int | None) -> None:
        if entry_id is not None:
            self._require_entry(entry_id)
        elif new_url_id is not None and self._store.get_new_url(new_url_id) is None:
            raise LookupError(f"Staged url {new_url_id} does not exist")
