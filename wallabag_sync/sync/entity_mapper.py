"""Translation between remote API snapshots and local rows.

All functions are pure: they never touch the store or the network.
"""

import json
from typing import Any, Iterable, TypeVar

from wallabag_sync.models.entities import (
    EDITABLE_ANNOTATION_FIELDS,
    EDITABLE_ENTRY_FIELDS,
    AnnotationRow,
    EntryRow,
    LocalEntrySnapshot,
    NewAnnotation,
    NewUrl,
    RemoteAnnotation,
    RemoteEntry,
    RemoteTag,
    TagRow,
)

# Local column name -> API parameter name, where they differ.
ENTRY_API_NAMES = {
    "is_archived": "archive",
    "is_starred": "starred",
    "is_public": "public",
    "published_by": "authors",
}

RowT = TypeVar("RowT", EntryRow, AnnotationRow)


def _dump_list(values: list[str] | None) -> str | None:
    return None if values is None else json.dumps(values)


def _load_list(value: str | None) -> list[str] | None:
    return None if value is None else json.loads(value)


# To local


def tag_to_local(tag: RemoteTag) -> TagRow:
    return TagRow(id=tag.id, label=tag.label, slug=tag.slug)


def annotation_to_local(annotation: RemoteAnnotation, entry_id: int) -> AnnotationRow:
    """Flatten a remote annotation; ranges become a JSON array in the row."""
    return AnnotationRow(
        id=annotation.id,
        entry_id=entry_id,
        annotator_schema_version=annotation.annotator_schema_version,
        created_at=annotation.created_at,
        updated_at=annotation.updated_at,
        quote=annotation.quote,
        ranges=json.dumps([r.model_dump(by_alias=True) for r in annotation.ranges]),
        text=annotation.text,
        user=annotation.user,
    )


def entry_to_local(entry: RemoteEntry) -> LocalEntrySnapshot:
    """
    Normalize a remote entry into an entry row, its tags and its annotations.

    Args:
        entry: Entry as returned by the API

    Returns:
        LocalEntrySnapshot with a clean EntryRow. ``annotations`` is None
        when the remote payload did not include an annotation list.
    """
    row = EntryRow(
        id=entry.id,
        url=entry.url,
        title=entry.title,
        content=entry.content,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
        published_at=entry.published_at,
        starred_at=entry.starred_at,
        is_archived=entry.is_archived,
        is_starred=entry.is_starred,
        is_public=entry.is_public,
        origin_url=entry.origin_url,
        domain_name=entry.domain_name,
        http_status=entry.http_status,
        mimetype=entry.mimetype,
        language=entry.language,
        preview_picture=entry.preview_picture,
        reading_time=entry.reading_time,
        uid=entry.uid,
        published_by=_dump_list(entry.published_by),
        headers=_dump_list(entry.headers),
        user_email=entry.user_email,
        user_id=entry.user_id,
        user_name=entry.user_name,
    )
    annotations = None
    if entry.annotations is not None:
        annotations = [annotation_to_local(a, entry.id) for a in entry.annotations]
    return LocalEntrySnapshot(
        entry=row,
        tags=[tag_to_local(t) for t in entry.tags],
        annotations=annotations,
    )


# To remote


def entry_to_remote(row: EntryRow, fields: Iterable[str] | None = None) -> dict[str, Any]:
    """
    Build an update payload for an entry.

    Args:
        row: Local entry row
        fields: Local column names to include; defaults to the row's pending fields

    Returns:
        Mapping of API parameter names to values
    """
    selected = row.pending_fields if fields is None else set(fields)
    payload: dict[str, Any] = {}
    for name in sorted(selected & EDITABLE_ENTRY_FIELDS):
        value = getattr(row, name)
        if name == "published_by":
            value = _load_list(value) or []
        payload[ENTRY_API_NAMES.get(name, name)] = value
    return payload


def new_url_to_remote(new_url: NewUrl) -> dict[str, Any]:
    """Optional creation fields for a staged url; the url and tags are passed separately."""
    fields: dict[str, Any] = {}
    if new_url.title:
        fields["title"] = new_url.title
    if new_url.is_archived:
        fields["archive"] = True
    if new_url.is_starred:
        fields["starred"] = True
    return fields


def annotation_to_remote(row: AnnotationRow, fields: Iterable[str] | None = None) -> dict[str, Any]:
    selected = row.pending_fields if fields is None else set(fields)
    return {name: getattr(row, name) for name in sorted(selected & EDITABLE_ANNOTATION_FIELDS)}


def new_annotation_to_remote(annotation: NewAnnotation) -> dict[str, Any]:
    return {
        "quote": annotation.quote,
        "text": annotation.text,
        "ranges": json.loads(annotation.ranges),
    }


# Edit tracking


def diff_fields(current: RowT, previous: RowT) -> set[str]:
    """Editable columns whose values differ between two versions of a row."""
    editable = EDITABLE_ENTRY_FIELDS if isinstance(current, EntryRow) else EDITABLE_ANNOTATION_FIELDS
    return {name for name in editable if getattr(current, name) != getattr(previous, name)}


def merge_pending(remote_row: RowT, local_row: RowT | None) -> RowT:
    """
    Overlay a pulled row with the local edits that are still waiting to be pushed.

    Args:
        remote_row: Clean row built from the remote snapshot
        local_row: Currently cached row, if any

    Returns:
        ``remote_row`` unchanged when there are no pending edits, otherwise a
        copy that keeps the locally edited values and the pending state.
    """
    if local_row is None or local_row.synced:
        return remote_row
    kept = {name: getattr(local_row, name) for name in local_row.pending_fields}
    return remote_row.model_copy(
        update={**kept, "state": local_row.state, "pending_fields": local_row.pending_fields}
    )


def apply_edits(row: RowT, changes: dict[str, Any]) -> RowT:
    """
    Apply offline edits to a cached row and record which fields are now pending.

    Raises:
        ValueError: If a changed field is not editable
    """
    editable = EDITABLE_ENTRY_FIELDS if isinstance(row, EntryRow) else EDITABLE_ANNOTATION_FIELDS
    unknown = set(changes) - editable
    if unknown:
        raise ValueError(f"fields are not editable: {sorted(unknown)}")
    updated = row.model_copy(update=changes)
    changed = diff_fields(updated, row)
    if not changed:
        return row
    return type(row).model_validate(
        {
            **updated.model_dump(),
            "state": "pending_push",
            "pending_fields": row.pending_fields | changed,
        }
    )


# Id remapping


def resolve_entry_reference(
    entry_id: int | None, new_url_id: int | None, id_map: dict[int, int]
) -> int | None:
    """Server entry id a staged record points at, or None while its entry is unpushed."""
    if entry_id is not None:
        return entry_id
    return id_map.get(new_url_id) if new_url_id is not None else None
