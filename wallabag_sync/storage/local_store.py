"""SQLite-backed local cache of entries, tags, annotations and staged changes."""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import structlog
from filelock import FileLock, Timeout

from wallabag_sync.models.entities import (
    EPOCH,
    AnnotationRow,
    EntityKind,
    EntityState,
    EntryRow,
    NewAnnotation,
    NewTagLink,
    NewUrl,
    TagRemoval,
    TagRow,
)
from wallabag_sync.storage.schema import DELETION_TABLES, LIVE_TABLES, SCHEMA_SQL

log = structlog.stdlib.get_logger()

ENTRY_COLUMNS = (
    "id",
    "url",
    "title",
    "content",
    "created_at",
    "updated_at",
    "published_at",
    "starred_at",
    "is_archived",
    "is_starred",
    "is_public",
    "origin_url",
    "domain_name",
    "http_status",
    "mimetype",
    "language",
    "preview_picture",
    "reading_time",
    "uid",
    "published_by",
    "headers",
    "user_email",
    "user_id",
    "user_name",
    "sync_state",
    "pending_fields",
)

ANNOTATION_COLUMNS = (
    "id",
    "entry_id",
    "annotator_schema_version",
    "created_at",
    "updated_at",
    "quote",
    "ranges",
    "text",
    "user",
    "sync_state",
    "pending_fields",
)

_DATETIME_COLUMNS = {"created_at", "updated_at", "published_at", "starred_at"}
_BOOL_COLUMNS = {"is_archived", "is_starred", "is_public"}


class LocalStoreError(Exception):
    """The local cache could not be read or written."""


class StoreBusyError(LocalStoreError):
    """A sync run currently owns the store; offline edits are rejected."""


class StoreExistsError(LocalStoreError):
    """``init`` was asked to create a database that already exists."""


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _row_params(row: EntryRow | AnnotationRow, columns: Sequence[str]) -> list[Any]:
    data = row.model_dump()
    params: list[Any] = []
    for column in columns:
        if column == "sync_state":
            params.append(row.state.value)
        elif column == "pending_fields":
            params.append(json.dumps(sorted(row.pending_fields)))
        elif column in _DATETIME_COLUMNS:
            params.append(_iso(data[column]))
        elif column in _BOOL_COLUMNS:
            params.append(int(data[column]))
        else:
            params.append(data[column])
    return params


def _row_fields(record: sqlite3.Row) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in record.keys():
        value = record[key]
        if key == "sync_state":
            fields["state"] = EntityState(value)
        elif key == "pending_fields":
            fields["pending_fields"] = frozenset(json.loads(value))
        elif key in _DATETIME_COLUMNS:
            fields[key] = _parse_dt(value)
        elif key in _BOOL_COLUMNS:
            fields[key] = bool(value)
        else:
            fields[key] = value
    return fields


def _to_entry(record: sqlite3.Row) -> EntryRow:
    return EntryRow(**_row_fields(record))


def _to_annotation(record: sqlite3.Row) -> AnnotationRow:
    return AnnotationRow(**_row_fields(record))


def _to_new_url(record: sqlite3.Row) -> NewUrl:
    return NewUrl(
        id=record["id"],
        url=record["url"],
        title=record["title"],
        tags=json.loads(record["tags"]),
        is_archived=bool(record["is_archived"]),
        is_starred=bool(record["is_starred"]),
        created_at=_parse_dt(record["created_at"]),
    )


def _to_new_annotation(record: sqlite3.Row) -> NewAnnotation:
    return NewAnnotation(
        id=record["id"],
        entry_id=record["entry_id"],
        new_url_id=record["new_url_id"],
        quote=record["quote"],
        text=record["text"],
        ranges=record["ranges"],
        created_at=_parse_dt(record["created_at"]),
    )


def _to_new_tag_link(record: sqlite3.Row) -> NewTagLink:
    return NewTagLink(
        id=record["id"],
        entry_id=record["entry_id"],
        new_url_id=record["new_url_id"],
        label=record["label"],
    )


class LocalStore:
    """Embedded relational cache with staging tables for offline changes.

    Every public method runs in its own transaction, so a crash leaves the
    database at the boundary of some completed call. Connections are opened
    per call and have foreign keys enabled.
    """

    def __init__(self, db_file: str | Path):
        """
        Initialize local store.

        Args:
            db_file: Path of the SQLite database; created on first use
        """
        self._db_file = Path(db_file)
        self._write_lock = threading.Lock()
        self._lock_file = self._db_file.with_name(self._db_file.name + ".lock")
        log.info("local_store_initialized", db_file=str(self._db_file))

    @property
    def db_file(self) -> Path:
        return self._db_file

    # Lifecycle

    def init(self) -> None:
        """Create the database. Fails if the file already exists."""
        if self._db_file.exists():
            raise StoreExistsError(f"Database already exists: {self._db_file}")
        self._up()

    def reset(self) -> None:
        """Delete the database file and recreate an empty schema.

        All cached and staged data is lost.
        """
        if self._db_file.exists():
            self._db_file.unlink()
        self._up()
        log.info("local_store_reset", db_file=str(self._db_file))

    def _up(self) -> None:
        try:
            conn = sqlite3.connect(self._db_file)
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                conn.executescript(SCHEMA_SQL)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Failed to create schema: {e}") from e
        log.info("local_store_schema_created", db_file=str(self._db_file))

    def _connect(self) -> sqlite3.Connection:
        if not self._db_file.exists():
            log.debug("db_file_missing_initializing", db_file=str(self._db_file))
            self._up()
        conn = sqlite3.connect(self._db_file, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Cannot open {self._db_file}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            log.error("local_store_failed", error=str(e))
            raise LocalStoreError(str(e)) from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _execute(conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        log.debug("sql_executed", sql=" ".join(sql.split()))
        return conn.execute(sql, params)

    # Single-writer guard

    @contextmanager
    def _writer(self, busy_message: str) -> Iterator[None]:
        # The thread lock covers this instance; the file lock covers every
        # other LocalStore or process opened on the same database.
        if not self._write_lock.acquire(blocking=False):
            raise StoreBusyError(busy_message)
        try:
            file_lock = FileLock(self._lock_file)
            try:
                file_lock.acquire(timeout=0)
            except Timeout as e:
                log.warning("store_lock_held_elsewhere", lock_file=str(self._lock_file))
                raise StoreBusyError(busy_message) from e
            try:
                yield
            finally:
                file_lock.release()
        finally:
            self._write_lock.release()

    @contextmanager
    def sync_session(self) -> Iterator[None]:
        """Hold exclusive write ownership for the duration of a sync run.

        Raises:
            StoreBusyError: If another sync run or an offline edit holds the store
        """
        with self._writer("The store is already held by another writer"):
            yield

    @contextmanager
    def exclusive_edit(self) -> Iterator[None]:
        """Guard an offline mutation; rejected while a sync run is active."""
        with self._writer("A sync is running; retry the edit after it finishes"):
            yield

    # Entries

    def get_entry(self, entry_id: int) -> EntryRow | None:
        with self._transaction() as conn:
            record = self._execute(
                conn, "SELECT * FROM entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return _to_entry(record) if record else None

    def list_entries(self) -> list[EntryRow]:
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT * FROM entries ORDER BY id").fetchall()
        return [_to_entry(r) for r in records]

    def entry_ids(self) -> set[int]:
        with self._transaction() as conn:
            return {r[0] for r in self._execute(conn, "SELECT id FROM entries").fetchall()}

    def entry_timestamps(self) -> dict[int, datetime]:
        """``updated_at`` of every cached entry, keyed by server id."""
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT id, updated_at FROM entries").fetchall()
        return {r["id"]: _parse_dt(r["updated_at"]) for r in records}

    def list_entries_needing_push(self) -> list[EntryRow]:
        with self._transaction() as conn:
            records = self._execute(
                conn, "SELECT * FROM entries WHERE sync_state = 'pending_push' ORDER BY id"
            ).fetchall()
        return [_to_entry(r) for r in records]

    def upsert_entry(self, entry: EntryRow, tags: Sequence[TagRow] | None = None) -> None:
        """Insert or replace an entry; when ``tags`` is given, rebuild its tag links.

        Links staged for removal are not recreated.
        """
        with self._transaction() as conn:
            self._upsert_entry(conn, entry, tags)

    def _upsert_entry(
        self, conn: sqlite3.Connection, entry: EntryRow, tags: Sequence[TagRow] | None
    ) -> None:
        placeholders = ", ".join("?" for _ in ENTRY_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in ENTRY_COLUMNS if c != "id")
        self._execute(
            conn,
            f"INSERT INTO entries ({', '.join(ENTRY_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            _row_params(entry, ENTRY_COLUMNS),
        )
        if tags is None:
            return

        self._execute(conn, "DELETE FROM taglinks WHERE entry_id = ?", (entry.id,))
        removed = {
            r[0]
            for r in self._execute(
                conn, "SELECT tag_id FROM deleted_taglinks WHERE entry_id = ?", (entry.id,)
            ).fetchall()
        }
        for tag in tags:
            self._upsert_tag(conn, tag)
            if tag.id in removed:
                continue
            self._execute(
                conn,
                "INSERT OR IGNORE INTO taglinks (tag_id, entry_id) VALUES (?, ?)",
                (tag.id, entry.id),
            )

    def delete_entry(self, entry_id: int) -> bool:
        """Remove an entry row (links and annotations cascade). Not staged for push."""
        with self._transaction() as conn:
            cursor = self._execute(conn, "DELETE FROM entries WHERE id = ?", (entry_id,))
            return cursor.rowcount > 0

    # Tags

    def get_tags(self) -> list[TagRow]:
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT id, label, slug FROM tags ORDER BY id").fetchall()
        return [TagRow(id=r["id"], label=r["label"], slug=r["slug"]) for r in records]

    def get_tag(self, tag_id: int) -> TagRow | None:
        with self._transaction() as conn:
            r = self._execute(
                conn, "SELECT id, label, slug FROM tags WHERE id = ?", (tag_id,)
            ).fetchone()
        return TagRow(id=r["id"], label=r["label"], slug=r["slug"]) if r else None

    def tag_ids(self) -> set[int]:
        with self._transaction() as conn:
            return {r[0] for r in self._execute(conn, "SELECT id FROM tags").fetchall()}

    def get_entry_tags(self, entry_id: int) -> list[TagRow]:
        with self._transaction() as conn:
            records = self._execute(
                conn,
                "SELECT tags.id, tags.label, tags.slug FROM tags "
                "JOIN taglinks ON taglinks.tag_id = tags.id "
                "WHERE taglinks.entry_id = ? ORDER BY tags.label",
                (entry_id,),
            ).fetchall()
        return [TagRow(id=r["id"], label=r["label"], slug=r["slug"]) for r in records]

    def upsert_tag(self, tag: TagRow) -> None:
        with self._transaction() as conn:
            self._upsert_tag(conn, tag)

    def _upsert_tag(self, conn: sqlite3.Connection, tag: TagRow) -> None:
        # A label is unique; a different id holding it means the server re-created the tag.
        self._execute(conn, "DELETE FROM tags WHERE label = ? AND id != ?", (tag.label, tag.id))
        self._execute(
            conn,
            "INSERT INTO tags (id, label, slug) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET label = excluded.label, slug = excluded.slug",
            (tag.id, tag.label, tag.slug),
        )

    def delete_tag(self, tag_id: int) -> bool:
        with self._transaction() as conn:
            return self._execute(conn, "DELETE FROM tags WHERE id = ?", (tag_id,)).rowcount > 0

    def prune_unused_tags(self) -> int:
        """Delete tags no entry links to. Returns the number removed."""
        with self._transaction() as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM tags WHERE NOT EXISTS "
                "(SELECT 1 FROM taglinks WHERE taglinks.tag_id = tags.id)",
            )
            return cursor.rowcount

    # Annotations

    def get_annotation(self, annotation_id: int) -> AnnotationRow | None:
        with self._transaction() as conn:
            record = self._execute(
                conn, "SELECT * FROM annotations WHERE id = ?", (annotation_id,)
            ).fetchone()
        return _to_annotation(record) if record else None

    def list_annotations(self, entry_id: int | None = None) -> list[AnnotationRow]:
        with self._transaction() as conn:
            if entry_id is None:
                records = self._execute(conn, "SELECT * FROM annotations ORDER BY id").fetchall()
            else:
                records = self._execute(
                    conn,
                    "SELECT * FROM annotations WHERE entry_id = ? ORDER BY id",
                    (entry_id,),
                ).fetchall()
        return [_to_annotation(r) for r in records]

    def annotation_ids(self) -> set[int]:
        with self._transaction() as conn:
            return {r[0] for r in self._execute(conn, "SELECT id FROM annotations").fetchall()}

    def list_annotations_needing_push(self) -> list[AnnotationRow]:
        with self._transaction() as conn:
            records = self._execute(
                conn, "SELECT * FROM annotations WHERE sync_state = 'pending_push' ORDER BY id"
            ).fetchall()
        return [_to_annotation(r) for r in records]

    def upsert_annotation(self, annotation: AnnotationRow) -> None:
        with self._transaction() as conn:
            self._upsert_annotation(conn, annotation)

    def _upsert_annotation(self, conn: sqlite3.Connection, annotation: AnnotationRow) -> None:
        placeholders = ", ".join("?" for _ in ANNOTATION_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in ANNOTATION_COLUMNS if c != "id")
        self._execute(
            conn,
            f"INSERT INTO annotations ({', '.join(ANNOTATION_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            _row_params(annotation, ANNOTATION_COLUMNS),
        )

    def delete_annotation(self, annotation_id: int) -> bool:
        with self._transaction() as conn:
            cursor = self._execute(conn, "DELETE FROM annotations WHERE id = ?", (annotation_id,))
            return cursor.rowcount > 0

    # Staged creations

    def stage_new_url(
        self,
        url: str,
        title: str | None = None,
        tags: Sequence[str] = (),
        is_archived: bool = False,
        is_starred: bool = False,
    ) -> NewUrl:
        with self._transaction() as conn:
            cursor = self._execute(
                conn,
                "INSERT INTO new_urls (url, title, tags, is_archived, is_starred, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    url,
                    title,
                    json.dumps(list(tags)),
                    int(is_archived),
                    int(is_starred),
                    _iso(datetime.now(timezone.utc)),
                ),
            )
            record = self._execute(
                conn, "SELECT * FROM new_urls WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return _to_new_url(record)

    def get_new_url(self, new_url_id: int) -> NewUrl | None:
        with self._transaction() as conn:
            record = self._execute(
                conn, "SELECT * FROM new_urls WHERE id = ?", (new_url_id,)
            ).fetchone()
        return _to_new_url(record) if record else None

    def list_new_urls(self) -> list[NewUrl]:
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT * FROM new_urls ORDER BY id").fetchall()
        return [_to_new_url(r) for r in records]

    def unstage_new_url(self, new_url_id: int) -> bool:
        """Drop a staged url together with anything staged against it."""
        with self._transaction() as conn:
            cursor = self._execute(conn, "DELETE FROM new_urls WHERE id = ?", (new_url_id,))
            return cursor.rowcount > 0

    def complete_new_url(
        self, new_url_id: int, entry: EntryRow, tags: Sequence[TagRow] = ()
    ) -> None:
        """Swap a pushed staging row for the server's entry in one transaction.

        Staged annotations and tag links that referenced the local id are
        re-pointed at the server id before the staging row goes away.
        """
        with self._transaction() as conn:
            self._upsert_entry(conn, entry, tags)
            for table in ("new_annotations", "new_taglinks"):
                self._execute(
                    conn,
                    f"UPDATE {table} SET entry_id = ?, new_url_id = NULL WHERE new_url_id = ?",
                    (entry.id, new_url_id),
                )
            self._execute(conn, "DELETE FROM new_urls WHERE id = ?", (new_url_id,))

    def stage_new_annotation(
        self,
        quote: str,
        text: str,
        ranges: str,
        entry_id: int | None = None,
        new_url_id: int | None = None,
    ) -> NewAnnotation:
        with self._transaction() as conn:
            cursor = self._execute(
                conn,
                "INSERT INTO new_annotations (entry_id, new_url_id, quote, text, ranges, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (entry_id, new_url_id, quote, text, ranges, _iso(datetime.now(timezone.utc))),
            )
            record = self._execute(
                conn, "SELECT * FROM new_annotations WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return _to_new_annotation(record)

    def list_new_annotations(self) -> list[NewAnnotation]:
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT * FROM new_annotations ORDER BY id").fetchall()
        return [_to_new_annotation(r) for r in records]

    def unstage_new_annotation(self, new_annotation_id: int) -> bool:
        with self._transaction() as conn:
            cursor = self._execute(
                conn, "DELETE FROM new_annotations WHERE id = ?", (new_annotation_id,)
            )
            return cursor.rowcount > 0

    def complete_new_annotation(self, new_annotation_id: int, annotation: AnnotationRow) -> None:
        with self._transaction() as conn:
            self._upsert_annotation(conn, annotation)
            self._execute(
                conn, "DELETE FROM new_annotations WHERE id = ?", (new_annotation_id,)
            )

    # Staged tag link changes

    def stage_tag_link(
        self, label: str, entry_id: int | None = None, new_url_id: int | None = None
    ) -> NewTagLink:
        with self._transaction() as conn:
            if entry_id is not None:
                # re-adding a tag that was removed offline cancels the removal
                self._execute(
                    conn,
                    "DELETE FROM deleted_taglinks WHERE entry_id = ? AND tag_id IN "
                    "(SELECT id FROM tags WHERE label = ?)",
                    (entry_id, label),
                )
            cursor = self._execute(
                conn,
                "INSERT INTO new_taglinks (entry_id, new_url_id, label) VALUES (?, ?, ?)",
                (entry_id, new_url_id, label),
            )
            record = self._execute(
                conn, "SELECT * FROM new_taglinks WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return _to_new_tag_link(record)

    def list_new_tag_links(self) -> list[NewTagLink]:
        with self._transaction() as conn:
            records = self._execute(conn, "SELECT * FROM new_taglinks ORDER BY id").fetchall()
        return [_to_new_tag_link(r) for r in records]

    def complete_tag_links(
        self, link_ids: Sequence[int], entry: EntryRow, tags: Sequence[TagRow]
    ) -> None:
        """Store the entry returned after labels were pushed and drop the staged links."""
        with self._transaction() as conn:
            self._upsert_entry(conn, entry, tags)
            for link_id in link_ids:
                self._execute(conn, "DELETE FROM new_taglinks WHERE id = ?", (link_id,))

    def unstage_tag_link(self, link_id: int) -> bool:
        with self._transaction() as conn:
            return (
                self._execute(conn, "DELETE FROM new_taglinks WHERE id = ?", (link_id,)).rowcount
                > 0
            )

    def stage_tag_removal(self, entry_id: int, tag_id: int) -> None:
        """Detach a tag from an entry locally and remember to detach it remotely."""
        with self._transaction() as conn:
            self._execute(
                conn,
                "DELETE FROM taglinks WHERE entry_id = ? AND tag_id = ?",
                (entry_id, tag_id),
            )
            self._execute(
                conn,
                "INSERT OR IGNORE INTO deleted_taglinks (entry_id, tag_id) VALUES (?, ?)",
                (entry_id, tag_id),
            )

    def list_tag_removals(self) -> list[TagRemoval]:
        with self._transaction() as conn:
            records = self._execute(
                conn, "SELECT entry_id, tag_id FROM deleted_taglinks ORDER BY entry_id, tag_id"
            ).fetchall()
        return [TagRemoval(entry_id=r["entry_id"], tag_id=r["tag_id"]) for r in records]

    def unstage_tag_removal(self, entry_id: int, tag_id: int) -> bool:
        with self._transaction() as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM deleted_taglinks WHERE entry_id = ? AND tag_id = ?",
                (entry_id, tag_id),
            )
            return cursor.rowcount > 0

    # Staged deletions

    def stage_deletion(self, kind: EntityKind, entity_id: int) -> None:
        """Remove a live row and record its server id for deletion on next push."""
        live, staged = LIVE_TABLES[kind.value], DELETION_TABLES[kind.value]
        with self._transaction() as conn:
            self._execute(conn, f"DELETE FROM {live} WHERE id = ?", (entity_id,))
            self._execute(conn, f"INSERT OR IGNORE INTO {staged} (id) VALUES (?)", (entity_id,))

    def list_deletions(self, kind: EntityKind) -> list[int]:
        with self._transaction() as conn:
            records = self._execute(
                conn, f"SELECT id FROM {DELETION_TABLES[kind.value]} ORDER BY id"
            ).fetchall()
        return [r[0] for r in records]

    def is_deletion_staged(self, kind: EntityKind, entity_id: int) -> bool:
        with self._transaction() as conn:
            record = self._execute(
                conn, f"SELECT 1 FROM {DELETION_TABLES[kind.value]} WHERE id = ?", (entity_id,)
            ).fetchone()
        return record is not None

    def unstage_deletion(self, kind: EntityKind, entity_id: int) -> bool:
        """Forget a staged deletion once the server agrees the entity is gone."""
        live, staged = LIVE_TABLES[kind.value], DELETION_TABLES[kind.value]
        with self._transaction() as conn:
            self._execute(conn, f"DELETE FROM {live} WHERE id = ?", (entity_id,))
            cursor = self._execute(conn, f"DELETE FROM {staged} WHERE id = ?", (entity_id,))
            return cursor.rowcount > 0

    # Sync bookkeeping

    def get_last_sync(self) -> datetime:
        with self._transaction() as conn:
            record = self._execute(conn, "SELECT last_sync FROM config WHERE id = 1").fetchone()
        if record is None:
            raise LocalStoreError("Config row is missing")
        return _parse_dt(record["last_sync"]) or EPOCH

    def set_last_sync(self, timestamp: datetime) -> bool:
        """Advance the stored last-sync time. Returns False if ``timestamp`` is not newer."""
        with self._transaction() as conn:
            record = self._execute(conn, "SELECT last_sync FROM config WHERE id = 1").fetchone()
            if record is None:
                raise LocalStoreError("Config row is missing")
            current = _parse_dt(record["last_sync"]) or EPOCH
            if timestamp <= current:
                return False
            self._execute(
                conn, "UPDATE config SET last_sync = ? WHERE id = 1", (_iso(timestamp),)
            )
            return True

    def pending_counts(self) -> dict[str, int]:
        """Number of rows waiting in each staging area."""
        with self._transaction() as conn:
            counts = {
                table: self._execute(conn, f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in (
                    "new_urls",
                    "new_annotations",
                    "new_taglinks",
                    "deleted_taglinks",
                    "deleted_entries",
                    "deleted_annotations",
                    "deleted_tags",
                )
            }
            counts["entries_pending_push"] = self._execute(
                conn, "SELECT COUNT(*) FROM entries WHERE sync_state = 'pending_push'"
            ).fetchone()[0]
            counts["annotations_pending_push"] = self._execute(
                conn, "SELECT COUNT(*) FROM annotations WHERE sync_state = 'pending_push'"
            ).fetchone()[0]
        return counts
