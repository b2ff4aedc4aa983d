"""Shared fixtures: an in-memory wallabag server and a temporary local store."""

import itertools
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import pytest

from wallabag_sync.models.config import SyncSettings
from wallabag_sync.models.entities import RemoteAnnotation, RemoteEntry, RemoteTag
from wallabag_sync.remote.errors import NotFoundError, RemoteValidationError
from wallabag_sync.storage.local_store import LocalStore
from wallabag_sync.sync.sync_engine import SyncEngine

_API_FIELDS = {
    "archive": "is_archived",
    "starred": "is_starred",
    "public": "is_public",
    "authors": "published_by",
}


class FakeWallabagServer:
    """Thread-safe in-memory implementation of the RemoteClient protocol.

    ``fail(op, error, times)`` makes the next ``times`` calls of ``op`` raise
    ``error``; ``times=None`` fails every call until ``heal(op)``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._last_tick = datetime(2020, 1, 1, tzinfo=timezone.utc)
        self.entries: dict[int, dict[str, Any]] = {}
        self.entry_tags: dict[int, set[int]] = defaultdict(set)
        self.tags: dict[int, RemoteTag] = {}
        self.annotations: dict[int, dict[str, Any]] = {}
        self.calls: list[str] = []
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._always: dict[str, Exception] = {}

    # Failure injection

    def fail(self, op: str, error: Exception, times: int | None = 1) -> None:
        with self._lock:
            if times is None:
                self._always[op] = error
            else:
                self._failures[op].extend([error] * times)

    def heal(self, op: str) -> None:
        with self._lock:
            self._always.pop(op, None)
            self._failures.pop(op, None)

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self._always:
            raise self._always[op]
        if self._failures[op]:
            raise self._failures[op].pop(0)

    def call_count(self, op: str) -> int:
        return self.calls.count(op)

    # Test helpers

    def _now(self) -> datetime:
        now = max(datetime.now(timezone.utc), self._last_tick + timedelta(microseconds=1))
        self._last_tick = now
        return now

    def add_entry(self, url: str, title: str | None = None, tags: Sequence[str] = (), **fields: Any) -> int:
        with self._lock:
            entry_id = next(self._ids)
            now = self._now()
            self.entries[entry_id] = {
                "id": entry_id,
                "url": url,
                "title": title or url,
                "content": f"<p>{url}</p>",
                "created_at": now,
                "updated_at": now,
                "is_archived": False,
                "is_starred": False,
                "is_public": False,
                "domain_name": "example.com",
                "mimetype": "text/html",
                "reading_time": 1,
                **fields,
            }
            for label in tags:
                self.entry_tags[entry_id].add(self._tag_for_label(label).id)
            return entry_id

    def touch(self, entry_id: int, **fields: Any) -> None:
        with self._lock:
            self.entries[entry_id].update(fields)
            self.entries[entry_id]["updated_at"] = self._now()

    def remove_entry(self, entry_id: int) -> None:
        with self._lock:
            self.entries.pop(entry_id)
            self.entry_tags.pop(entry_id, None)
            for annotation_id in [
                a for a, row in self.annotations.items() if row["entry_id"] == entry_id
            ]:
                del self.annotations[annotation_id]

    def add_remote_annotation(self, entry_id: int, quote: str, text: str = "") -> int:
        with self._lock:
            annotation_id = next(self._ids)
            now = self._now()
            self.annotations[annotation_id] = {
                "id": annotation_id,
                "entry_id": entry_id,
                "quote": quote,
                "text": text,
                "ranges": [{"start": "/p[1]", "end": "/p[1]", "startOffset": 0, "endOffset": len(quote)}],
                "created_at": now,
                "updated_at": now,
            }
            return annotation_id

    def tag_labels(self, entry_id: int) -> set[str]:
        return {self.tags[t].label for t in self.entry_tags.get(entry_id, set())}

    def _tag_for_label(self, label: str) -> RemoteTag:
        for tag in self.tags.values():
            if tag.label == label:
                return tag
        tag = RemoteTag(id=next(self._ids), label=label, slug=label.lower().replace(" ", "-"))
        self.tags[tag.id] = tag
        return tag

    def _annotation(self, annotation_id: int) -> RemoteAnnotation:
        row = dict(self.annotations[annotation_id])
        row.pop("entry_id")
        return RemoteAnnotation.model_validate(row)

    def _snapshot(self, entry_id: int) -> RemoteEntry:
        data = dict(self.entries[entry_id])
        data["tags"] = [self.tags[t] for t in sorted(self.entry_tags.get(entry_id, set()))]
        data["annotations"] = [
            self._annotation(a)
            for a, row in sorted(self.annotations.items())
            if row["entry_id"] == entry_id
        ]
        return RemoteEntry.model_validate(data)

    def _require(self, entry_id: int) -> None:
        if entry_id not in self.entries:
            raise NotFoundError(f"Entry {entry_id} not found", 404)

    # RemoteClient protocol

    def check_connection(self) -> str:
        with self._lock:
            self._enter("check_connection")
            return "2.6.0"

    def list_entries(self, since: datetime | None = None) -> list[RemoteEntry]:
        with self._lock:
            self._enter("list_entries")
            ids = sorted(self.entries, key=lambda i: self.entries[i]["updated_at"])
            if since is not None:
                ids = [i for i in ids if self.entries[i]["updated_at"] >= since]
            return [self._snapshot(i) for i in ids]

    def get_entry(self, entry_id: int) -> RemoteEntry:
        with self._lock:
            self._enter("get_entry")
            self._require(entry_id)
            return self._snapshot(entry_id)

    def entry_exists(self, url: str) -> int | None:
        with self._lock:
            self._enter("entry_exists")
            for entry_id, data in self.entries.items():
                if data["url"] == url:
                    return entry_id
            return None

    def create_entry(self, url: str, tags: Sequence[str] | None = None, **fields: Any) -> RemoteEntry:
        with self._lock:
            self._enter("create_entry")
            local = {_API_FIELDS.get(k, k): v for k, v in fields.items()}
            entry_id = self.add_entry(url, tags=tags or (), **local)
            return self._snapshot(entry_id)

    def update_entry(self, entry_id: int, changed_fields: dict[str, Any]) -> RemoteEntry:
        with self._lock:
            self._enter("update_entry")
            self._require(entry_id)
            if "title" in changed_fields and changed_fields["title"] == "":
                raise RemoteValidationError("title cannot be empty", 400)
            self.touch(entry_id, **{_API_FIELDS.get(k, k): v for k, v in changed_fields.items()})
            return self._snapshot(entry_id)

    def delete_entry(self, entry_id: int) -> None:
        with self._lock:
            self._enter("delete_entry")
            self._require(entry_id)
            self.remove_entry(entry_id)

    def list_tags(self) -> list[RemoteTag]:
        with self._lock:
            self._enter("list_tags")
            return list(self.tags.values())

    def delete_tag(self, tag_id: int) -> None:
        with self._lock:
            self._enter("delete_tag")
            if tag_id not in self.tags:
                raise NotFoundError(f"Tag {tag_id} not found", 404)
            del self.tags[tag_id]
            for links in self.entry_tags.values():
                links.discard(tag_id)

    def add_tags_to_entry(self, entry_id: int, labels: Sequence[str]) -> RemoteEntry:
        with self._lock:
            self._enter("add_tags_to_entry")
            self._require(entry_id)
            for label in labels:
                self.entry_tags[entry_id].add(self._tag_for_label(label).id)
            self.touch(entry_id)
            return self._snapshot(entry_id)

    def remove_tag_from_entry(self, entry_id: int, tag_id: int) -> RemoteEntry:
        with self._lock:
            self._enter("remove_tag_from_entry")
            self._require(entry_id)
            if tag_id not in self.entry_tags.get(entry_id, set()):
                raise NotFoundError(f"Tag {tag_id} not on entry", 404)
            self.entry_tags[entry_id].discard(tag_id)
            self.touch(entry_id)
            return self._snapshot(entry_id)

    def list_annotations(self, entry_id: int) -> list[RemoteAnnotation]:
        with self._lock:
            self._enter("list_annotations")
            return [
                self._annotation(a)
                for a, row in sorted(self.annotations.items())
                if row["entry_id"] == entry_id
            ]

    def create_annotation(self, entry_id: int, payload: dict[str, Any]) -> RemoteAnnotation:
        with self._lock:
            self._enter("create_annotation")
            self._require(entry_id)
            annotation_id = self.add_remote_annotation(
                entry_id, payload["quote"], payload.get("text", "")
            )
            self.annotations[annotation_id]["ranges"] = payload.get("ranges", [])
            return self._annotation(annotation_id)

    def update_annotation(self, annotation_id: int, changed_fields: dict[str, Any]) -> RemoteAnnotation:
        with self._lock:
            self._enter("update_annotation")
            if annotation_id not in self.annotations:
                raise NotFoundError(f"Annotation {annotation_id} not found", 404)
            self.annotations[annotation_id].update(changed_fields)
            self.annotations[annotation_id]["updated_at"] = self._now()
            return self._annotation(annotation_id)

    def delete_annotation(self, annotation_id: int) -> None:
        with self._lock:
            self._enter("delete_annotation")
            if annotation_id not in self.annotations:
                raise NotFoundError(f"Annotation {annotation_id} not found", 404)
            del self.annotations[annotation_id]


FAST_SETTINGS = SyncSettings(max_retries=2, base_delay=0.0, max_delay=0.0, max_workers=4)


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "db.sqlite3")


@pytest.fixture
def server() -> FakeWallabagServer:
    return FakeWallabagServer()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(store: LocalStore, server: FakeWallabagServer, sleeps: list[float]) -> Iterator[SyncEngine]:
    yield SyncEngine(store, server, FAST_SETTINGS, sleep=sleeps.append)
