"""Property and scenario tests for the sync engine push/pull/finalize cycle."""

import json
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import FAST_SETTINGS, FakeWallabagServer
from wallabag_sync.models.entities import EPOCH, EntityKind, EntityState, EntryRow, Range
from wallabag_sync.offline import OfflineEditor
from wallabag_sync.remote.errors import AuthError, RemoteValidationError, TransportError
from wallabag_sync.storage.local_store import LocalStore, StoreBusyError
from wallabag_sync.sync.models import SyncMode
from wallabag_sync.sync.sync_engine import SyncEngine, SyncError

log = structlog.stdlib.get_logger()


def _cached_entry(entry_id: int, url: str = "https://example.com/a") -> EntryRow:
    now = datetime(2023, 5, 1, tzinfo=timezone.utc)
    return EntryRow(id=entry_id, url=url, title="cached", created_at=now, updated_at=now)


class TestPull:
    def test_first_incremental_sync_pulls_every_entry(self, engine, server, store):
        for n in range(3):
            server.add_entry(f"https://example.com/{n}")

        report = engine.run_sync(SyncMode.INCREMENTAL)

        assert (report.pulled, report.pushed, report.deleted) == (3, 0, 0)
        rows = store.list_entries()
        assert len(rows) == 3
        assert all(row.state is EntityState.CLEAN for row in rows)
        assert report.last_sync_advanced
        assert store.get_last_sync() > EPOCH

    def test_pulled_tags_and_annotations_are_stored(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/t", tags=["python", "later"])
        annotation_id = server.add_remote_annotation(entry_id, "quoted words", "a note")

        report = engine.run_sync()

        assert report.pulled == 2
        assert {t.label for t in store.get_entry_tags(entry_id)} == {"python", "later"}
        annotation = store.get_annotation(annotation_id)
        assert annotation is not None
        assert annotation.entry_id == entry_id
        assert annotation.text == "a note"
        assert json.loads(annotation.ranges)[0]["endOffset"] == len("quoted words")

    def test_remote_change_is_pulled_on_next_incremental_sync(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/r")
        engine.run_sync()

        server.touch(entry_id, title="renamed", is_starred=True)
        report = engine.run_sync()

        assert report.pulled == 1
        row = store.get_entry(entry_id)
        assert row.title == "renamed"
        assert row.is_starred

    def test_incremental_sync_never_removes_entries(self, engine, server, store):
        keep = server.add_entry("https://example.com/keep")
        gone = server.add_entry("https://example.com/gone")
        engine.run_sync()

        server.remove_entry(gone)
        report = engine.run_sync(SyncMode.INCREMENTAL)

        assert report.deleted == 0
        assert store.entry_ids() == {keep, gone}

    def test_full_sync_removes_entries_missing_remotely(self, engine, server, store):
        keep = server.add_entry("https://example.com/keep", tags=["shared"])
        gone = server.add_entry("https://example.com/gone", tags=["only-gone"])
        engine.run_sync()

        server.remove_entry(gone)
        report = engine.run_sync(SyncMode.FULL)

        assert store.entry_ids() == {keep}
        # the entry plus its now unused tag
        assert report.deleted == 2
        assert {t.label for t in store.get_tags()} == {"shared"}

    def test_full_sync_removes_annotations_missing_remotely(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/a")
        annotation_id = server.add_remote_annotation(entry_id, "quote")
        engine.run_sync()

        del server.annotations[annotation_id]
        report = engine.run_sync(SyncMode.FULL)

        assert store.get_annotation(annotation_id) is None
        assert report.deleted == 1

    def test_incremental_sync_prunes_unused_tags(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e", tags=["a", "b"])
        engine.run_sync(SyncMode.INCREMENTAL)
        tag_a = next(t for t in store.get_entry_tags(entry_id) if t.label == "a")

        OfflineEditor(store).untag_entry(entry_id, tag_a.id)
        report = engine.run_sync(SyncMode.INCREMENTAL)

        assert report.deleted == 1
        assert store.get_tag(tag_a.id) is None
        assert {t.label for t in store.get_tags()} == {"b"}
        assert engine.run_sync(SyncMode.INCREMENTAL).deleted == 0


class TestIdempotence:
    def test_second_run_reports_nothing(self, engine, server):
        server.add_entry("https://example.com/1", tags=["x"])
        entry_id = server.add_entry("https://example.com/2")
        server.add_remote_annotation(entry_id, "q")
        engine.run_sync()

        second = engine.run_sync()

        assert (second.pushed, second.pulled, second.deleted) == (0, 0, 0)
        assert second.success

    @given(
        entry_count=st.integers(min_value=0, max_value=6),
        labels=st.lists(st.sampled_from(["a", "b", "c", "read later"]), max_size=3, unique=True),
        mode=st.sampled_from(list(SyncMode)),
    )
    @settings(max_examples=15, deadline=None)
    def test_repeated_sync_is_a_noop(self, entry_count, labels, mode):
        log.info("test_repeated_sync_is_a_noop", entry_count=entry_count, mode=mode.value)
        server = FakeWallabagServer()
        for n in range(entry_count):
            server.add_entry(f"https://example.com/{n}", tags=labels)

        with tempfile.TemporaryDirectory() as tmp_dir:
            store = LocalStore(Path(tmp_dir) / "db.sqlite3")
            engine = SyncEngine(store, server, FAST_SETTINGS, sleep=lambda _: None)

            first = engine.run_sync(mode)
            second = engine.run_sync(mode)

            assert first.pulled == entry_count
            assert second.total_changes == 0
            assert len(store.entry_ids()) == entry_count


class TestPushCreations:
    def test_staged_url_is_created_with_its_fields(self, engine, server, store):
        editor = OfflineEditor(store)
        editor.add_url("https://example.com/new", title="Offline", tags=["x", "y"], is_starred=True)

        report = engine.run_sync()

        assert report.pushed == 1
        assert store.list_new_urls() == []
        (row,) = store.list_entries()
        assert row.url == "https://example.com/new"
        assert row.title == "Offline"
        assert row.is_starred
        assert row.state is EntityState.CLEAN
        assert {t.label for t in store.get_entry_tags(row.id)} == {"x", "y"}
        assert server.tag_labels(row.id) == {"x", "y"}

    def test_transport_failure_leaves_url_staged(self, engine, server, store, sleeps):
        OfflineEditor(store).add_url("https://example.com/new")
        server.fail("create_entry", TransportError("connection reset"), times=None)

        report = engine.run_sync()

        assert report.pushed == 0
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.kind is EntityKind.ENTRY
        assert failure.retryable
        assert failure.error_type == "TransportError"
        assert len(store.list_new_urls()) == 1
        assert store.get_last_sync() == EPOCH
        assert not report.last_sync_advanced
        assert server.call_count("create_entry") == FAST_SETTINGS.max_retries + 1
        assert len(sleeps) == FAST_SETTINGS.max_retries

    def test_transient_failure_is_retried_within_the_run(self, engine, server, store):
        OfflineEditor(store).add_url("https://example.com/new")
        server.fail("create_entry", TransportError("timeout"), times=1)

        report = engine.run_sync()

        assert report.pushed == 1
        assert report.failures == []
        assert store.list_new_urls() == []

    def test_annotation_and_label_on_staged_url_follow_the_new_id(self, engine, server, store):
        editor = OfflineEditor(store)
        new_url = editor.add_url("https://example.com/new")
        editor.add_annotation(
            "some quote",
            "my note",
            [Range(start="/p[1]", end="/p[1]", start_offset=0, end_offset=10)],
            new_url_id=new_url.id,
        )
        editor.tag_entry("later", new_url_id=new_url.id)

        report = engine.run_sync()

        assert report.pushed == 3
        (entry_id,) = store.entry_ids()
        assert store.list_new_annotations() == []
        assert store.list_new_tag_links() == []
        (annotation,) = store.list_annotations(entry_id)
        assert annotation.text == "my note"
        assert server.annotations[annotation.id]["entry_id"] == entry_id
        assert server.tag_labels(entry_id) == {"later"}
        assert {t.label for t in store.get_entry_tags(entry_id)} == {"later"}

        assert engine.run_sync().total_changes == 0

    def test_dependents_stay_staged_until_their_entry_exists(self, engine, server, store):
        editor = OfflineEditor(store)
        new_url = editor.add_url("https://example.com/new")
        editor.add_annotation("quote", new_url_id=new_url.id)
        server.fail("create_entry", RemoteValidationError("bad url", 400), times=None)

        report = engine.run_sync()

        assert report.pushed == 0
        assert {f.error_type for f in report.failures} == {"RemoteValidationError", "Blocked"}
        assert server.call_count("create_annotation") == 0
        (staged,) = store.list_new_annotations()
        assert staged.new_url_id == new_url.id

        server.heal("create_entry")
        retry = engine.run_sync()

        assert retry.pushed == 2
        assert store.list_new_urls() == []
        assert store.list_new_annotations() == []

    def test_rerun_pushes_only_still_staged_items(self, engine, server, store):
        editor = OfflineEditor(store)
        editor.add_url("https://example.com/one")
        editor.add_url("https://example.com/two")
        server.fail("create_entry", RemoteValidationError("rejected", 422), times=1)

        first = engine.run_sync()
        assert first.pushed == 1
        assert len(first.failures) == 1
        assert not first.failures[0].retryable
        assert server.call_count("create_entry") == 2

        second = engine.run_sync()
        assert second.pushed == 1
        assert server.call_count("create_entry") == 3
        assert len(store.entry_ids()) == 2


class TestPushEdits:
    def test_local_edit_is_pushed_and_marked_clean(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e")
        engine.run_sync()

        OfflineEditor(store).update_entry(entry_id, title="Better title", is_archived=True)
        report = engine.run_sync()

        assert report.pushed == 1
        assert server.entries[entry_id]["title"] == "Better title"
        assert server.entries[entry_id]["is_archived"] is True
        assert store.get_entry(entry_id).state is EntityState.CLEAN
        assert engine.run_sync().total_changes == 0

    def test_pending_edit_survives_pull_until_pushed(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e", title="original")
        engine.run_sync()

        OfflineEditor(store).update_entry(entry_id, title="local title")
        server.touch(entry_id, title="remote title", is_starred=True)
        server.fail("update_entry", RemoteValidationError("locked", 409), times=1)

        report = engine.run_sync()

        assert report.pulled == 1
        row = store.get_entry(entry_id)
        assert row.title == "local title"
        assert row.is_starred
        assert row.state is EntityState.PENDING_PUSH
        assert row.pending_fields == frozenset({"title"})

        engine.run_sync()
        assert server.entries[entry_id]["title"] == "local title"
        assert store.get_entry(entry_id).synced

    def test_edit_of_remotely_deleted_entry_drops_the_row(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e")
        engine.run_sync()
        server.remove_entry(entry_id)

        OfflineEditor(store).star(entry_id)
        report = engine.run_sync()

        assert report.deleted == 1
        assert report.failures == []
        assert store.get_entry(entry_id) is None

    def test_annotation_text_edit_is_pushed(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e")
        annotation_id = server.add_remote_annotation(entry_id, "quote", "old")
        engine.run_sync()

        OfflineEditor(store).update_annotation(annotation_id, "new text")
        report = engine.run_sync()

        assert report.pushed == 1
        assert server.annotations[annotation_id]["text"] == "new text"
        assert store.get_annotation(annotation_id).synced

    def test_tag_removal_is_pushed(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/e", tags=["a", "b"])
        engine.run_sync()
        tag_a = next(t for t in store.get_entry_tags(entry_id) if t.label == "a")

        OfflineEditor(store).untag_entry(entry_id, tag_a.id)
        report = engine.run_sync()

        assert report.pushed == 1
        assert server.tag_labels(entry_id) == {"b"}
        assert store.list_tag_removals() == []
        assert {t.label for t in store.get_entry_tags(entry_id)} == {"b"}
        assert engine.run_sync().total_changes == 0


class TestPushDeletions:
    def test_not_found_on_delete_counts_as_deleted(self, engine, store):
        store.upsert_entry(_cached_entry(42))
        OfflineEditor(store).delete_entry(42)

        report = engine.run_sync()

        assert report.deleted == 1
        assert report.failures == []
        assert store.list_deletions(EntityKind.ENTRY) == []
        assert store.get_entry(42) is None

    def test_deletion_is_propagated(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/d")
        engine.run_sync()

        OfflineEditor(store).delete_entry(entry_id)
        report = engine.run_sync()

        assert report.deleted == 1
        assert entry_id not in server.entries
        assert store.list_deletions(EntityKind.ENTRY) == []

    def test_staged_deletion_is_not_pulled_back(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/d")
        engine.run_sync()
        OfflineEditor(store).delete_entry(entry_id)
        server.touch(entry_id, title="changed remotely")
        server.fail("delete_entry", TransportError("down"), times=None)

        report = engine.run_sync()

        assert len(report.failures) == 1
        assert store.get_entry(entry_id) is None
        assert store.is_deletion_staged(EntityKind.ENTRY, entry_id)

    def test_tag_and_annotation_deletions(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/d", tags=["old"])
        annotation_id = server.add_remote_annotation(entry_id, "quote")
        engine.run_sync()
        (tag,) = store.get_entry_tags(entry_id)

        editor = OfflineEditor(store)
        editor.delete_tag(tag.id)
        editor.delete_annotation(annotation_id)
        report = engine.run_sync()

        assert report.deleted == 2
        assert tag.id not in server.tags
        assert annotation_id not in server.annotations
        assert store.get_tags() == []


class TestFatalErrors:
    def test_auth_failure_aborts_before_any_change(self, engine, server, store):
        OfflineEditor(store).add_url("https://example.com/new")
        server.fail("check_connection", AuthError("invalid_grant", 401), times=None)

        with pytest.raises(SyncError) as exc_info:
            engine.run_sync()

        assert isinstance(exc_info.value.__cause__, AuthError)
        assert exc_info.value.report.pushed == 0
        assert server.call_count("create_entry") == 0
        assert store.get_last_sync() == EPOCH

    def test_unreachable_server_is_fatal(self, engine, server, store):
        server.fail("check_connection", TransportError("no route to host"), times=None)

        with pytest.raises(SyncError):
            engine.run_sync()

        assert server.call_count("check_connection") == FAST_SETTINGS.max_retries + 1

    def test_listing_failure_keeps_push_progress_but_not_timestamp(self, engine, server, store):
        OfflineEditor(store).add_url("https://example.com/new")
        server.fail("list_entries", TransportError("gateway timeout", 504), times=None)

        with pytest.raises(SyncError) as exc_info:
            engine.run_sync()

        assert exc_info.value.report.pushed == 1
        assert store.list_new_urls() == []
        assert store.get_last_sync() == EPOCH

    def test_auth_failure_mid_push_is_fatal(self, engine, server, store):
        OfflineEditor(store).add_url("https://example.com/new")
        server.fail("create_entry", AuthError("token revoked", 401), times=None)

        with pytest.raises(SyncError):
            engine.run_sync()

        assert len(store.list_new_urls()) == 1

    def test_auth_failure_keeps_work_finished_in_the_same_wave(self, engine, server, store):
        doomed = server.add_entry("https://example.com/a")
        annotated = server.add_entry("https://example.com/b")
        engine.run_sync()
        editor = OfflineEditor(store)
        editor.delete_entry(doomed)
        editor.add_annotation("quote", entry_id=annotated)
        server.fail("delete_entry", AuthError("token revoked", 401))

        with pytest.raises(SyncError):
            engine.run_sync()

        assert store.list_new_annotations() == []
        assert store.list_deletions(EntityKind.ENTRY) == [doomed]

        report = engine.run_sync()

        assert report.deleted == 1
        assert report.pushed == 0
        remote = [a for a in server.annotations.values() if a["entry_id"] == annotated]
        assert len(remote) == 1
        assert len(store.list_annotations(annotated)) == 1


class TestConcurrencyAndCancellation:
    def test_cancelled_run_does_not_advance_timestamp(self, engine, server, store):
        server.add_entry("https://example.com/1")
        OfflineEditor(store).add_url("https://example.com/new")
        cancel = threading.Event()
        cancel.set()

        report = engine.run_sync(cancel_event=cancel)

        assert report.cancelled
        assert not report.success
        assert store.get_last_sync() == EPOCH
        assert len(store.list_new_urls()) == 1

    def test_offline_edits_are_rejected_during_sync(self, store):
        editor = OfflineEditor(store)
        with store.sync_session():
            with pytest.raises(StoreBusyError):
                editor.add_url("https://example.com/new")
        assert editor.add_url("https://example.com/new").id > 0

    def test_second_sync_while_one_runs_is_rejected(self, engine, store):
        with store.sync_session():
            with pytest.raises(SyncError):
                engine.run_sync()

    def test_many_independent_creations_in_parallel(self, engine, server, store):
        editor = OfflineEditor(store)
        for n in range(12):
            editor.add_url(f"https://example.com/{n}", tags=[f"t{n % 3}"])

        report = engine.run_sync()

        assert report.pushed == 12
        assert len(store.entry_ids()) == 12
        assert len(server.entries) == 12

    def test_cancellation_stops_a_wave_in_progress(self, store):
        cancel = threading.Event()

        class SlowServer(FakeWallabagServer):
            def create_entry(self, url, tags=None, **fields):
                time.sleep(0.05)
                created = super().create_entry(url, tags, **fields)
                cancel.set()
                return created

        server = SlowServer()
        engine = SyncEngine(store, server, FAST_SETTINGS.model_copy(update={"max_workers": 1}))
        editor = OfflineEditor(store)
        for n in range(10):
            editor.add_url(f"https://example.com/{n}")

        report = engine.run_sync(cancel_event=cancel)

        assert report.cancelled
        assert server.call_count("create_entry") <= 3
        assert len(server.entries) == report.pushed
        assert len(store.list_new_urls()) == 10 - report.pushed
        assert store.get_last_sync() == EPOCH


class TestAddUrlOnline:
    def test_creates_and_caches_entry(self, engine, server, store):
        row = engine.add_url_online("https://example.com/online", tags=["now"])

        assert row.id in server.entries
        assert store.get_entry(row.id) is not None
        assert {t.label for t in store.get_entry_tags(row.id)} == {"now"}

    def test_existing_url_is_fetched_not_created(self, engine, server, store):
        entry_id = server.add_entry("https://example.com/known")

        row = engine.add_url_online("https://example.com/known")

        assert row.id == entry_id
        assert server.call_count("create_entry") == 0

    def test_invalid_url_is_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.add_url_online("not a url")
