"""Sync engine: push staged local changes, pull remote changes, then finalize."""

import contextvars
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Event
from typing import Any, Callable, Sequence

import structlog

from wallabag_sync.models.config import SyncSettings
from wallabag_sync.models.entities import (
    EntityKind,
    EntryRow,
    LocalEntrySnapshot,
    TagRow,
    check_url,
)
from wallabag_sync.remote.client import RemoteClient
from wallabag_sync.remote.errors import (
    AuthError,
    NotFoundError,
    RemoteError,
    TransportError,
)
from wallabag_sync.storage.local_store import LocalStore, LocalStoreError
from wallabag_sync.sync import entity_mapper
from wallabag_sync.sync.change_detector import ChangeDetector
from wallabag_sync.sync.models import ItemFailure, SyncMode, SyncReport
from wallabag_sync.sync.push_plan import PushItem, PushOp, PushPlan
from wallabag_sync.sync.timestamp_tracker import TimestampTracker
from wallabag_sync.utils.logging_config import bind_sync_context, clear_sync_context
from wallabag_sync.utils.retry import retry_call

log = structlog.stdlib.get_logger()


class SyncError(Exception):
    """A sync run was aborted. The last-sync timestamp was not advanced."""

    def __init__(self, message: str, report: SyncReport):
        super().__init__(message)
        self.report = report


class _Cancelled(Exception):
    pass


class SyncEngine:
    """Orchestrates synchronization between the local store and a wallabag server."""

    def __init__(
        self,
        store: LocalStore,
        client: RemoteClient,
        settings: SyncSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize sync engine.

        Args:
            store: Local cache owning the staging tables
            client: Remote client implementing the RemoteClient protocol
            settings: Retry and concurrency settings (defaults if None)
            sleep: Function used to wait between retries
        """
        self._store = store
        self._client = client
        self._settings = settings or SyncSettings()
        self._sleep = sleep
        self._change_detector = ChangeDetector()
        self._timestamp_tracker = TimestampTracker(store)
        log.info(
            "sync_engine_initialized",
            max_retries=self._settings.max_retries,
            max_workers=self._settings.max_workers,
        )

    def _call(self, func: Callable[..., Any], *args: Any, operation: str, **kwargs: Any) -> Any:
        return retry_call(
            func,
            *args,
            max_retries=self._settings.max_retries,
            base_delay=self._settings.base_delay,
            max_delay=self._settings.max_delay,
            exceptions=(TransportError,),
            sleep=self._sleep,
            operation=operation,
            **kwargs,
        )

    # Public API

    def run_sync(
        self, mode: SyncMode = SyncMode.INCREMENTAL, cancel_event: Event | None = None
    ) -> SyncReport:
        """
        Perform one synchronization run.

        This method:
        1. Checks that the server is reachable and accepts the credentials
        2. Pushes staged creations, edits, tag changes and deletions
        3. Pulls entries changed since the last sync (or all, for a full sync)
        4. Advances the last-sync timestamp if nothing failed or was cancelled

        Args:
            mode: INCREMENTAL or FULL
            cancel_event: Optional event; when set, the run stops between items

        Returns:
            SyncReport with counts and per-item failures

        Raises:
            SyncError: If the server is unreachable, authentication fails,
                a pull listing cannot be fetched, or the store fails
        """
        cancel_event = cancel_event or Event()
        report = SyncReport(mode=mode, start_time=datetime.now(timezone.utc))
        bind_sync_context(sync_run_id=uuid.uuid4().hex[:12], sync_mode=mode.value)
        log.info("sync_started")

        try:
            with self._store.sync_session():
                self._preflight(report)
                self._push(report, cancel_event)
                pull_started = datetime.now(timezone.utc)
                self._pull(report, mode, cancel_event)
                self._finalize(report, pull_started)
        except _Cancelled:
            report.cancelled = True
            log.warning("sync_cancelled", pushed=report.pushed, pulled=report.pulled)
        except AuthError as e:
            self._abort(report, f"Authentication failed: {e}", e)
        except RemoteError as e:
            self._abort(report, f"Remote service unavailable: {e}", e)
        except LocalStoreError as e:
            self._abort(report, f"Local store failed: {e}", e)
        finally:
            self._close_report(report)
            clear_sync_context()

        log.info(
            "sync_completed",
            pushed=report.pushed,
            pulled=report.pulled,
            deleted=report.deleted,
            failures=len(report.failures),
            cancelled=report.cancelled,
            last_sync_advanced=report.last_sync_advanced,
            duration_seconds=report.duration_seconds,
        )
        return report

    def add_url_online(self, url: str, tags: Sequence[str] = ()) -> EntryRow:
        """
        Save a url on the server right away and cache the resulting entry.

        An entry the server already knows for this url is fetched instead of
        created.

        Raises:
            ValueError: If the url is invalid
            RemoteError: If the server call fails
        """
        check_url(url)
        with self._store.sync_session():
            existing = self._call(self._client.entry_exists, url, operation="entry_exists")
            if existing is not None:
                remote = self._call(self._client.get_entry, existing, operation="get_entry")
            else:
                remote = self._call(
                    self._client.create_entry, url, tags=list(tags), operation="create_entry"
                )
            snapshot = entity_mapper.entry_to_local(remote)
            self._store.upsert_entry(snapshot.entry, snapshot.tags)
        log.info("url_added_online", entry_id=snapshot.entry.id, existed=existing is not None)
        return snapshot.entry

    # Phases

    def _preflight(self, report: SyncReport) -> None:
        version = self._call(self._client.check_connection, operation="check_connection")
        log.info("preflight_passed", api_version=version, mode=report.mode.value)

    def _push(self, report: SyncReport, cancel_event: Event) -> None:
        store = self._store
        plan = PushPlan.build(
            new_urls=store.list_new_urls(),
            new_annotations=store.list_new_annotations(),
            new_tag_links=store.list_new_tag_links(),
            tag_removals=store.list_tag_removals(),
            entries_to_update=store.list_entries_needing_push(),
            annotations_to_update=store.list_annotations_needing_push(),
            deleted_entries=store.list_deletions(EntityKind.ENTRY),
            deleted_annotations=store.list_deletions(EntityKind.ANNOTATION),
            deleted_tags=store.list_deletions(EntityKind.TAG),
        )
        if not len(plan):
            log.info("push_phase_skipped")
            return

        id_map: dict[int, int] = {}
        finished: set[PushItem] = set()
        failed: set[PushItem] = set()
        sorter = plan.sorter()

        with ThreadPoolExecutor(max_workers=self._settings.max_workers) as executor:
            while sorter.is_active():
                wave = sorter.get_ready()
                if not wave:
                    break
                self._check_cancel(cancel_event)

                futures: list[tuple[PushItem, Future]] = [
                    (
                        item,
                        executor.submit(
                            contextvars.copy_context().run, self._push_remote, item, id_map
                        ),
                    )
                    for item in wave
                ]
                # Finished calls are recorded before an auth failure aborts the run.
                fatal: AuthError | None = None
                for item, future in futures:
                    if cancel_event.is_set():
                        for _, pending in futures:
                            pending.cancel()
                    if future.cancelled():
                        continue
                    try:
                        result = future.result()
                    except AuthError as e:
                        fatal = fatal or e
                        continue
                    except RemoteError as e:
                        if self._push_not_found(report, item, e):
                            finished.add(item)
                            sorter.done(item)
                        else:
                            failed.add(item)
                            self._record_failure(report, item, e)
                        continue
                    self._push_apply(report, item, result, id_map)
                    finished.add(item)
                    sorter.done(item)

                if fatal is not None:
                    raise fatal
                self._check_cancel(cancel_event)

        for item in plan.items:
            if item in finished or item in failed:
                continue
            blockers = [dep for dep in plan.dependencies(item) if dep not in finished]
            report.failures.append(
                ItemFailure(
                    kind=item.kind,
                    operation=item.op.value,
                    local_id=item.local_id,
                    server_id=item.server_id,
                    error_type="Blocked",
                    message=f"waiting on {', '.join(dep.op.value for dep in blockers)}",
                    retryable=True,
                )
            )
            log.warning("push_item_blocked", operation=item.op.value, target=item.target)

        log.info(
            "push_phase_completed",
            pushed=report.pushed,
            deleted=report.deleted,
            failures=len(report.failures),
        )

    def _pull(self, report: SyncReport, mode: SyncMode, cancel_event: Event) -> None:
        store = self._store
        full = mode is SyncMode.FULL
        last_sync = self._timestamp_tracker.load_last_sync()
        since = None if full else last_sync

        remote_entries = self._call(self._client.list_entries, since, operation="list_entries")
        skipped_entries = set(store.list_deletions(EntityKind.ENTRY))
        skipped_annotations = set(store.list_deletions(EntityKind.ANNOTATION))
        skipped_tags = set(store.list_deletions(EntityKind.TAG))

        snapshots: list[LocalEntrySnapshot] = []
        for remote in remote_entries:
            if remote.id in skipped_entries:
                continue
            snapshot = entity_mapper.entry_to_local(remote)
            snapshot.tags = [t for t in snapshot.tags if t.id not in skipped_tags]
            snapshots.append(snapshot)

        changes = self._change_detector.detect_changes(
            snapshots, store.entry_timestamps(), full_listing=full
        )

        for snapshot in changes.new_entries + changes.modified_entries:
            self._check_cancel(cancel_event)
            local = store.get_entry(snapshot.entry.id)
            store.upsert_entry(entity_mapper.merge_pending(snapshot.entry, local), snapshot.tags)
            report.pulled += 1

        for snapshot in snapshots:
            self._check_cancel(cancel_event)
            self._pull_annotations(report, snapshot, skipped_annotations, full)

        for entry_id in changes.deleted_entry_ids:
            self._check_cancel(cancel_event)
            if store.delete_entry(entry_id):
                report.deleted += 1
                log.info("entry_removed_remotely", entry_id=entry_id)

        if full:
            self._reconcile_tags(report, skipped_tags)
        self._prune_tags(report)

        log.info(
            "pull_phase_completed",
            fetched=len(remote_entries),
            pulled=report.pulled,
            deleted=report.deleted,
        )

    def _pull_annotations(
        self,
        report: SyncReport,
        snapshot: LocalEntrySnapshot,
        skipped: set[int],
        full: bool,
    ) -> None:
        if snapshot.annotations is None:
            return
        store = self._store
        entry_id = snapshot.entry.id
        stored = {a.id: a for a in store.list_annotations(entry_id)}
        remote = [a for a in snapshot.annotations if a.id not in skipped]

        for annotation in self._change_detector.changed_annotations(remote, stored):
            store.upsert_annotation(
                entity_mapper.merge_pending(annotation, stored.get(annotation.id))
            )
            report.pulled += 1

        if full:
            for annotation_id in self._change_detector.detect_deleted(
                {a.id for a in remote}, set(stored)
            ):
                if store.delete_annotation(annotation_id):
                    report.deleted += 1

    def _reconcile_tags(self, report: SyncReport, skipped: set[int]) -> None:
        store = self._store
        remote_tags = self._call(self._client.list_tags, operation="list_tags")
        cached = store.tag_ids()
        # Only refresh labels of cached tags; unused remote tags are not mirrored.
        for tag in remote_tags:
            if tag.id in cached and tag.id not in skipped:
                store.upsert_tag(entity_mapper.tag_to_local(tag))
        for tag_id in self._change_detector.detect_deleted({t.id for t in remote_tags}, cached):
            if store.delete_tag(tag_id):
                report.deleted += 1

    def _prune_tags(self, report: SyncReport) -> None:
        pruned = self._store.prune_unused_tags()
        report.deleted += pruned
        if pruned:
            log.info("unused_tags_pruned", count=pruned)

    def _finalize(self, report: SyncReport, pull_started: datetime) -> None:
        if report.failures:
            log.warning("last_sync_kept", reason="item_failures", failures=len(report.failures))
            return
        report.last_sync_advanced = self._timestamp_tracker.save_last_sync(pull_started)

    # Push items

    def _push_remote(self, item: PushItem, id_map: dict[int, int]) -> Any:
        """Remote side of a push item. Runs on a worker thread; never touches the store."""
        client = self._client
        op = item.op
        record = item.record

        if op is PushOp.DELETE_ENTRY:
            return self._call(client.delete_entry, item.target[1], operation=op.value)
        if op is PushOp.DELETE_ANNOTATION:
            return self._call(client.delete_annotation, item.target[1], operation=op.value)
        if op is PushOp.DELETE_TAG:
            return self._call(client.delete_tag, item.target[1], operation=op.value)
        if op is PushOp.CREATE_ENTRY:
            return self._call(
                client.create_entry,
                record.url,
                tags=record.tags,
                operation=op.value,
                **entity_mapper.new_url_to_remote(record),
            )
        if op is PushOp.UPDATE_ENTRY:
            return self._call(
                client.update_entry,
                record.id,
                entity_mapper.entry_to_remote(record),
                operation=op.value,
            )
        if op is PushOp.ADD_TAGS:
            entry_id = self._resolve(item.target, id_map)
            return self._call(
                client.add_tags_to_entry,
                entry_id,
                [link.label for link in record],
                operation=op.value,
            )
        if op is PushOp.REMOVE_TAGS:
            latest = None
            for removal in record:
                try:
                    latest = self._call(
                        client.remove_tag_from_entry,
                        removal.entry_id,
                        removal.tag_id,
                        operation=op.value,
                    )
                except NotFoundError:
                    log.info(
                        "tag_already_removed", entry_id=removal.entry_id, tag_id=removal.tag_id
                    )
            return latest
        if op is PushOp.CREATE_ANNOTATION:
            entry_id = entity_mapper.resolve_entry_reference(
                record.entry_id, record.new_url_id, id_map
            )
            return self._call(
                client.create_annotation,
                entry_id,
                entity_mapper.new_annotation_to_remote(record),
                operation=op.value,
            )
        if op is PushOp.UPDATE_ANNOTATION:
            return self._call(
                client.update_annotation,
                record.id,
                entity_mapper.annotation_to_remote(record),
                operation=op.value,
            )
        raise ValueError(f"Unknown push operation: {op}")

    @staticmethod
    def _resolve(target: tuple[str, int], id_map: dict[int, int]) -> int | None:
        kind, key = target
        return id_map.get(key) if kind == "new_url" else key

    def _push_apply(
        self, report: SyncReport, item: PushItem, result: Any, id_map: dict[int, int]
    ) -> None:
        """Local side of a successful push item."""
        store = self._store
        op = item.op
        record = item.record

        if op is PushOp.DELETE_ENTRY:
            store.unstage_deletion(EntityKind.ENTRY, item.target[1])
            report.deleted += 1
        elif op is PushOp.DELETE_ANNOTATION:
            store.unstage_deletion(EntityKind.ANNOTATION, item.target[1])
            report.deleted += 1
        elif op is PushOp.DELETE_TAG:
            store.unstage_deletion(EntityKind.TAG, item.target[1])
            report.deleted += 1
        elif op is PushOp.CREATE_ENTRY:
            snapshot = entity_mapper.entry_to_local(result)
            store.complete_new_url(record.id, snapshot.entry, snapshot.tags)
            id_map[record.id] = snapshot.entry.id
            report.pushed += 1
            log.info("staged_entry_created", new_url_id=record.id, entry_id=snapshot.entry.id)
        elif op is PushOp.UPDATE_ENTRY:
            snapshot = entity_mapper.entry_to_local(result)
            store.upsert_entry(snapshot.entry, self._live_tags(snapshot.tags))
            report.pushed += 1
        elif op is PushOp.ADD_TAGS:
            snapshot = entity_mapper.entry_to_local(result)
            local = store.get_entry(snapshot.entry.id)
            store.complete_tag_links(
                [link.id for link in record],
                entity_mapper.merge_pending(snapshot.entry, local),
                self._live_tags(snapshot.tags),
            )
            report.pushed += len(record)
        elif op is PushOp.REMOVE_TAGS:
            for removal in record:
                store.unstage_tag_removal(removal.entry_id, removal.tag_id)
                report.pushed += 1
            if result is not None:
                snapshot = entity_mapper.entry_to_local(result)
                local = store.get_entry(snapshot.entry.id)
                store.upsert_entry(
                    entity_mapper.merge_pending(snapshot.entry, local),
                    self._live_tags(snapshot.tags),
                )
        elif op is PushOp.CREATE_ANNOTATION:
            entry_id = entity_mapper.resolve_entry_reference(
                record.entry_id, record.new_url_id, id_map
            )
            store.complete_new_annotation(
                record.id, entity_mapper.annotation_to_local(result, entry_id)
            )
            report.pushed += 1
        elif op is PushOp.UPDATE_ANNOTATION:
            store.upsert_annotation(entity_mapper.annotation_to_local(result, record.entry_id))
            report.pushed += 1

    def _push_not_found(self, report: SyncReport, item: PushItem, error: RemoteError) -> bool:
        """Handle a not-found answer. Returns True when it settles the item."""
        if not isinstance(error, NotFoundError):
            return False
        store = self._store
        op = item.op
        server_id = item.target[1]

        if op in (PushOp.DELETE_ENTRY, PushOp.DELETE_ANNOTATION, PushOp.DELETE_TAG):
            store.unstage_deletion(item.kind, server_id)
            report.deleted += 1
            log.info("remote_already_deleted", kind=item.kind.value, server_id=server_id)
            return True
        if op is PushOp.UPDATE_ENTRY:
            store.delete_entry(server_id)
        elif op is PushOp.UPDATE_ANNOTATION:
            store.delete_annotation(server_id)
        else:
            return False
        report.deleted += 1
        log.info("edited_entity_gone_remotely", kind=item.kind.value, server_id=server_id)
        return True

    def _live_tags(self, tags: list[TagRow]) -> list[TagRow]:
        staged = set(self._store.list_deletions(EntityKind.TAG))
        return [t for t in tags if t.id not in staged]

    # Helpers

    @staticmethod
    def _check_cancel(cancel_event: Event) -> None:
        if cancel_event.is_set():
            raise _Cancelled()

    @staticmethod
    def _record_failure(report: SyncReport, item: PushItem, error: Exception) -> None:
        retryable = isinstance(error, RemoteError) and error.retryable
        report.failures.append(
            ItemFailure(
                kind=item.kind,
                operation=item.op.value,
                local_id=item.local_id,
                server_id=item.server_id,
                error_type=type(error).__name__,
                message=str(error),
                retryable=retryable,
            )
        )
        log.warning(
            "push_item_failed",
            operation=item.op.value,
            target=item.target,
            error_type=type(error).__name__,
            error=str(error),
            retryable=retryable,
        )

    def _abort(self, report: SyncReport, message: str, cause: Exception) -> None:
        self._close_report(report)
        log.error("sync_failed", error=message, error_type=type(cause).__name__)
        clear_sync_context()
        raise SyncError(message, report) from cause

    @staticmethod
    def _close_report(report: SyncReport) -> None:
        if report.end_time is None:
            report.end_time = datetime.now(timezone.utc)
            report.duration_seconds = (report.end_time - report.start_time).total_seconds()
