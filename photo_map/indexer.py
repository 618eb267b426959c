"""Index coordinator: keeps the catalog and spatial index in step with disk.

Each root runs a small state machine

    idle -> scanning -> diffing -> applying -> idle
              \\___________\\__________\\______-> error
    (any) -- remove_root --> stopped

Cycles for one root are serialized by that root's lock, and the thread that
holds the lock is the only one mutating that root's records. Cycles for
different roots may run at the same time; they share the extraction pool and
meet only inside the spatial index, which has its own writer lock.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path

import config
from catalog import Catalog
from errors import CancelledError, CatalogError, IndexWriteConflict, RootError
from events import EventCoalescer, FsEvent
from incremental import AddOp, Plan, RemoveOp, UpdateOp, plan_delta, plan_full
from metadata import extract_metadata, media_type_for
from pipeline import Extracted, Extractor, run_extraction
from records import IndexingProgress, MediaType, PhotoRecord, Root, RootState, ThumbnailStatus
from scanner import normalize_path, scan_root
from spatial_index import SpatialIndex
from thumbnails import ThumbnailQueue

logger = logging.getLogger(__name__)


def _is_inside(path: str, directory: str) -> bool:
    """True if path lies strictly below directory."""
    return path.startswith(directory.rstrip(os.sep) + os.sep)


@dataclass
class _RootRuntime:
    root: Root
    lock: threading.Lock = field(default_factory=threading.Lock)
    cancel: threading.Event = field(default_factory=threading.Event)
    progress: IndexingProgress | None = None

    def __post_init__(self):
        if self.progress is None:
            self.progress = IndexingProgress(root_id=self.root.id, state=self.root.state)


class IndexCoordinator:
    def __init__(
        self,
        catalog: Catalog,
        spatial_index: SpatialIndex | None = None,
        extractor: Extractor = extract_metadata,
        thumbnails: ThumbnailQueue | None = None,
        coalescer: EventCoalescer | None = None,
        workers: int | None = None,
    ):
        self._catalog = catalog
        self._index = spatial_index if spatial_index is not None else SpatialIndex()
        self._extractor = extractor
        self._thumbnails = thumbnails
        if self._thumbnails is not None:
            self._thumbnails.set_callback(self.report_thumbnail)
        self._coalescer = coalescer or EventCoalescer()
        self._workers = workers or config.WORKER_LIMIT
        self._pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="extract")

        self._roots: dict[int, _RootRuntime] = {}
        self._roots_lock = threading.Lock()
        self._pump_stop = threading.Event()
        self._pump_thread: threading.Thread | None = None

        for root in catalog.list_roots():
            self._roots[root.id] = _RootRuntime(root=root)
        self._load_index()

    @property
    def spatial_index(self) -> SpatialIndex:
        return self._index

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    def _load_index(self) -> None:
        """Rebuild the in-memory spatial index from the catalog."""
        located = self._catalog.list_located()
        loaded = self._index.bulk_load(
            (r.id, r.coordinate, r.facet) for r in located if not r.stale
        )
        logger.info("Spatial index loaded: %d located photos", loaded)

    # -- roots --

    def _runtime(self, root_id: int) -> _RootRuntime:
        with self._roots_lock:
            runtime = self._roots.get(root_id)
        if runtime is None:
            raise KeyError(f"Unknown root: {root_id}")
        return runtime

    def add_root(self, path: str) -> Root:
        """Register a directory as a root.

        A file belongs to the deepest root containing it. When the new root
        sits inside an existing one, the records the outer root holds under
        it are handed over, keeping their ids and index entries.
        """
        resolved = normalize_path(Path(path).expanduser())
        if not os.path.isdir(resolved):
            raise RootError(None, resolved, "not a directory")
        with self._roots_lock:
            for runtime in self._roots.values():
                if runtime.root.path == resolved and runtime.root.state is not RootState.STOPPED:
                    return runtime.root
            root = self._catalog.add_root(resolved)
            self._roots[root.id] = _RootRuntime(root=root)
            enclosing = [
                rt for rt in self._roots.values()
                if rt.root.id != root.id
                and rt.root.state is not RootState.STOPPED
                and _is_inside(resolved, rt.root.path)
            ]
        logger.info("Added root %d: %s", root.id, resolved)

        for outer in enclosing:
            with outer.lock:
                moved = self._catalog.reassign(resolved, outer.root.id, root.id)
                for record in moved:
                    if self._expected_in_index(record):
                        self._index.update(record.id, record.coordinate, record.facet)
            if moved:
                logger.info(
                    "Root %d took over %d records from enclosing root %d",
                    root.id, len(moved), outer.root.id,
                )
        return root

    def _nested_paths(self, root: Root) -> list[str]:
        """Paths of live roots strictly inside root."""
        with self._roots_lock:
            return [
                rt.root.path for rt in self._roots.values()
                if rt.root.id != root.id
                and rt.root.state is not RootState.STOPPED
                and _is_inside(rt.root.path, root.path)
            ]

    def get_root(self, root_id: int) -> Root:
        return self._runtime(root_id).root

    def list_roots(self) -> list[Root]:
        with self._roots_lock:
            return [rt.root for _, rt in sorted(self._roots.items())]

    def remove_root(self, root_id: int) -> Root:
        """Stop indexing a root and drop its records.

        An in-flight cycle is cancelled at its next checkpoint (between two
        files). Queued events for the root are discarded.
        """
        runtime = self._runtime(root_id)
        runtime.cancel.set()
        dropped = self._coalescer.discard(root_id)
        with runtime.lock:
            if runtime.root.state is RootState.STOPPED:
                return runtime.root
            records = self._catalog.list_by_root(root_id)
            for record in records:
                self._index.remove(record.id)
            self._catalog.delete_root(root_id)
            self._set_state(runtime, RootState.STOPPED)
        logger.info(
            "Removed root %d (%s): %d records, %d queued events dropped",
            root_id, runtime.root.path, len(records), dropped,
        )
        # The files now fall to the enclosing root, if any; its next cycle
        # rescans to pick them up.
        parent = self._root_for_path(runtime.root.path)
        if parent is not None:
            self._coalescer.mark_interrupted(parent)
        return runtime.root

    def get_indexing_progress(self, root_id: int) -> IndexingProgress:
        return replace(self._runtime(root_id).progress)

    def get_photo(self, photo_id: int) -> PhotoRecord | None:
        return self._catalog.get(photo_id)

    # -- scanning --

    def scan_root(self, root_id: int) -> IndexingProgress:
        """Run a full scan/diff/apply cycle on the calling thread.

        Raises:
            RootError: the root directory is missing or unreadable. The
                root is left in the error state until scanned again.
        """
        return self._run_cycle(self._runtime(root_id), full=True)

    def schedule_scan(self, root_id: int) -> threading.Thread:
        """Run scan_root on a background thread."""
        runtime = self._runtime(root_id)

        def _scan():
            try:
                self._run_cycle(runtime, full=True)
            except RootError as exc:
                logger.error("Background scan of root %d failed: %s", root_id, exc)
            except Exception:
                logger.exception("Background scan of root %d crashed", root_id)

        thread = threading.Thread(target=_scan, name=f"scan-root-{root_id}", daemon=True)
        thread.start()
        return thread

    # -- live updates --

    def _root_for_path(self, path: str) -> int | None:
        best: tuple[int, int] | None = None
        with self._roots_lock:
            runtimes = list(self._roots.values())
        for runtime in runtimes:
            root = runtime.root
            if root.state is RootState.STOPPED:
                continue
            if path == root.path or _is_inside(path, root.path):
                if best is None or len(root.path) > best[1]:
                    best = (root.id, len(root.path))
        return best[0] if best else None

    def push_event(self, event: FsEvent, now: float | None = None) -> list[int]:
        """Queue one watcher event. Returns the ids of the roots it touched."""
        path = normalize_path(event.path)
        root_id = self._root_for_path(path)
        if event.kind == "rename":
            old_root = self._root_for_path(normalize_path(event.old_path))
            if old_root != root_id:
                # Moved across roots: a delete in one, a create in the other
                touched = []
                if old_root is not None:
                    self._coalescer.push(old_root, FsEvent(event.old_path, "delete"), now)
                    touched.append(old_root)
                if root_id is not None:
                    self._coalescer.push(root_id, FsEvent(event.path, "create"), now)
                    touched.append(root_id)
                return touched
        if root_id is None:
            logger.debug("Ignoring event outside any root: %s", path)
            return []
        self._coalescer.push(root_id, event, now)
        return [root_id]

    def mark_interrupted(self, root_id: int | None = None, now: float | None = None) -> None:
        """Watcher restarted or overflowed; next cycle for the root(s) is a full scan."""
        targets = [root_id] if root_id is not None else [r.id for r in self.list_roots()]
        for rid in targets:
            if self._runtime(rid).root.state is not RootState.STOPPED:
                self._coalescer.mark_interrupted(rid, now)

    def process_pending(self, now: float | None = None) -> list[IndexingProgress]:
        """Run one cycle per root whose debounce window has elapsed."""
        results = []
        for batch in self._coalescer.due(now):
            try:
                runtime = self._runtime(batch.root_id)
            except KeyError:
                continue
            state = runtime.root.state
            if state is RootState.STOPPED:
                continue
            if state is RootState.ERROR:
                logger.warning(
                    "Root %d is in error state; ignoring %d events until it is rescanned",
                    batch.root_id, len(batch),
                )
                continue
            try:
                results.append(self._run_cycle(
                    runtime,
                    full=batch.full_rescan,
                    changed=batch.changed,
                    removed=batch.removed,
                ))
            except RootError as exc:
                logger.error("Incremental update of root %d failed: %s", batch.root_id, exc)
        return results

    def start_pump(self, interval: float | None = None) -> None:
        """Call process_pending periodically on a daemon thread."""
        if self._pump_thread is not None:
            return
        period = interval or config.PUMP_INTERVAL_SECONDS
        self._pump_stop.clear()

        def _pump():
            while not self._pump_stop.wait(period):
                try:
                    self.process_pending()
                except Exception:
                    logger.exception("Event pump iteration failed")

        self._pump_thread = threading.Thread(target=_pump, name="event-pump", daemon=True)
        self._pump_thread.start()

    def stop_pump(self) -> None:
        self._pump_stop.set()
        if self._pump_thread is not None:
            self._pump_thread.join(timeout=5)
            self._pump_thread = None

    # -- thumbnails --

    def report_thumbnail(self, photo_id: int, status: ThumbnailStatus) -> None:
        try:
            self._catalog.set_thumbnail_status(photo_id, status)
        except CatalogError:
            logger.warning("Could not store thumbnail status for photo %d", photo_id, exc_info=True)

    def _request_thumbnail(self, record: PhotoRecord) -> None:
        if self._thumbnails is None or record.thumbnail_status is not ThumbnailStatus.PENDING:
            return
        self._thumbnails.request(record.id, record.path, record.content_hash, record.media_type)

    # -- cycle --

    def _set_state(self, runtime: _RootRuntime, state: RootState) -> None:
        logger.debug("Root %d: %s -> %s", runtime.root.id, runtime.root.state.value, state.value)
        runtime.root.state = state
        runtime.progress.state = state

    def _check_cancel(self, runtime: _RootRuntime) -> None:
        if runtime.cancel.is_set():
            raise CancelledError(f"Root {runtime.root.id} removed")

    def _run_cycle(
        self,
        runtime: _RootRuntime,
        full: bool,
        changed: list[str] = (),
        removed: list[str] = (),
    ) -> IndexingProgress:
        root = runtime.root
        with runtime.lock:
            if root.state is RootState.STOPPED or runtime.cancel.is_set():
                raise RootError(root.id, root.path, "root was removed")
            runtime.progress = IndexingProgress(root_id=root.id, state=root.state)
            started = time.time()
            nested = self._nested_paths(root)
            try:
                if full:
                    self._set_state(runtime, RootState.SCANNING)
                    scanned = scan_root(
                        root.path, root.id, is_cancelled=runtime.cancel.is_set, exclude=nested,
                    )
                    self._check_cancel(runtime)
                    if scanned.cycles:
                        logger.warning(
                            "Root %d: skipped %d symlink cycle(s)", root.id, len(scanned.cycles),
                        )
                    self._set_state(runtime, RootState.DIFFING)
                    records = self._catalog.list_by_root(root.id)
                    plan = plan_full(scanned.entries, records, exclude=nested)
                else:
                    if not os.path.isdir(root.path):
                        raise RootError(root.id, root.path, "root directory is gone")
                    self._set_state(runtime, RootState.DIFFING)
                    records = self._catalog.list_by_root(root.id)
                    plan = plan_delta(list(changed), list(removed), records, exclude=nested)

                self._check_cancel(runtime)
                self._set_state(runtime, RootState.APPLYING)
                runtime.progress.total = len(plan)
                self._apply(runtime, plan, {r.id: r for r in records})

                if not os.path.isdir(root.path):
                    raise RootError(root.id, root.path, "root directory disappeared during indexing")

                root.last_scan_at = time.time()
                root.error = None
                self._catalog.set_last_scan(root.id, root.last_scan_at)
                self._set_state(runtime, RootState.IDLE)
                logger.info(
                    "Root %d %s cycle: %d ops (%d add, %d update, %d remove), "
                    "%d unchanged, %d errors in %.2fs",
                    root.id, "full" if full else "incremental", len(plan),
                    len(plan.adds), len(plan.updates), len(plan.removes),
                    plan.unchanged, runtime.progress.errors, time.time() - started,
                )
            except CancelledError:
                logger.info("Root %d: cycle cancelled", root.id)
                runtime.progress.message = "cancelled"
            except RootError as exc:
                root.error = exc.reason
                runtime.progress.message = exc.reason
                self._set_state(runtime, RootState.ERROR)
                raise
            except CatalogError as exc:
                root.error = str(exc)
                runtime.progress.message = str(exc)
                self._set_state(runtime, RootState.ERROR)
                raise RootError(root.id, root.path, f"catalog unavailable: {exc}") from exc
            return replace(runtime.progress)

    def _apply(self, runtime: _RootRuntime, plan: Plan, records: dict[int, PhotoRecord]) -> None:
        progress = runtime.progress
        removals: dict[int, RemoveOp] = {op.photo_id: op for op in plan.removes}

        # Hash -> records about to be removed; an Add with the same content
        # is the same file under a new name.
        moved_from: dict[str, list[PhotoRecord]] = {}
        for photo_id in removals:
            record = records.get(photo_id)
            if record is not None and record.content_hash and record.error is None:
                moved_from.setdefault(record.content_hash, []).append(record)

        extract_ops = [op for op in plan.ops if isinstance(op, (AddOp, UpdateOp))]
        for result in run_extraction(
            extract_ops, self._extractor, self._pool, self._workers,
            is_cancelled=runtime.cancel.is_set,
        ):
            ok = False
            try:
                previous = self._previous_for(runtime.root.id, result.op, records)
                candidates = (
                    moved_from.get(result.metadata.content_hash)
                    if previous is None and isinstance(result.op, AddOp) and result.metadata is not None
                    else None
                )
                if candidates:
                    source = candidates.pop(0)
                    removals.pop(source.id, None)
                    ok = self._apply_move(source, result)
                else:
                    ok = self._apply_extracted(runtime.root.id, result, previous)
            except CatalogError:
                logger.warning("Catalog write failed for %s", result.op.path, exc_info=True)
            progress.processed += 1
            if not ok:
                progress.errors += 1

        for photo_id in sorted(removals):
            self._check_cancel(runtime)
            if not self._apply_remove(records.get(photo_id) or self._catalog.get(photo_id)):
                progress.errors += 1
            progress.processed += 1

        # Rename merges shrink the op count
        progress.total = progress.processed

    # -- record mutations (caller holds the root lock) --

    def _upsert(self, record: PhotoRecord) -> PhotoRecord:
        """Catalog upsert, retried a few times before giving up on this record."""
        attempts = max(1, config.CATALOG_RETRY_ATTEMPTS)
        attempt = 1
        while True:
            try:
                return self._catalog.upsert(record)
            except CatalogError:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Catalog upsert failed for %s (attempt %d/%d)", record.path, attempt, attempts,
                )
                time.sleep(0.05 * attempt)
                attempt += 1

    @staticmethod
    def _expected_in_index(record: PhotoRecord | None) -> bool:
        return (
            record is not None
            and record.coordinate is not None
            and record.error is None
            and not record.stale
        )

    def _sync_index(self, record: PhotoRecord, previous: PhotoRecord | None) -> None:
        """Make the spatial index reflect record. previous is the catalog state before."""
        present = record.id in self._index
        if present != self._expected_in_index(previous):
            raise IndexWriteConflict(
                record.id, "indexed" if present else "missing from index",
            )
        if self._expected_in_index(record):
            self._index.update(record.id, record.coordinate, record.facet)
        elif present:
            self._index.remove(record.id)

    def _commit(self, record: PhotoRecord, previous: PhotoRecord | None) -> PhotoRecord | None:
        """Write record to the catalog and the spatial index, both or neither."""
        saved = self._upsert(record)
        try:
            self._sync_index(saved, previous)
        except IndexWriteConflict as exc:
            logger.error("Invariant violation, photo %d will be re-derived: %s", saved.id, exc)
            self._index.remove(saved.id)
            try:
                self._catalog.mark_stale(saved.id)
            except CatalogError:
                logger.warning("Could not flag photo %d as stale", saved.id, exc_info=True)
            return None
        except Exception:
            logger.warning("Index write failed for %s; rolling back", saved.path, exc_info=True)
            if previous is not None:
                self._catalog.upsert(previous)
            else:
                self._catalog.delete(saved.id)
            return None
        return saved

    def _previous_for(
        self, root_id: int, op: AddOp | UpdateOp, records: dict[int, PhotoRecord],
    ) -> PhotoRecord | None:
        """The catalog record an extracted file overwrites, if any.

        A new file for this root may already be catalogued under another
        root (an enclosing one that has not handed it over yet). It is taken
        over in place so the path stays unique and the id is kept.
        """
        if isinstance(op, UpdateOp):
            return records.get(op.photo_id) or self._catalog.get(op.photo_id)
        existing = self._catalog.find_by_path(op.path)
        if existing is not None and existing.root_id != root_id:
            logger.info(
                "Root %d takes over %s from root %d", root_id, op.path, existing.root_id,
            )
        return existing

    def _apply_extracted(
        self, root_id: int, result: Extracted, previous: PhotoRecord | None,
    ) -> bool:
        op = result.op

        if result.error is not None:
            logger.warning("Metadata error for %s: %s", op.path, result.error.reason)
            record = PhotoRecord(
                id=previous.id if previous else None,
                path=op.path,
                root_id=root_id,
                media_type=media_type_for(Path(op.path)) or MediaType.PHOTO,
                content_hash=previous.content_hash if previous else "",
                size=op.size,
                mtime=op.mtime,
                thumbnail_status=ThumbnailStatus.FAILED,
                error=result.error.reason,
            )
            self._commit(record, previous)
            return False

        meta = result.metadata
        same_content = previous is not None and previous.content_hash == meta.content_hash
        record = PhotoRecord(
            id=previous.id if previous else None,
            path=op.path,
            root_id=root_id,
            media_type=meta.media_type,
            content_hash=meta.content_hash,
            size=op.size,
            mtime=op.mtime,
            taken_at=meta.taken_at,
            coordinate=meta.coordinate,
            thumbnail_status=(
                previous.thumbnail_status
                if same_content and previous.thumbnail_status is not ThumbnailStatus.FAILED
                else ThumbnailStatus.PENDING
            ),
        )
        saved = self._commit(record, previous)
        if saved is None:
            return False
        self._request_thumbnail(saved)
        return True

    def _apply_move(self, source: PhotoRecord, result: Extracted) -> bool:
        """Re-point an existing record at its new path, keeping its id."""
        op = result.op
        meta = result.metadata
        moved = source.copy(
            path=op.path,
            size=op.size,
            mtime=op.mtime,
            media_type=meta.media_type,
            taken_at=meta.taken_at,
            coordinate=meta.coordinate,
            error=None,
            stale=False,
        )
        saved = self._commit(moved, source)
        if saved is None:
            return False
        logger.info("Photo %d moved: %s -> %s", saved.id, source.path, saved.path)
        return True

    def _apply_remove(self, record: PhotoRecord | None) -> bool:
        if record is None:
            return True
        was_indexed = self._index.remove(record.id)
        if was_indexed != self._expected_in_index(record):
            logger.error(
                "Invariant violation on removal of photo %d: index presence %s",
                record.id, was_indexed,
            )
        try:
            self._catalog.delete(record.id)
        except CatalogError:
            logger.warning("Catalog delete failed for photo %d; restoring index", record.id, exc_info=True)
            if was_indexed:
                self._index.insert(record.id, record.coordinate, record.facet)
            return False
        return True

    # -- shutdown --

    def close(self) -> None:
        self.stop_pump()
        self._pool.shutdown(wait=True, cancel_futures=True)
        if self._thumbnails is not None:
            self._thumbnails.shutdown(wait=False)
        self._catalog.close()
