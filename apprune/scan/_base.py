# Threaded bundle scanner: work queue and hashing worker pool.
#
# Architecture:
#   Phase 1 (single thread): resolve every configured root, then run the
#   deterministic discovery walk per root in configuration order.  The number
#   of discovered bundles becomes the progress estimate.
#   Phase 2 (worker pool): each discovered bundle becomes one _Task.  Workers
#   dequeue a task, check the scan-wide cancel flag, hash the bundle with the
#   root's ContentHasher and build an InventoryEntry (or an EntryError).
#
# Thread safety model:
#   A bundle is hashed by exactly one worker (guaranteed by the work queue),
#   and file reads for that bundle stay local to that worker.  The only shared
#   mutable state is the append-only result list plus ScanStats, both guarded
#   by results_lock (the single synchronization point).  Workers finish in any
#   order; the inventory is re-sorted by (root order, path) before returning,
#   so grouping and categorization always see the same input.
#
# Lifecycle (scan method):
#   1. Validate roots → discover candidates → enqueue them.
#   2. Workers loop: dequeue, skip if cancelled, hash, append result.
#   3. When _outstanding hits 0, all bundles are done → workers exit.
#   4. A cancelled scan returns Err(CANCELLED) and never a partial Inventory.

from __future__ import annotations

import collections
import collections.abc
import os
import threading
import uuid
from dataclasses import dataclass

import structlog
from result import Err, Ok

from apprune.config.schema import AppConfig, ScanRoot
from apprune.models.enums import ErrorCode, EventCategory, EventLevel, NodeKind
from apprune.models.events import EventSink, emit
from apprune.models.inventory import (
    CancelCheck,
    EntryError,
    Inventory,
    InventoryEntry,
    ProgressCallback,
    ScanError,
    ScanResult,
    ScanStats,
    make_entry_id,
)
from apprune.scan.discovery import BundleConvention, Candidate, convention_for, discover
from apprune.services.cache import DigestCache
from apprune.services.fs import DEFAULT_FS, FileSystem
from apprune.services.hasher import ContentHasher
from apprune.services.path_filter import PathFilter, normalize
from apprune.services.version import discover_version

logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class _Task:
    """Work queue item: one discovered bundle."""

    candidate: Candidate


class _WorkQueue:
    """Unbounded bundle queue guarded by a single lock.

    Unlike queue.Queue there is no not_full Condition and no all_tasks_done
    Condition: discovery enqueues every bundle in one put_many batch before the
    workers start, and completion is signalled through a plain Event.
    """

    __slots__ = ("_deque", "_lock", "_not_empty", "_outstanding", "_done", "_shutdown")

    def __init__(self) -> None:
        self._deque: collections.deque[_Task] = collections.deque()
        self._lock = threading.Lock()
        # Condition wraps _lock: `with self._not_empty` also acquires _lock.
        self._not_empty = threading.Condition(self._lock)
        # _outstanding counts bundles enqueued but not yet marked done.  It reaches
        # 0 only after the last worker calls task_done(), which sets _done.
        self._outstanding = 0
        # Starts set so join() returns at once for a scan with no bundles.
        self._done = threading.Event()
        self._done.set()
        self._shutdown = False

    def put_many(self, tasks: collections.abc.Iterable[_Task]) -> None:
        with self._lock:
            # tasks is a generator, so the deque length before and after gives
            # the number added.
            prev = len(self._deque)
            self._deque.extend(tasks)
            added = len(self._deque) - prev
            self._outstanding += added
            if added:
                self._done.clear()
                self._not_empty.notify(added)

    def get(self) -> _Task | None:
        """Block until a task is available.  Returns None on shutdown (exit sentinel)."""
        with self._not_empty:
            while not self._deque:
                if self._shutdown:
                    return None
                self._not_empty.wait()
            return self._deque.popleft()

    def task_done(self) -> None:
        with self._lock:
            self._outstanding -= 1
            if self._outstanding == 0:
                self._done.set()

    def join(self) -> None:
        self._done.wait()

    def shutdown(self) -> None:
        # Wakes every parked worker; get() then returns the None sentinel.
        with self._lock:
            self._shutdown = True
            self._not_empty.notify_all()


def resolve_root(path: str, fs: FileSystem) -> str | ScanError:
    """Validate and resolve a scan root path.

    Returns the resolved absolute path, or a ``ScanError`` on failure.
    """
    expanded = fs.expanduser(path)
    if not fs.exists(expanded):
        return ScanError(code=ErrorCode.INVALID_ROOT, path=expanded, message="Path does not exist")

    resolved = fs.absolute(expanded)
    try:
        root_stat = fs.stat(resolved)
    except OSError as exc:
        return ScanError(code=ErrorCode.INVALID_ROOT, path=resolved, message=f"Cannot stat root: {exc}")
    if not root_stat.is_dir:
        return ScanError(code=ErrorCode.NOT_DIRECTORY, path=resolved, message="Path is not a directory")
    return resolved


class _Claims:
    """Bundle paths already taken by an earlier root.

    Overlapping or repeated roots can discover one bundle twice, or a bundle
    together with its own parent.  The first root in configuration order keeps it.
    """

    __slots__ = ("_paths", "_parents")

    def __init__(self) -> None:
        self._paths: set[str] = set()
        self._parents: set[str] = set()

    def claim(self, path: str) -> bool:
        key = normalize(path)
        lineage = list(_ancestors(key))
        if key in self._paths or key in self._parents or any(p in self._paths for p in lineage):
            return False
        self._paths.add(key)
        self._parents.update(lineage)
        return True


def _ancestors(path: str) -> collections.abc.Iterator[str]:
    parent = os.path.dirname(path)
    while parent != path:
        yield parent
        path, parent = parent, os.path.dirname(parent)


class BundleScanner:
    """Walks configured roots and hashes each discovered bundle on a bounded pool."""

    def __init__(
        self,
        workers: int = 4,
        fs: FileSystem = DEFAULT_FS,
        convention: BundleConvention | None = None,
        cache: DigestCache | None = None,
    ) -> None:
        self._workers = max(1, workers)
        self._fs = fs
        self._convention = convention
        self._cache = cache

    def _hasher_for(self, config: AppConfig, root: ScanRoot, path_filter: PathFilter) -> ContentHasher:
        return ContentHasher(
            config.hash_algorithm,
            config.max_file_size,
            follow_symlinks=config.follow_for(root),
            member_filter=path_filter.is_excluded if config.exclude_patterns else None,
            cache=self._cache,
            fs=self._fs,
        )

    def scan(
        self,
        config: AppConfig,
        progress_callback: ProgressCallback | None = None,
        cancel_check: CancelCheck | None = None,
        on_event: EventSink | None = None,
    ) -> ScanResult:
        scan_id = uuid.uuid4().hex
        convention = self._convention or convention_for(config)
        stats = ScanStats(roots=len(config.scan_roots))
        cancelled = threading.Event()

        def _is_cancelled() -> bool:
            # Once set, later checks are a fast Event.is_set() without calling
            # the caller's cancel_check again.
            if cancelled.is_set():
                return True
            if cancel_check is not None and cancel_check():
                cancelled.set()
                return True
            return False

        resolved_roots: list[str] = []
        for root in config.scan_roots:
            resolved = resolve_root(root.path, self._fs)
            if isinstance(resolved, ScanError):
                logger.error("scan_root_invalid", path=resolved.path, reason=resolved.message)
                return Err(resolved)
            resolved_roots.append(resolved)

        logger.info("scan_started", scan_id=scan_id, roots=resolved_roots, workers=self._workers)
        emit(on_event, EventLevel.INFO, EventCategory.SCAN, "Scan started", roots=resolved_roots)

        candidates: list[Candidate] = []
        errors: list[EntryError] = []
        hashers: dict[int, ContentHasher] = {}
        claims = _Claims()
        for index, (root, resolved) in enumerate(zip(config.scan_roots, resolved_roots)):
            path_filter = PathFilter.for_root(config, root)
            hashers[index] = self._hasher_for(config, root, path_filter)
            found = discover(root, resolved, index, path_filter, convention, self._fs, _is_cancelled)
            if found.cancelled:
                break
            for cand in found.candidates:
                if claims.claim(cand.path):
                    candidates.append(cand)
                else:
                    logger.info("bundle_overlaps_earlier_root", path=cand.path, root=resolved)
            errors.extend(found.errors)
            stats.directories += found.directories
            emit(
                on_event,
                EventLevel.INFO,
                EventCategory.SCAN,
                f"Started scanning directory {resolved}",
                bundles=len(found.candidates),
            )

        estimate = len(candidates)
        stats.bundles = estimate
        entries: list[InventoryEntry] = []
        results_lock = threading.Lock()
        processed = 0

        def run_worker() -> None:
            nonlocal processed
            while True:
                task = q.get()
                if task is None:
                    break
                try:
                    if _is_cancelled():
                        continue
                    cand = task.candidate
                    outcome = hashers[cand.root_index].digest(cand.path, _is_cancelled)
                    if outcome.is_err():
                        err = outcome.unwrap_err()
                        if err.code is ErrorCode.CANCELLED:
                            continue
                        with results_lock:
                            errors.append(EntryError(cand.path, err.code, err.message, cand.root))
                            stats.errors += 1
                        logger.warning("bundle_hash_failed", path=cand.path, code=err.code.value, error=err.message)
                        emit(
                            on_event,
                            EventLevel.WARNING,
                            EventCategory.SCAN,
                            f"Unable to access application: {cand.path}",
                            code=err.code.value,
                            error=err.message,
                        )
                    else:
                        bundle = outcome.unwrap()
                        entry = InventoryEntry(
                            id=make_entry_id(scan_id, cand.path),
                            path=cand.path,
                            name=cand.name,
                            kind=bundle.kind,
                            size_bytes=bundle.size_bytes,
                            modified_ts=bundle.modified_ts,
                            digest=bundle.digest,
                            root=cand.root,
                            root_index=cand.root_index,
                            version=discover_version(cand.path, bundle.kind is NodeKind.DIRECTORY, self._fs),
                        )
                        with results_lock:
                            entries.append(entry)
                            stats.hashed += 1
                            stats.total_bytes += entry.size_bytes
                            if not entry.digest.is_complete:
                                stats.partial += 1
                            if bundle.from_cache:
                                stats.cache_hits += 1
                        if not entry.digest.is_complete:
                            logger.info("bundle_digest_partial", path=cand.path, oversized=entry.digest.oversized)
                    with results_lock:
                        processed += 1
                        if progress_callback is not None:
                            progress_callback(cand.path, processed, estimate)
                except Exception:  # noqa: BLE001
                    # A bug or an unexpected error in one bundle must not kill
                    # the worker; record it against the bundle and move on.
                    logger.exception("bundle_worker_error", path=task.candidate.path)
                    with results_lock:
                        errors.append(
                            EntryError(task.candidate.path, ErrorCode.IO_ERROR, "unexpected error", task.candidate.root)
                        )
                        stats.errors += 1
                finally:
                    q.task_done()

        q = _WorkQueue()
        if not cancelled.is_set():
            q.put_many(_Task(c) for c in candidates)
        threads = [threading.Thread(target=run_worker, daemon=True) for _ in range(self._workers)]
        for thread in threads:
            thread.start()
        # join() waits until every enqueued task is done; only then shutdown()
        # unblocks workers parked in get().
        q.join()
        q.shutdown()
        for thread in threads:
            thread.join(timeout=0.3)

        if cancelled.is_set():
            logger.info("scan_cancelled", scan_id=scan_id, processed=processed, estimate=estimate)
            emit(on_event, EventLevel.WARNING, EventCategory.SCAN, "Scan cancelled", processed=processed)
            return Err(ScanError(code=ErrorCode.CANCELLED, path=",".join(resolved_roots), message="Scan cancelled"))

        inventory = Inventory(scan_id=scan_id, entries=tuple(entries), errors=tuple(errors), stats=stats).sorted()
        logger.info(
            "scan_completed",
            scan_id=scan_id,
            entries=len(inventory.entries),
            errors=len(inventory.errors),
            partial=stats.partial,
            cache_hits=stats.cache_hits,
        )
        emit(
            on_event,
            EventLevel.SUCCESS,
            EventCategory.SCAN,
            f"Scan completed: {len(inventory.entries)} applications",
            errors=len(inventory.errors),
            partial=stats.partial,
        )
        return Ok(inventory)
