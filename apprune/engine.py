"""Entry points used by front-ends: scan, group, categorize, remove.

Each call is independent.  An Inventory produced by one scan is never
mutated; grouping and categorization only read it, and removal consumes
identifiers from it together with the grouping snapshot the caller chose
from.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime

from result import Err, Ok, Result

from apprune.config.loader import validate_backup_location, validate_config
from apprune.config.schema import AppConfig, Category
from apprune.models.events import EventSink
from apprune.models.groups import DuplicateGroup
from apprune.models.inventory import CancelCheck, Inventory, ProgressCallback, ScanError, ScanResult
from apprune.models.removal import RemovalRequest, RemovalResult
from apprune.scan import create_scanner
from apprune.services import grouping, rules
from apprune.services.cache import DigestCache
from apprune.services.fs import DEFAULT_FS, FileSystem
from apprune.services.removal import RemovalExecutor


@dataclass(slots=True, frozen=True)
class ScanProgress:
    path: str
    processed: int
    estimate: int


def run_scan(
    config: AppConfig,
    progress_callback: ProgressCallback | None = None,
    cancel_check: CancelCheck | None = None,
    on_event: EventSink | None = None,
    cache: DigestCache | None = None,
) -> ScanResult:
    checked = validate_config(config, check_backups=False)
    if checked.is_err():
        return Err(checked.unwrap_err())
    scanner = create_scanner(config, cache=cache)
    return scanner.scan(config, progress_callback, cancel_check, on_event)


def stream_scan(
    config: AppConfig,
    cancel_check: CancelCheck | None = None,
    on_event: EventSink | None = None,
    cache: DigestCache | None = None,
) -> Iterator[ScanProgress | ScanResult]:
    """Yield ScanProgress values while the scan runs, then the final result.

    The last item is always the ScanResult.  Closing the generator early
    cancels the scan.
    """
    updates: queue.Queue[ScanProgress | None] = queue.Queue()
    outcome: list[ScanResult] = []
    failure: list[Exception] = []
    stop = threading.Event()

    def _cancelled() -> bool:
        return stop.is_set() or (cancel_check is not None and cancel_check())

    def _progress(path: str, processed: int, estimate: int) -> None:
        updates.put(ScanProgress(path, processed, estimate))

    def _run() -> None:
        try:
            outcome.append(run_scan(config, _progress, _cancelled, on_event, cache))
        except Exception as exc:  # noqa: BLE001
            failure.append(exc)
        finally:
            updates.put(None)

    worker = threading.Thread(target=_run, name="apprune-scan", daemon=True)
    worker.start()
    try:
        while (item := updates.get()) is not None:
            yield item
    finally:
        stop.set()
        worker.join()
    if failure:
        raise failure[0]
    yield outcome[0]


def primary_roots_for(config: AppConfig) -> list[str]:
    return [*config.primary_roots, *(r.path for r in config.scan_roots if r.primary)]


def group_duplicates(inventory: Inventory, config: AppConfig) -> list[DuplicateGroup]:
    return grouping.group_duplicates(inventory.entries, primary_roots_for(config))


def categorize(
    inventory: Inventory,
    categories: Sequence[Category],
    on_event: EventSink | None = None,
) -> dict[str, str]:
    return rules.categorize(inventory.entries, categories, on_event)


def plan_and_execute_removal(
    request: RemovalRequest,
    inventory: Inventory,
    config: AppConfig,
    fs: FileSystem = DEFAULT_FS,
    on_event: EventSink | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Result[Iterator[RemovalResult], ScanError]:
    """Check the backup location, then return the lazy per-item result stream.

    An unwritable backup location is fatal and no item is touched.
    """
    if request.backup_before_removal:
        location = validate_backup_location(config.backup_location, fs)
        if location.is_err():
            return Err(location.unwrap_err())
    executor = RemovalExecutor(config, fs=fs, clock=clock, on_event=on_event)
    return Ok(executor.execute(request, inventory))
