# Removal planning and execution.
#
# Per requested identifier the state machine is:
#
#   Validated ──► BackedUp (only when backups are on) ──► Removed
#       │                 │                                  │
#       └► Rejected       └► Failed                          └► Failed
#
# Validation (RemovalPlanner) is pure: it checks the request against the
# latest inventory and the grouping snapshot the caller selected from.
# Execution (RemovalExecutor) handles each validated item independently on a
# small bounded pool.  An item's backup must be written and verified before
# its original is touched; a verification mismatch leaves the original in
# place.  Identifiers map one-to-one onto paths, so no two workers ever target
# the same path.
# An item is only removed while its group's canonical copy still exists with
# the scanned digest.

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from apprune.config.schema import AppConfig, ScanRoot
from apprune.models.enums import ErrorCode, EventCategory, EventLevel, RejectReason, error_code_for
from apprune.models.events import EventSink, emit
from apprune.models.groups import DuplicateGroup
from apprune.models.inventory import Inventory, InventoryEntry
from apprune.models.removal import RemovalRequest, RemovalResult
from apprune.services.backup import BackupStore
from apprune.services.fs import DEFAULT_FS, FileSystem
from apprune.services.hasher import ContentHasher
from apprune.services.path_filter import PathFilter, removal_protected_roots

logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class RemovalPlan:
    accepted: tuple[InventoryEntry, ...]
    rejected: tuple[RemovalResult, ...]
    # accepted entry id -> the group member that must survive its removal
    keepers: dict[str, InventoryEntry] = field(default_factory=dict)


class RemovalPlanner:
    def __init__(self, inventory: Inventory, config: AppConfig) -> None:
        self._inventory = inventory
        self._config = config
        self._protected = PathFilter(max_depth=1, protected_roots=tuple(removal_protected_roots(config)))

    def _group_of(self, entry_id: str, groups: Iterable[DuplicateGroup]) -> DuplicateGroup | None:
        for group in groups:
            if entry_id in group.member_ids:
                return group
        return None

    def plan(self, request: RemovalRequest) -> RemovalPlan:
        accepted: list[InventoryEntry] = []
        rejected: list[RemovalResult] = []
        keepers: dict[str, InventoryEntry] = {}
        for entry_id in sorted(request.entry_ids):
            entry = self._inventory.get(entry_id)
            if entry is None:
                rejected.append(RemovalResult.rejected(entry_id, RejectReason.NOT_FOUND))
                continue
            group = self._group_of(entry_id, request.groups)
            if group is None:
                # No surviving copy elsewhere; removing it would lose the app.
                rejected.append(RemovalResult.rejected(entry_id, RejectReason.NOT_DUPLICATE, entry.path))
                continue
            if group.canonical_id == entry_id:
                rejected.append(RemovalResult.rejected(entry_id, RejectReason.IS_CANONICAL, entry.path))
                continue
            if self._protected.is_removal_protected(entry.path):
                rejected.append(RemovalResult.rejected(entry_id, RejectReason.EXCLUDED_BY_POLICY, entry.path))
                continue
            accepted.append(entry)
            keepers[entry_id] = group.canonical
        return RemovalPlan(accepted=tuple(accepted), rejected=tuple(rejected), keepers=keepers)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RemovalExecutor:
    def __init__(
        self,
        config: AppConfig,
        fs: FileSystem = DEFAULT_FS,
        clock: Callable[[], datetime] | None = None,
        on_event: EventSink | None = None,
    ) -> None:
        self._config = config
        self._fs = fs
        self._clock = clock or _utcnow
        self._on_event = on_event

    def _hasher_for(self, entry: InventoryEntry) -> ContentHasher:
        roots = self._config.scan_roots
        root = roots[entry.root_index] if 0 <= entry.root_index < len(roots) else ScanRoot(path=entry.root)
        path_filter = PathFilter.for_root(self._config, root)
        return ContentHasher(
            entry.digest.algorithm,
            self._config.max_file_size,
            follow_symlinks=self._config.follow_for(root),
            member_filter=path_filter.is_excluded if self._config.exclude_patterns else None,
            fs=self._fs,
        )

    def execute(self, request: RemovalRequest, inventory: Inventory) -> Iterator[RemovalResult]:
        """Validate, then process accepted items; yields one result per identifier."""
        plan = RemovalPlanner(inventory, self._config).plan(request)
        for result in plan.rejected:
            logger.info("removal_item_rejected", entry_id=result.entry_id, reason=result.message)
            emit(
                self._on_event,
                EventLevel.WARNING,
                EventCategory.REMOVAL,
                f"Removal rejected: {result.path or result.entry_id}",
                reason=result.message,
            )
            yield result

        if not plan.accepted:
            return

        store = None
        if request.backup_before_removal:
            store = BackupStore(
                location=self._config.backup_location,
                compress=self._config.compress_backups,
                fs=self._fs,
                clock=self._clock,
            )

        logger.info(
            "removal_started",
            accepted=len(plan.accepted),
            rejected=len(plan.rejected),
            backup=request.backup_before_removal,
        )
        workers = max(1, min(self._config.removal_workers, len(plan.accepted)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._process, entry, plan.keepers[entry.id], store): entry for entry in plan.accepted
            }
            for future in as_completed(futures):
                yield future.result()

    def _process(self, entry: InventoryEntry, keeper: InventoryEntry, store: BackupStore | None) -> RemovalResult:
        try:
            return self._process_item(entry, keeper, store)
        except Exception as exc:  # noqa: BLE001
            # One item's unexpected failure must not take the batch down.
            logger.exception("removal_item_crashed", path=entry.path)
            return RemovalResult.failed(entry.id, ErrorCode.IO_ERROR, entry.path, str(exc))

    def _process_item(
        self, entry: InventoryEntry, keeper: InventoryEntry, store: BackupStore | None
    ) -> RemovalResult:
        if not self._fs.lexists(entry.path):
            return RemovalResult.rejected(entry.id, RejectReason.NOT_FOUND, entry.path, "path vanished since scan")

        hasher = self._hasher_for(entry)
        current = hasher.digest(entry.path)
        if current.is_err():
            err = current.unwrap_err()
            return self._fail(entry, err.code, err.message)
        pre_digest = current.unwrap().digest
        if not pre_digest.matches(entry.digest):
            return RemovalResult.rejected(
                entry.id, RejectReason.MODIFIED_SINCE_SCAN, entry.path, "content changed since scan"
            )

        kept = self._verify_keeper(keeper, entry)
        if kept is not None:
            return kept

        artifact = None
        if store is not None:
            created = store.create(entry.path, hasher, entry.size_bytes)
            if created.is_err():
                err = created.unwrap_err()
                return self._fail(entry, err.code, err.message)
            artifact = created.unwrap()
            if not artifact.digest.matches(pre_digest):
                logger.error(
                    "backup_verification_mismatch",
                    path=entry.path,
                    expected=pre_digest.value,
                    actual=artifact.digest.value,
                )
                return self._fail(
                    entry,
                    ErrorCode.BACKUP_VERIFICATION_MISMATCH,
                    "backup digest does not match original; original left in place",
                    artifact,
                )
            logger.info("backup_verified", path=entry.path, location=artifact.location)
            emit(
                self._on_event,
                EventLevel.SUCCESS,
                EventCategory.BACKUP,
                f"Backed up {entry.path}",
                location=artifact.location,
            )

        try:
            self._fs.remove_tree(entry.path)
        except OSError as exc:
            return self._fail(entry, error_code_for(exc), str(exc), artifact)

        logger.info("removal_item_removed", path=entry.path, bytes_freed=entry.size_bytes)
        emit(
            self._on_event,
            EventLevel.SUCCESS,
            EventCategory.REMOVAL,
            "Successfully removed duplicate application",
            path=entry.path,
            bytes_freed=entry.size_bytes,
        )
        return RemovalResult.removed(entry.id, entry.path, entry.size_bytes, artifact)

    def _verify_keeper(self, keeper: InventoryEntry, entry: InventoryEntry) -> RemovalResult | None:
        """Reject *entry* unless its group's canonical copy still holds the same content."""
        if self._fs.lexists(keeper.path):
            current = self._hasher_for(keeper).digest(keeper.path)
            if current.is_ok() and current.unwrap().digest.matches(entry.digest):
                return None
        logger.warning("removal_keeper_missing", path=entry.path, canonical=keeper.path)
        return RemovalResult.rejected(
            entry.id,
            RejectReason.CANONICAL_MISSING,
            entry.path,
            f"kept copy {keeper.path} is missing or changed since scan",
        )

    def _fail(self, entry: InventoryEntry, code: ErrorCode, message: str, artifact=None) -> RemovalResult:
        logger.warning("removal_item_failed", path=entry.path, code=code.value, error=message)
        emit(
            self._on_event,
            EventLevel.ERROR,
            EventCategory.REMOVAL,
            f"Failed to remove {entry.path}",
            code=code.value,
            error=message,
        )
        return RemovalResult.failed(entry.id, code, entry.path, message, artifact)
