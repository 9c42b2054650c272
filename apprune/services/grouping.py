from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

from apprune.models.groups import DuplicateGroup, DuplicateReport
from apprune.models.inventory import InventoryEntry
from apprune.services.path_filter import is_under, normalize

logger = structlog.get_logger(__name__)


def _canonical_key(entry: InventoryEntry, primary: Sequence[str]) -> tuple[int, float, str]:
    """Sort key: primary-root entries first, then newest, then smallest path."""
    target = normalize(entry.path)
    in_primary = any(is_under(target, base) for base in primary)
    return (0 if in_primary else 1, -entry.modified_ts, entry.path)


def group_duplicates(
    entries: Iterable[InventoryEntry],
    primary_roots: Iterable[str] = (),
) -> list[DuplicateGroup]:
    """Partition entries by complete digest and pick a canonical member per group.

    Partial digests are never grouped, not even with byte-identical partial
    entries.  Singleton groups are dropped.  Output is sorted by digest value
    so repeated calls on the same inventory produce identical results.
    """
    primary = tuple(sorted({normalize(p) for p in primary_roots}))
    buckets: dict[tuple[str, str], list[InventoryEntry]] = {}
    skipped_partial = 0
    for entry in entries:
        if not entry.digest.is_complete:
            skipped_partial += 1
            continue
        key = (entry.digest.algorithm.value, entry.digest.value)
        buckets.setdefault(key, []).append(entry)

    groups: list[DuplicateGroup] = []
    for key in sorted(buckets):
        members = buckets[key]
        if len(members) < 2:
            continue
        ordered = tuple(sorted(members, key=lambda e: _canonical_key(e, primary)))
        groups.append(DuplicateGroup(digest=ordered[0].digest, members=ordered))

    logger.debug("duplicates_grouped", groups=len(groups), skipped_partial=skipped_partial)
    return groups


def build_report(groups: Iterable[DuplicateGroup]) -> DuplicateReport:
    return DuplicateReport(groups=tuple(groups))
