from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Callable

from result import Result

from apprune.models.enums import DigestQuality, ErrorCode, HashAlgorithm, NodeKind

# (current_path, processed, estimated_total)
ProgressCallback = Callable[[str, int, int], None]
CancelCheck = Callable[[], bool]


@dataclass(slots=True, frozen=True)
class Digest:
    algorithm: HashAlgorithm
    value: str
    quality: DigestQuality = DigestQuality.COMPLETE
    # Relative paths of members skipped for exceeding maxFileSize.
    oversized: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.quality is DigestQuality.COMPLETE

    def matches(self, other: Digest) -> bool:
        """Content identity test.  A partial digest never matches anything."""
        return (
            self.is_complete
            and other.is_complete
            and self.algorithm is other.algorithm
            and self.value == other.value
        )

    def __str__(self) -> str:
        suffix = "" if self.is_complete else " (partial)"
        return f"{self.algorithm.value}:{self.value}{suffix}"


def make_entry_id(scan_id: str, path: str) -> str:
    """Synthetic identifier: derived from the path, salted with the scan generation."""
    raw = f"{scan_id}\0{path}".encode("utf-8", "surrogateescape")
    return hashlib.sha1(raw).hexdigest()[:16]


@dataclass(slots=True, frozen=True)
class InventoryEntry:
    id: str
    path: str
    name: str
    kind: NodeKind
    size_bytes: int
    modified_ts: float
    digest: Digest
    root: str
    root_index: int = 0
    version: str | None = None

    @property
    def is_symlink(self) -> bool:
        return self.kind is NodeKind.SYMLINK

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.root_index, self.path)


@dataclass(slots=True, frozen=True)
class EntryError:
    """A bundle that was discovered but could not be hashed."""

    path: str
    code: ErrorCode
    message: str
    root: str = ""


@dataclass(slots=True)
class ScanStats:
    roots: int = 0
    directories: int = 0
    bundles: int = 0
    hashed: int = 0
    partial: int = 0
    errors: int = 0
    cache_hits: int = 0
    total_bytes: int = 0


@dataclass(slots=True, frozen=True)
class Inventory:
    scan_id: str
    entries: tuple[InventoryEntry, ...]
    errors: tuple[EntryError, ...] = ()
    stats: ScanStats = field(default_factory=ScanStats)
    _by_id: dict[str, InventoryEntry] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {e.id: e for e in self.entries})

    def get(self, entry_id: str) -> InventoryEntry | None:
        return self._by_id.get(entry_id)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._by_id

    def __len__(self) -> int:
        return len(self.entries)

    def sorted(self) -> Inventory:
        """Canonical ordering: configuration root order, then path."""
        return Inventory(
            scan_id=self.scan_id,
            entries=tuple(sorted(self.entries, key=lambda e: e.sort_key)),
            errors=tuple(sorted(self.errors, key=lambda e: e.path)),
            stats=self.stats,
        )


@dataclass(slots=True, frozen=True)
class ScanError:
    code: ErrorCode
    path: str
    message: str


ScanResult = Result[Inventory, ScanError]
