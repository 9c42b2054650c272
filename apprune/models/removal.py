from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apprune.models.enums import DigestQuality, ErrorCode, HashAlgorithm, RejectReason, RemovalStatus
from apprune.models.groups import DuplicateGroup
from apprune.models.inventory import Digest


@dataclass(slots=True, frozen=True)
class RemovalRequest:
    entry_ids: frozenset[str]
    backup_before_removal: bool
    # Grouping snapshot the selection was made against.
    groups: tuple[DuplicateGroup, ...] = ()

    @classmethod
    def of(cls, entry_ids: Any, groups: Any = (), *, backup: bool = True) -> RemovalRequest:
        return cls(entry_ids=frozenset(entry_ids), backup_before_removal=backup, groups=tuple(groups))


@dataclass(slots=True, frozen=True)
class BackupArtifact:
    location: str
    original_path: str
    digest: Digest
    size_bytes: int
    created_at: datetime
    compressed: bool = False

    @property
    def manifest_path(self) -> str:
        return f"{self.location}.manifest.json"

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": self.location,
            "originalPath": self.original_path,
            "algorithm": self.digest.algorithm.value,
            "digest": self.digest.value,
            "quality": self.digest.quality.value,
            "sizeBytes": self.size_bytes,
            "createdAt": self.created_at.isoformat(),
            "compressed": self.compressed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BackupArtifact:
        return cls(
            location=str(payload["location"]),
            original_path=str(payload["originalPath"]),
            digest=Digest(
                algorithm=HashAlgorithm.from_str(payload["algorithm"]),
                value=str(payload["digest"]),
                quality=DigestQuality(payload.get("quality", DigestQuality.COMPLETE.value)),
            ),
            size_bytes=int(payload.get("sizeBytes", 0)),
            created_at=datetime.fromisoformat(str(payload["createdAt"])),
            compressed=bool(payload.get("compressed", False)),
        )


@dataclass(slots=True, frozen=True)
class RemovalResult:
    entry_id: str
    status: RemovalStatus
    path: str = ""
    bytes_freed: int = 0
    reason: RejectReason | None = None
    error: ErrorCode | None = None
    message: str = ""
    backup: BackupArtifact | None = None

    @property
    def ok(self) -> bool:
        return self.status is RemovalStatus.REMOVED

    @classmethod
    def removed(cls, entry_id: str, path: str, bytes_freed: int, backup: BackupArtifact | None) -> RemovalResult:
        return cls(entry_id, RemovalStatus.REMOVED, path=path, bytes_freed=bytes_freed, backup=backup)

    @classmethod
    def rejected(cls, entry_id: str, reason: RejectReason, path: str = "", message: str = "") -> RemovalResult:
        return cls(
            entry_id,
            RemovalStatus.REJECTED,
            path=path,
            reason=reason,
            error=ErrorCode.VALIDATION_REJECTED,
            message=message or reason.value,
        )

    @classmethod
    def failed(
        cls,
        entry_id: str,
        error: ErrorCode,
        path: str,
        message: str,
        backup: BackupArtifact | None = None,
    ) -> RemovalResult:
        return cls(entry_id, RemovalStatus.FAILED, path=path, error=error, message=message, backup=backup)


@dataclass(slots=True)
class RemovalSummary:
    results: list[RemovalResult] = field(default_factory=list)

    @property
    def removed(self) -> list[RemovalResult]:
        return [r for r in self.results if r.status is RemovalStatus.REMOVED]

    @property
    def rejected(self) -> list[RemovalResult]:
        return [r for r in self.results if r.status is RemovalStatus.REJECTED]

    @property
    def failed(self) -> list[RemovalResult]:
        return [r for r in self.results if r.status is RemovalStatus.FAILED]

    @property
    def bytes_freed(self) -> int:
        return sum(r.bytes_freed for r in self.results)
