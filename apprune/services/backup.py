# Backup artifacts for reversible removal.
#
# Layout:
#   <location>/<YYYYMMDDTHHMMSSZ>/<leaf>                  plain copy
#   <location>/<YYYYMMDDTHHMMSSZ>/<leaf>.tar.gz           compressed copy
#   <location>/<YYYYMMDDTHHMMSSZ>/<artifact>.manifest.json
#
# The manifest stores the integrity digest computed right after the copy was
# written.  Copies are digested with the same ContentHasher settings as the
# original, so a backup can be compared with the pre-removal digest and later
# re-verified before a restore.

from __future__ import annotations

import json
import os
import tarfile
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from result import Err, Ok, Result

from apprune.models.enums import ErrorCode, error_code_for
from apprune.models.inventory import Digest
from apprune.models.removal import BackupArtifact
from apprune.services.formatting import backup_stamp, parse_backup_stamp
from apprune.services.fs import DEFAULT_FS, FileSystem
from apprune.services.hasher import ContentHasher, HashError

logger = structlog.get_logger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_SUFFIX = ".manifest.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class BackupStore:
    """Writes artifacts for one removal batch under a single timestamp directory."""

    location: str
    compress: bool = False
    fs: FileSystem = DEFAULT_FS
    clock: Callable[[], datetime] = _utcnow
    _batch_dir: str | None = field(default=None, init=False)
    _reserved: set[str] = field(default_factory=set, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def batch_dir(self) -> str:
        """Create the batch directory on first use; suffix ``-N`` on a stamp collision."""
        with self._lock:
            if self._batch_dir is None:
                base = os.path.join(self.fs.absolute(self.fs.expanduser(self.location)), backup_stamp(self.clock()))
                candidate = base
                n = 1
                while self.fs.lexists(candidate):
                    candidate = f"{base}-{n}"
                    n += 1
                self.fs.makedirs(candidate)
                self._batch_dir = candidate
            return self._batch_dir

    def _reserve(self, leaf: str) -> str:
        directory = self.batch_dir()
        suffix = ARCHIVE_SUFFIX if self.compress else ""
        with self._lock:
            name = leaf
            n = 1
            while name in self._reserved or self.fs.lexists(os.path.join(directory, name + suffix)):
                name = f"{leaf}.{n}"
                n += 1
            self._reserved.add(name)
        return os.path.join(directory, name + suffix)

    def create(
        self,
        source: str,
        hasher: ContentHasher,
        size_bytes: int = 0,
    ) -> Result[BackupArtifact, HashError]:
        """Copy *source* into the batch, digest the copy and write its manifest."""
        leaf = os.path.basename(source.rstrip("/\\"))
        try:
            target = self._reserve(leaf)
            if self.compress:
                with tarfile.open(target, "w:gz") as tar:
                    tar.add(source, arcname=leaf, recursive=True)
            else:
                self.fs.copy_tree(source, target)
        except OSError as exc:
            logger.error("backup_copy_failed", source=source, error=str(exc))
            return Err(HashError(error_code_for(exc), source, f"Backup copy failed: {exc}"))

        digest_result = _digest_artifact(hasher, target, leaf, self.compress, os.path.dirname(source))
        if digest_result.is_err():
            return Err(digest_result.unwrap_err())

        artifact = BackupArtifact(
            location=target,
            original_path=source,
            digest=digest_result.unwrap(),
            size_bytes=size_bytes,
            created_at=self.clock(),
            compressed=self.compress,
        )
        try:
            self.fs.write_text(artifact.manifest_path, json.dumps(artifact.to_dict(), indent=2))
        except OSError as exc:
            return Err(HashError(error_code_for(exc), target, f"Cannot write manifest: {exc}"))
        logger.info("backup_created", source=source, location=target, digest=artifact.digest.value)
        return Ok(artifact)


def _digest_artifact(
    hasher: ContentHasher, location: str, leaf: str, compressed: bool, anchor: str
) -> Result[Digest, HashError]:
    # Relative link targets resolve against the original's directory.
    if compressed:
        return hasher.digest_archive(location, leaf, link_anchor=anchor)
    outcome = hasher.digest(location, link_anchor=anchor)
    if outcome.is_err():
        return Err(outcome.unwrap_err())
    return Ok(outcome.unwrap().digest)


def _artifact_leaf(artifact: BackupArtifact) -> str:
    return os.path.basename(artifact.original_path.rstrip("/\\"))


def verify_backup(artifact: BackupArtifact, hasher: ContentHasher) -> Result[Digest, HashError]:
    """Recompute the artifact digest and compare with the one in its manifest."""
    current = _digest_artifact(
        hasher,
        artifact.location,
        _artifact_leaf(artifact),
        artifact.compressed,
        os.path.dirname(artifact.original_path.rstrip("/\\")),
    )
    if current.is_err():
        return current
    digest = current.unwrap()
    if digest.value != artifact.digest.value:
        return Err(
            HashError(
                ErrorCode.BACKUP_VERIFICATION_MISMATCH,
                artifact.location,
                f"expected {artifact.digest.value}, found {digest.value}",
            )
        )
    return Ok(digest)


def restore_backup(
    artifact: BackupArtifact,
    hasher: ContentHasher,
    destination: str | None = None,
    fs: FileSystem = DEFAULT_FS,
) -> Result[str, HashError]:
    """Put a verified backup back in place.  Never overwrites an existing path."""
    target = destination or artifact.original_path
    if fs.lexists(target):
        return Err(HashError(ErrorCode.VALIDATION_REJECTED, target, "Restore target already exists"))
    verified = verify_backup(artifact, hasher)
    if verified.is_err():
        return Err(verified.unwrap_err())

    try:
        parent = os.path.dirname(target) or "."
        fs.makedirs(parent)
        if artifact.compressed:
            leaf = _artifact_leaf(artifact)
            with tempfile.TemporaryDirectory(dir=parent) as staging:
                with tarfile.open(artifact.location, "r:*") as tar:
                    if hasattr(tarfile, "data_filter"):
                        tar.extractall(staging, filter="data")
                    else:
                        tar.extractall(staging)  # noqa: S202
                fs.rename(os.path.join(staging, leaf), target)
        else:
            fs.copy_tree(artifact.location, target)
    except (OSError, tarfile.TarError) as exc:
        code = error_code_for(exc) if isinstance(exc, OSError) else ErrorCode.IO_ERROR
        return Err(HashError(code, target, f"Restore failed: {exc}"))

    logger.info("backup_restored", location=artifact.location, target=target)
    return Ok(target)


def list_backups(location: str, fs: FileSystem = DEFAULT_FS) -> list[BackupArtifact]:
    """Artifacts found under *location*, oldest batch first.  Unreadable manifests are skipped."""
    root = fs.absolute(fs.expanduser(location))
    if not fs.exists(root):
        return []
    artifacts: list[BackupArtifact] = []
    for batch in fs.scandir(root):
        if parse_backup_stamp(batch.name.split("-", 1)[0]) is None:
            continue
        try:
            names = list(fs.scandir(batch.path))
        except OSError:
            continue
        for entry in names:
            if not entry.name.endswith(MANIFEST_SUFFIX):
                continue
            try:
                artifacts.append(BackupArtifact.from_dict(json.loads(fs.read_text(entry.path))))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("backup_manifest_unreadable", path=entry.path, error=str(exc))
    return artifacts


def prune_backups(
    location: str,
    retain_days: int,
    now: datetime | None = None,
    fs: FileSystem = DEFAULT_FS,
) -> list[str]:
    """Maintenance pass: delete batch directories older than *retain_days*.

    Runs independently of any removal.  Returns the deleted directories.
    """
    root = fs.absolute(fs.expanduser(location))
    if not fs.exists(root):
        return []
    cutoff = (now or _utcnow()) - timedelta(days=retain_days)
    removed: list[str] = []
    for batch in fs.scandir(root):
        stamp = parse_backup_stamp(batch.name.split("-", 1)[0])
        if stamp is None or stamp >= cutoff:
            continue
        try:
            fs.remove_tree(batch.path)
        except OSError as exc:
            logger.warning("backup_prune_failed", path=batch.path, error=str(exc))
            continue
        removed.append(batch.path)
    logger.info("backups_pruned", location=root, removed=len(removed), retain_days=retain_days)
    return removed
