# Content-identity digests for application bundles.
#
# Folding scheme (two independent implementations must agree bit-for-bit):
#
#   single regular file   H(file bytes)
#   unfollowed symlink    H("symlink:" + resolved target), where a relative
#                         target is joined to the link's directory and
#                         normalized, so links to different files never match
#   directory bundle      H(concat(records)), records sorted by the UTF-8
#                         (surrogateescape) bytes of their relative path.
#
#   record kinds, with rel using "/" separators and no leading "./":
#     regular file        rel + "\0" + hex(H(file bytes)) + "\n"
#     unfollowed symlink  rel + "\0" + "symlink:" + target + "\n"
#     oversized file      rel + "\0" + "oversized:" + str(size) + "\n"
#
#   Directories contribute no record of their own, so empty directories and
#   timestamps/xattrs never influence the digest.  Any oversized record marks
#   the digest PARTIAL.
#
# Exclude patterns prune members by bundle-relative path and leaf name, so a
# bundle hashes the same wherever it lives and under whatever name.
#
# A ContentHasher holds only immutable settings (plus an optional thread-safe
# cache); each digest() call keeps its own walk and hash state, so one
# instance serves every scan worker.

from __future__ import annotations

import hashlib
import os
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from result import Err, Ok, Result

from apprune.models.enums import DigestQuality, ErrorCode, HashAlgorithm, NodeKind, error_code_for
from apprune.models.inventory import CancelCheck, Digest
from apprune.services.fs import DEFAULT_FS, FileSystem

if TYPE_CHECKING:
    from apprune.services.cache import DigestCache

CHUNK_SIZE = 1024 * 1024

MemberFilter = Callable[[str, str], bool]


@dataclass(slots=True, frozen=True)
class HashError:
    code: ErrorCode
    path: str
    message: str


@dataclass(slots=True, frozen=True)
class BundleDigest:
    digest: Digest
    kind: NodeKind
    size_bytes: int
    modified_ts: float
    file_count: int
    from_cache: bool = False


@dataclass(slots=True, frozen=True)
class _Member:
    rel: str
    path: str
    size: int
    mtime_ns: int
    link_target: str | None = None


class HashCancelled(Exception):
    pass


def _sort_key(rel: str) -> bytes:
    return rel.encode("utf-8", "surrogateescape")


def _fold(algorithm: HashAlgorithm, records: list[tuple[str, bytes]]) -> str:
    h = hashlib.new(algorithm.value, usedforsecurity=False)
    for _, record in sorted(records, key=lambda r: _sort_key(r[0])):
        h.update(record)
    return h.hexdigest()


def _record(rel: str, payload: str) -> tuple[str, bytes]:
    return rel, f"{rel}\0{payload}\n".encode("utf-8", "surrogateescape")


def _symlink_digest(algorithm: HashAlgorithm, target: str, anchor: str) -> str:
    resolved = target if os.path.isabs(target) else os.path.normpath(os.path.join(anchor, target))
    h = hashlib.new(algorithm.value, usedforsecurity=False)
    h.update(f"symlink:{resolved}".encode("utf-8", "surrogateescape"))
    return h.hexdigest()


class ContentHasher:
    def __init__(
        self,
        algorithm: HashAlgorithm = HashAlgorithm.SHA256,
        max_file_size: int = 0,
        *,
        follow_symlinks: bool = False,
        member_filter: MemberFilter | None = None,
        chunk_size: int = CHUNK_SIZE,
        cache: DigestCache | None = None,
        fs: FileSystem = DEFAULT_FS,
    ) -> None:
        self.algorithm = algorithm
        # 0 disables the cap.
        self.max_file_size = max_file_size
        self.follow_symlinks = follow_symlinks
        self._member_filter = member_filter
        self._chunk_size = max(4096, chunk_size)
        self._cache = cache
        self._fs = fs

    def _oversized(self, size: int) -> bool:
        return self.max_file_size > 0 and size > self.max_file_size

    def _hash_stream(self, stream: BinaryIO, cancel_check: CancelCheck | None) -> str:
        h = hashlib.new(self.algorithm.value, usedforsecurity=False)
        while chunk := stream.read(self._chunk_size):
            if cancel_check is not None and cancel_check():
                raise HashCancelled
            h.update(chunk)
        return h.hexdigest()

    def _hash_file(self, path: str, cancel_check: CancelCheck | None) -> str:
        with self._fs.open_read(path) as stream:
            return self._hash_stream(stream, cancel_check)

    def digest(
        self,
        path: str,
        cancel_check: CancelCheck | None = None,
        *,
        link_anchor: str | None = None,
    ) -> Result[BundleDigest, HashError]:
        """Digest a bundle (directory tree, regular file or symlink).

        *link_anchor* is the directory a relative symlink target is resolved
        against; it defaults to the link's own directory.  Backups pass the
        original's directory so a copied link digests like the original.
        """
        try:
            return Ok(self._digest(path, cancel_check, link_anchor))
        except HashCancelled:
            return Err(HashError(ErrorCode.CANCELLED, path, "Hashing cancelled"))
        except OSError as exc:
            return Err(HashError(error_code_for(exc), path, str(exc)))

    def _digest(self, path: str, cancel_check: CancelCheck | None, link_anchor: str | None) -> BundleDigest:
        st = self._fs.lstat(path)
        if st.is_symlink and not self.follow_symlinks:
            target = self._fs.readlink(path)
            anchor = link_anchor or os.path.dirname(self._fs.absolute(path))
            value = _symlink_digest(self.algorithm, target, anchor)
            return BundleDigest(Digest(self.algorithm, value), NodeKind.SYMLINK, 0, st.mtime, 0)
        if st.is_symlink:
            st = self._fs.stat(path)

        if not st.is_dir:
            if self._oversized(st.size):
                value = _fold(self.algorithm, [_record(".", f"oversized:{st.size}")])
                digest = Digest(self.algorithm, value, DigestQuality.PARTIAL, (".",))
            else:
                digest = Digest(self.algorithm, self._hash_file(path, cancel_check))
            return BundleDigest(digest, NodeKind.FILE, st.size, st.mtime, 1)

        members = self._collect(path)
        fingerprint = self._fingerprint(members)
        if self._cache is not None:
            cached = self._cache.get(path, fingerprint, self.algorithm, self.max_file_size)
            if cached is not None:
                return cached

        records: list[tuple[str, bytes]] = []
        oversized: list[str] = []
        total = 0
        newest = st.mtime
        for member in members:
            newest = max(newest, member.mtime_ns / 1e9)
            if cancel_check is not None and cancel_check():
                raise HashCancelled
            if member.link_target is not None:
                records.append(_record(member.rel, f"symlink:{member.link_target}"))
                continue
            total += member.size
            if self._oversized(member.size):
                oversized.append(member.rel)
                records.append(_record(member.rel, f"oversized:{member.size}"))
                continue
            records.append(_record(member.rel, self._hash_file(member.path, cancel_check)))

        quality = DigestQuality.PARTIAL if oversized else DigestQuality.COMPLETE
        digest = Digest(self.algorithm, _fold(self.algorithm, records), quality, tuple(sorted(oversized)))
        result = BundleDigest(digest, NodeKind.DIRECTORY, total, newest, len(members))
        if self._cache is not None:
            self._cache.put(path, fingerprint, self.algorithm, self.max_file_size, result)
        return result

    def _collect(self, root: str) -> list[_Member]:
        """Walk a directory bundle; returns members sorted by relative path bytes."""
        members: list[_Member] = []
        seen_dirs: set[str] = set()
        if self.follow_symlinks:
            seen_dirs.add(self._fs.realpath(root))
        stack: list[tuple[str, str]] = [(root, "")]
        while stack:
            directory, prefix = stack.pop()
            for entry in self._fs.scandir(directory):
                rel = f"{prefix}{entry.name}"
                if self._member_filter is not None and self._member_filter(rel, entry.name):
                    continue
                st = self._fs.lstat(entry.path)
                if st.is_symlink:
                    if not self.follow_symlinks:
                        members.append(_Member(rel, entry.path, 0, st.mtime_ns, self._fs.readlink(entry.path)))
                        continue
                    try:
                        st = self._fs.stat(entry.path)
                    except FileNotFoundError:
                        # Dangling link: nothing to follow, keep it as layout.
                        members.append(_Member(rel, entry.path, 0, st.mtime_ns, self._fs.readlink(entry.path)))
                        continue
                if st.is_dir:
                    if self.follow_symlinks:
                        real = self._fs.realpath(entry.path)
                        if real in seen_dirs:
                            continue
                        seen_dirs.add(real)
                    stack.append((entry.path, f"{rel}/"))
                elif st.is_file:
                    members.append(_Member(rel, entry.path, st.size, st.mtime_ns))
        members.sort(key=lambda m: _sort_key(m.rel))
        return members

    def _fingerprint(self, members: list[_Member]) -> str:
        h = hashlib.sha1(usedforsecurity=False)
        for m in members:
            h.update(f"{m.rel}\0{m.size}\0{m.mtime_ns}\0{m.link_target}\n".encode("utf-8", "surrogateescape"))
        return h.hexdigest()

    def digest_archive(
        self,
        archive_path: str,
        root_name: str,
        cancel_check: CancelCheck | None = None,
        *,
        link_anchor: str | None = None,
    ) -> Result[Digest, HashError]:
        """Digest a bundle stored as ``root_name`` inside a tar archive.

        Uses the same folding scheme as ``digest`` so a compressed backup can
        be compared directly with the digest of the original bundle.  A
        relative link target of the root resolves against *link_anchor*
        (default: the archive's directory).
        """
        anchor = link_anchor or os.path.dirname(self._fs.absolute(archive_path))
        try:
            return Ok(self._digest_archive(archive_path, root_name, cancel_check, anchor))
        except HashCancelled:
            return Err(HashError(ErrorCode.CANCELLED, archive_path, "Hashing cancelled"))
        except (OSError, tarfile.TarError) as exc:
            code = error_code_for(exc) if isinstance(exc, OSError) else ErrorCode.IO_ERROR
            return Err(HashError(code, archive_path, str(exc)))

    def _digest_archive(
        self, archive_path: str, root_name: str, cancel_check: CancelCheck | None, anchor: str
    ) -> Digest:
        with self._fs.open_read(archive_path) as raw, tarfile.open(fileobj=raw, mode="r:*") as tar:
            records: list[tuple[str, bytes]] = []
            oversized: list[str] = []
            prefix = f"{root_name}/"
            for info in tar:
                if info.name == root_name:
                    if info.issym():
                        return Digest(self.algorithm, _symlink_digest(self.algorithm, info.linkname, anchor))
                    if info.isfile():
                        if self._oversized(info.size):
                            value = _fold(self.algorithm, [_record(".", f"oversized:{info.size}")])
                            return Digest(self.algorithm, value, DigestQuality.PARTIAL, (".",))
                        stream = tar.extractfile(info)
                        if stream is None:
                            raise tarfile.TarError(f"Unreadable member {info.name}")
                        with stream:
                            return Digest(self.algorithm, self._hash_stream(stream, cancel_check))
                    continue
                if not info.name.startswith(prefix):
                    continue
                rel = info.name[len(prefix) :]
                name = rel.rsplit("/", 1)[-1]
                if self._member_filter is not None and self._excluded_in_archive(rel, name):
                    continue
                if info.issym():
                    records.append(_record(rel, f"symlink:{info.linkname}"))
                elif info.isfile():
                    if self._oversized(info.size):
                        oversized.append(rel)
                        records.append(_record(rel, f"oversized:{info.size}"))
                        continue
                    stream = tar.extractfile(info)
                    if stream is None:
                        raise tarfile.TarError(f"Unreadable member {info.name}")
                    with stream:
                        records.append(_record(rel, self._hash_stream(stream, cancel_check)))
        quality = DigestQuality.PARTIAL if oversized else DigestQuality.COMPLETE
        return Digest(self.algorithm, _fold(self.algorithm, records), quality, tuple(sorted(oversized)))

    def _excluded_in_archive(self, rel: str, name: str) -> bool:
        # The on-disk walk prunes whole subtrees, so any excluded ancestor
        # excludes the member here too.
        assert self._member_filter is not None
        parts = rel.split("/")
        for i in range(1, len(parts) + 1):
            if self._member_filter("/".join(parts[:i]), parts[i - 1]):
                return True
        return False

