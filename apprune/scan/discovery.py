# Bundle discovery: a deterministic, single-threaded walk of one scan root.
#
# The walk visits children in name order, prunes excluded / hidden / too-deep
# subtrees, and stops descending as soon as the bundle convention claims a
# node.  Discovery is cheap (stat only); hashing happens later on the worker
# pool, so the candidate count doubles as the progress estimate.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import structlog

from apprune.config.schema import AppConfig, ScanRoot
from apprune.models.enums import error_code_for
from apprune.models.inventory import CancelCheck, EntryError
from apprune.services.fs import DEFAULT_FS, FileSystem
from apprune.services.path_filter import PathFilter, is_hidden_name

logger = structlog.get_logger(__name__)


class BundleConvention(Protocol):
    def is_bundle(self, path: str, name: str, is_dir: bool, depth: int) -> bool: ...


@dataclass(slots=True, frozen=True)
class TopLevelConvention:
    """Every immediate child of a scan root is one application."""

    def is_bundle(self, path: str, name: str, is_dir: bool, depth: int) -> bool:
        return depth == 1


@dataclass(slots=True, frozen=True)
class SuffixConvention:
    """Names ending in one of *suffixes* are bundles (``.app`` style).

    Plain files sitting directly in a root (``/usr/local/bin/tool``) count as
    single-file applications as well; other directories are descended.
    """

    suffixes: tuple[str, ...]

    def is_bundle(self, path: str, name: str, is_dir: bool, depth: int) -> bool:
        lname = name.lower()
        if any(lname.endswith(s.lower()) for s in self.suffixes):
            return True
        return depth == 1 and not is_dir


def convention_for(config: AppConfig) -> BundleConvention:
    if config.bundle_suffixes:
        return SuffixConvention(tuple(config.bundle_suffixes))
    return TopLevelConvention()


@dataclass(slots=True, frozen=True)
class Candidate:
    path: str
    name: str
    root: str
    root_index: int
    is_symlink: bool = False


@dataclass(slots=True)
class Discovery:
    candidates: list[Candidate] = field(default_factory=list)
    errors: list[EntryError] = field(default_factory=list)
    directories: int = 0
    cancelled: bool = False


def discover(
    root: ScanRoot,
    resolved_root: str,
    root_index: int,
    path_filter: PathFilter,
    convention: BundleConvention,
    fs: FileSystem = DEFAULT_FS,
    cancel_check: CancelCheck | None = None,
) -> Discovery:
    out = Discovery(directories=1)
    seen_dirs = {fs.realpath(resolved_root)} if path_filter.follow_symlinks else set()
    # Explicit (directory, depth) stack; no recursion limit on deep trees.
    stack: list[tuple[str, int]] = [(resolved_root, 0)]
    while stack:
        if cancel_check is not None and cancel_check():
            out.cancelled = True
            return out
        directory, depth = stack.pop()
        child_depth = depth + 1
        try:
            children = list(fs.scandir(directory))
        except OSError as exc:
            out.errors.append(EntryError(directory, error_code_for(exc), str(exc), resolved_root))
            logger.warning("discovery_dir_unreadable", path=directory, error=str(exc))
            continue

        descend: list[tuple[str, int]] = []
        for entry in children:
            if not path_filter.should_visit(entry.path, child_depth):
                continue
            try:
                st = fs.lstat(entry.path)
            except OSError as exc:
                out.errors.append(EntryError(entry.path, error_code_for(exc), str(exc), resolved_root))
                continue
            hidden = is_hidden_name(entry.name) or st.hidden_flag
            if not path_filter.should_include(entry.path, hidden, st.is_symlink):
                continue

            is_dir = st.is_dir
            if st.is_symlink and path_filter.follow_symlinks:
                try:
                    is_dir = fs.stat(entry.path).is_dir
                except OSError:
                    is_dir = False

            if convention.is_bundle(entry.path, entry.name, is_dir, child_depth):
                out.candidates.append(
                    Candidate(entry.path, entry.name, resolved_root, root_index, is_symlink=st.is_symlink)
                )
                continue

            if not is_dir or not path_filter.should_traverse(st.is_symlink):
                continue
            if path_filter.follow_symlinks:
                real = fs.realpath(entry.path)
                if real in seen_dirs:
                    continue
                seen_dirs.add(real)
            out.directories += 1
            descend.append((entry.path, child_depth))

        # Reverse before pushing onto the LIFO stack so subdirectories are
        # walked in name order.
        stack.extend(reversed(descend))

    logger.debug(
        "discovery_finished",
        root=resolved_root,
        scan_depth=root.scan_depth,
        candidates=len(out.candidates),
        directories=out.directories,
    )
    return out
