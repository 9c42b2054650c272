# Visit / include decisions for the discovery walk.
#
# Exclude patterns are shell-style globs, compared case-insensitively against
# both the full path and the leaf name.  Brace alternatives ("*.{log,tmp}")
# are expanded once at construction.  A match prunes the node together with
# its whole subtree: the walker never descends into an excluded directory.

from __future__ import annotations

import os
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

from apprune.config.schema import AppConfig, ScanRoot


def _expand_braces(pattern: str) -> tuple[str, ...]:
    start = pattern.find("{")
    end = pattern.find("}", start + 1)
    if start == -1 or end == -1:
        return (pattern,)
    choices = pattern[start + 1 : end].split(",")
    prefix = pattern[:start]
    suffix = pattern[end + 1 :]
    expanded: list[str] = []
    for choice in choices:
        expanded.extend(_expand_braces(f"{prefix}{choice}{suffix}"))
    return tuple(expanded)


def normalize(path: str) -> str:
    return os.path.normpath(os.path.expanduser(path)).replace("\\", "/").rstrip("/") or "/"


def is_under(path: str, base: str) -> bool:
    """True when *path* equals *base* or lives beneath it (both normalized)."""
    if base == "/":
        return path.startswith("/")
    return path == base or path.startswith(base + "/")


def is_hidden_name(name: str) -> bool:
    return name.startswith(".") and name not in (".", "..")


@dataclass(slots=True)
class PathFilter:
    max_depth: int
    include_hidden: bool = False
    follow_symlinks: bool = False
    exclude_patterns: tuple[str, ...] = ()
    protected_roots: tuple[str, ...] = ()
    _compiled: tuple[str, ...] = field(init=False, default=())

    def __post_init__(self) -> None:
        compiled: list[str] = []
        for raw in self.exclude_patterns:
            for pat in _expand_braces(raw):
                compiled.append(pat.replace("\\", "/").lower())
        self._compiled = tuple(compiled)

    @classmethod
    def for_root(cls, config: AppConfig, root: ScanRoot) -> PathFilter:
        return cls(
            max_depth=config.depth_for(root),
            include_hidden=config.include_hidden,
            follow_symlinks=config.follow_for(root),
            exclude_patterns=tuple(config.exclude_patterns),
            protected_roots=tuple(removal_protected_roots(config)),
        )

    def is_excluded(self, path: str, name: str | None = None) -> bool:
        if not self._compiled:
            return False
        lpath = path.replace("\\", "/").lower()
        lname = (name if name is not None else lpath.rsplit("/", 1)[-1]).lower()
        for pat in self._compiled:
            if fnmatchcase(lname, pat) or fnmatchcase(lpath, pat):
                return True
        return False

    def should_visit(self, path: str, depth: int) -> bool:
        """Depth gate plus subtree pruning by exclude pattern."""
        if depth > self.max_depth:
            return False
        return not self.is_excluded(path)

    def should_include(self, path: str, is_hidden: bool, is_symlink: bool) -> bool:
        """Whether a visited node may be recorded.

        Symlinks are always recordable as leaves; ``should_traverse`` decides
        whether the walker follows them.
        """
        if is_hidden and not self.include_hidden:
            return False
        return not self.is_excluded(path)

    def should_traverse(self, is_symlink: bool) -> bool:
        return self.follow_symlinks or not is_symlink

    def is_removal_protected(self, path: str) -> bool:
        target = normalize(path)
        return any(is_under(target, base) for base in self.protected_roots)


def removal_protected_roots(config: AppConfig) -> list[str]:
    """Roots whose entries are reported but never eligible for removal.

    Roots marked ``protected`` always count; ``excludeSystemApps`` only adds
    the configured system roots.
    """
    bases: list[str] = [r.path for r in config.scan_roots if r.protected]
    if config.exclude_system_apps:
        bases.extend(config.system_roots)
    return sorted({normalize(b) for b in bases})
