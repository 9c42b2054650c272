from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from apprune.models.enums import HashAlgorithm, RuleKind
from apprune.services.formatting import parse_bytes, parse_timestamp, parse_version

# (json_key, attr_name, minimum), shared by from_dict and CLI override clamping.
_INT_FIELDS: tuple[tuple[str, str, int], ...] = (
    ("scanDepth", "scan_depth", 1),
    ("threadCount", "thread_count", 1),
    ("retainBackups", "retain_backups", 0),
    ("cacheExpiry", "cache_expiry", 0),
    ("removalWorkers", "removal_workers", 1),
)

_BOOL_FIELDS: tuple[tuple[str, str], ...] = (
    ("includeHidden", "include_hidden"),
    ("followSymlinks", "follow_symlinks"),
    ("excludeSystemApps", "exclude_system_apps"),
    ("backupBeforeRemoval", "backup_before_removal"),
    ("compressBackups", "compress_backups"),
    ("cacheResults", "cache_results"),
)

_LIST_FIELDS: tuple[tuple[str, str], ...] = (
    ("excludePatterns", "exclude_patterns"),
    ("primaryRoots", "primary_roots"),
    ("systemRoots", "system_roots"),
    ("bundleSuffixes", "bundle_suffixes"),
)

# Compact rule prefixes accepted by Rule.parse -> (kind, target).
_RULE_PREFIXES: dict[str, tuple[RuleKind, str]] = {
    "substring": (RuleKind.SUBSTRING, "name"),
    "contains": (RuleKind.SUBSTRING, "name"),
    "path-contains": (RuleKind.SUBSTRING, "path"),
    "prefix": (RuleKind.PATH_PREFIX, "path"),
    "path_prefix": (RuleKind.PATH_PREFIX, "path"),
    "ext": (RuleKind.EXTENSION, "name"),
    "extension": (RuleKind.EXTENSION, "name"),
    "glob": (RuleKind.GLOB, "name"),
    "size": (RuleKind.SIZE_RANGE, "name"),
    "modified": (RuleKind.MODIFIED_RANGE, "name"),
    "version": (RuleKind.VERSION_RANGE, "name"),
}

_RANGE_PARSERS = {
    RuleKind.SIZE_RANGE: parse_bytes,
    RuleKind.MODIFIED_RANGE: parse_timestamp,
    RuleKind.VERSION_RANGE: parse_version,
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class RuleSyntaxError(ValueError):
    """A rule that cannot be evaluated; raised when the rule is defined."""


def clamp_field(value: int, field_name: str) -> int:
    """Clamp *value* to the minimum defined for *field_name* in _INT_FIELDS."""
    for _, attr, minimum in _INT_FIELDS:
        if attr == field_name:
            return max(minimum, value)
    return value


def _get_int(data: dict[str, Any], json_key: str, default: int, minimum: int) -> int:
    return max(minimum, int(data.get(json_key, default)))


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


@dataclass(slots=True, frozen=True)
class Rule:
    """One tagged predicate over an inventory entry.

    ``target`` selects the leaf name or the full path for the textual kinds.
    Range kinds use ``minimum``/``maximum`` (inclusive, either may be absent).
    Validation happens here so a malformed rule never reaches evaluation.
    """

    kind: RuleKind
    value: str = ""
    target: str = "name"
    minimum: str | None = None
    maximum: str | None = None

    def __post_init__(self) -> None:
        if self.target not in ("name", "path"):
            raise RuleSyntaxError(f"Unknown rule target: {self.target!r}")
        if self.kind.is_range:
            if self.minimum is None and self.maximum is None:
                raise RuleSyntaxError(f"{self.kind.value} rule needs a minimum or a maximum")
            parse = _RANGE_PARSERS[self.kind]
            bounds = []
            for bound in (self.minimum, self.maximum):
                if bound is None:
                    continue
                try:
                    bounds.append(parse(bound))
                except ValueError as exc:
                    raise RuleSyntaxError(f"Bad {self.kind.value} bound {bound!r}: {exc}") from exc
            if len(bounds) == 2 and bounds[0] > bounds[1]:
                raise RuleSyntaxError(f"Empty {self.kind.value}: {self.minimum} > {self.maximum}")
            return
        if not self.value.strip():
            raise RuleSyntaxError(f"{self.kind.value} rule needs a value")
        if self.kind is RuleKind.SUBSTRING and not any(p.strip() for p in self.value.split("|")):
            raise RuleSyntaxError("substring rule has no alternatives")

    @classmethod
    def parse(cls, text: str) -> Rule:
        """Parse the compact ``kind:argument`` form, e.g. ``ext:.app,.exe``."""
        prefix, sep, argument = text.partition(":")
        if not sep:
            raise RuleSyntaxError(f"Rule must look like 'kind:argument': {text!r}")
        spec = _RULE_PREFIXES.get(prefix.strip().lower())
        if spec is None:
            raise RuleSyntaxError(f"Unknown rule kind {prefix!r} in {text!r}")
        kind, target = spec
        argument = argument.strip()
        if kind.is_range:
            low, dots, high = argument.partition("..")
            if not dots:
                low = high = argument
            return cls(kind, target=target, minimum=low.strip() or None, maximum=high.strip() or None)
        return cls(kind, value=argument, target=target)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "target": self.target}
        if self.kind.is_range:
            payload["min"] = self.minimum
            payload["max"] = self.maximum
        else:
            payload["value"] = self.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | str) -> Rule:
        if isinstance(payload, str):
            return cls.parse(payload)
        try:
            kind = RuleKind(str(payload["kind"]))
        except (KeyError, ValueError) as exc:
            raise RuleSyntaxError(f"Unknown rule kind in {payload!r}") from exc
        low = payload.get("min")
        high = payload.get("max")
        return cls(
            kind=kind,
            value=str(payload.get("value", "")),
            target=str(payload.get("target", "name")),
            minimum=None if low is None else str(low),
            maximum=None if high is None else str(high),
        )


@dataclass(slots=True, frozen=True)
class Category:
    name: str
    rules: tuple[Rule, ...] = ()
    description: str = ""
    id: str = ""

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise RuleSyntaxError("Category name must not be empty")
        if not self.id:
            object.__setattr__(self, "id", slugify(self.name))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "rules": [rule.to_dict() for rule in self.rules],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Category:
        # Blank rule lines are dropped, as the category editor does.
        raw_rules = [r for r in payload.get("rules", []) if not (isinstance(r, str) and not r.strip())]
        return cls(
            name=str(payload.get("name", "")),
            rules=tuple(Rule.from_dict(r) for r in raw_rules),
            description=str(payload.get("description", "")),
            id=str(payload.get("id", "")),
        )


@dataclass(slots=True, frozen=True)
class ScanRoot:
    path: str
    scan_depth: int | None = None
    follow_symlinks: bool | None = None
    primary: bool = False
    protected: bool = False

    def to_dict(self) -> dict[str, Any] | str:
        if self.scan_depth is None and self.follow_symlinks is None and not self.primary and not self.protected:
            return self.path
        return {
            "path": self.path,
            "scanDepth": self.scan_depth,
            "followSymlinks": self.follow_symlinks,
            "primary": self.primary,
            "protected": self.protected,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | str) -> ScanRoot:
        if isinstance(payload, str):
            return cls(path=payload)
        depth = payload.get("scanDepth")
        follow = payload.get("followSymlinks")
        return cls(
            path=str(payload["path"]),
            scan_depth=None if depth is None else max(1, int(depth)),
            follow_symlinks=None if follow is None else bool(follow),
            primary=bool(payload.get("primary", False)),
            protected=bool(payload.get("protected", False)),
        )


@dataclass(slots=True)
class AppConfig:
    scan_roots: list[ScanRoot] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    include_hidden: bool = False
    follow_symlinks: bool = False
    exclude_system_apps: bool = True
    scan_depth: int = 5
    max_file_size: int = 10 * 1024**3
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    thread_count: int = 4
    backup_before_removal: bool = True
    backup_location: str = "~/Backup/AppManager"
    retain_backups: int = 30
    compress_backups: bool = True
    categories: list[Category] = field(default_factory=list)
    primary_roots: list[str] = field(default_factory=list)
    system_roots: list[str] = field(default_factory=list)
    bundle_suffixes: list[str] = field(default_factory=list)
    cache_results: bool = True
    cache_expiry: int = 7
    removal_workers: int = 2
    log_level: str = "info"

    def depth_for(self, root: ScanRoot) -> int:
        return self.scan_depth if root.scan_depth is None else root.scan_depth

    def follow_for(self, root: ScanRoot) -> bool:
        return self.follow_symlinks if root.follow_symlinks is None else root.follow_symlinks

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanRoots": [root.to_dict() for root in self.scan_roots],
            "excludePatterns": list(self.exclude_patterns),
            "includeHidden": self.include_hidden,
            "followSymlinks": self.follow_symlinks,
            "excludeSystemApps": self.exclude_system_apps,
            "scanDepth": self.scan_depth,
            "maxFileSize": self.max_file_size,
            "hashAlgorithm": self.hash_algorithm.value,
            "threadCount": self.thread_count,
            "backupBeforeRemoval": self.backup_before_removal,
            "backupLocation": self.backup_location,
            "retainBackups": self.retain_backups,
            "compressBackups": self.compress_backups,
            "categories": [cat.to_dict() for cat in self.categories],
            "primaryRoots": list(self.primary_roots),
            "systemRoots": list(self.system_roots),
            "bundleSuffixes": list(self.bundle_suffixes),
            "cacheResults": self.cache_results,
            "cacheExpiry": self.cache_expiry,
            "removalWorkers": self.removal_workers,
            "logLevel": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: AppConfig) -> AppConfig:
        roots_raw = data.get("scanRoots")
        if roots_raw is not None:
            scan_roots = [ScanRoot.from_dict(x) for x in roots_raw]
        else:
            scan_roots = list(defaults.scan_roots)

        categories_raw = data.get("categories")
        if categories_raw is not None:
            categories = [Category.from_dict(x) for x in categories_raw]
        else:
            categories = list(defaults.categories)

        int_kwargs: dict[str, int] = {}
        for json_key, attr, minimum in _INT_FIELDS:
            int_kwargs[attr] = _get_int(data, json_key, getattr(defaults, attr), minimum)

        bool_kwargs: dict[str, bool] = {}
        for json_key, attr in _BOOL_FIELDS:
            bool_kwargs[attr] = bool(data.get(json_key, getattr(defaults, attr)))

        list_kwargs: dict[str, list[str]] = {}
        for json_key, attr in _LIST_FIELDS:
            raw = data.get(json_key)
            list_kwargs[attr] = [str(x) for x in raw] if raw is not None else list(getattr(defaults, attr))

        return cls(
            scan_roots=scan_roots,
            categories=categories,
            max_file_size=max(0, parse_bytes(data.get("maxFileSize", defaults.max_file_size))),
            hash_algorithm=HashAlgorithm.from_str(data.get("hashAlgorithm", defaults.hash_algorithm.value)),
            backup_location=str(data.get("backupLocation", defaults.backup_location)),
            log_level=str(data.get("logLevel", defaults.log_level)),
            **int_kwargs,
            **bool_kwargs,
            **list_kwargs,
        )
