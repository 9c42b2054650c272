# Rule compilation and category assignment.
#
# Rules are validated when they are constructed (config.schema.Rule), so
# compilation here cannot fail: each Rule becomes a pure predicate closure
# over an InventoryEntry.  Categories are evaluated in configured order and
# rules top-to-bottom; the first match anywhere assigns the entry and ends
# evaluation for it, so an entry belongs to at most one category.

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase

import structlog

from apprune.config.schema import Category, Rule, RuleSyntaxError
from apprune.models.enums import EventCategory, EventLevel, RuleKind
from apprune.models.events import EventSink, emit
from apprune.models.inventory import InventoryEntry
from apprune.services.formatting import parse_bytes, parse_timestamp, parse_version
from apprune.services.path_filter import is_under, normalize

logger = structlog.get_logger(__name__)

Predicate = Callable[[InventoryEntry], bool]


def _subject(entry: InventoryEntry, target: str) -> str:
    return (entry.path if target == "path" else entry.name).lower()


def _in_range(value: object, low: object | None, high: object | None) -> bool:
    if low is not None and value < low:  # type: ignore[operator]
        return False
    return not (high is not None and value > high)  # type: ignore[operator]


def compile_rule(rule: Rule) -> Predicate:
    kind = rule.kind
    target = rule.target

    if kind is RuleKind.SUBSTRING:
        needles = tuple(p.strip().lower() for p in rule.value.split("|") if p.strip())
        return lambda e: any(n in _subject(e, target) for n in needles)

    if kind is RuleKind.PATH_PREFIX:
        base = normalize(rule.value).lower()
        return lambda e: is_under(normalize(e.path).lower(), base)

    if kind is RuleKind.EXTENSION:
        exts = tuple(
            (x if x.startswith(".") else f".{x}") for x in (p.strip().lower() for p in rule.value.split(",")) if x
        )
        return lambda e: e.name.lower().endswith(exts)

    if kind is RuleKind.GLOB:
        pattern = rule.value.lower()
        return lambda e: fnmatchcase(_subject(e, target), pattern)

    if kind is RuleKind.SIZE_RANGE:
        s_low = None if rule.minimum is None else parse_bytes(rule.minimum)
        s_high = None if rule.maximum is None else parse_bytes(rule.maximum)
        return lambda e: _in_range(e.size_bytes, s_low, s_high)

    if kind is RuleKind.MODIFIED_RANGE:
        t_low = None if rule.minimum is None else parse_timestamp(rule.minimum)
        t_high = None if rule.maximum is None else parse_timestamp(rule.maximum)
        return lambda e: _in_range(e.modified_ts, t_low, t_high)

    v_low = None if rule.minimum is None else parse_version(rule.minimum)
    v_high = None if rule.maximum is None else parse_version(rule.maximum)

    def _version_match(e: InventoryEntry) -> bool:
        if not e.version:
            return False
        try:
            version = parse_version(e.version)
        except ValueError:
            return False
        return _in_range(version, v_low, v_high)

    return _version_match


@dataclass(slots=True, frozen=True)
class CompiledCategory:
    category: Category
    predicates: tuple[Predicate, ...]

    def matches(self, entry: InventoryEntry) -> bool:
        return any(p(entry) for p in self.predicates)


def compile_categories(categories: Sequence[Category]) -> list[CompiledCategory]:
    seen: set[str] = set()
    compiled: list[CompiledCategory] = []
    for cat in categories:
        if cat.id in seen:
            # Duplicate ids would make the assignment ambiguous.
            raise RuleSyntaxError(f"Duplicate category id: {cat.id}")
        seen.add(cat.id)
        compiled.append(CompiledCategory(cat, tuple(compile_rule(r) for r in cat.rules)))
    return compiled


def categorize(
    entries: Iterable[InventoryEntry],
    categories: Sequence[Category],
    on_event: EventSink | None = None,
) -> dict[str, str]:
    """Map entry id -> category id.  Unmatched entries are simply absent."""
    compiled = compile_categories(categories)
    assignment: dict[str, str] = {}
    for entry in entries:
        for cc in compiled:
            if cc.matches(entry):
                assignment[entry.id] = cc.category.id
                break

    counts = category_counts(assignment)
    logger.info("entries_categorized", assigned=len(assignment), categories=dict(counts))
    for cc in compiled:
        n = counts.get(cc.category.id, 0)
        if n:
            emit(
                on_event,
                EventLevel.INFO,
                EventCategory.CATEGORY,
                f"Auto-categorized {n} applications as {cc.category.name}",
                category_id=cc.category.id,
                count=n,
            )
    return assignment


def category_counts(assignment: dict[str, str]) -> Counter[str]:
    return Counter(assignment.values())
