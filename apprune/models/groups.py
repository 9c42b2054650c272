from __future__ import annotations

from dataclasses import dataclass

from apprune.models.inventory import Digest, InventoryEntry


@dataclass(slots=True, frozen=True)
class DuplicateGroup:
    digest: Digest
    # Members in canonical-preference order; members[0] is the canonical entry.
    members: tuple[InventoryEntry, ...]

    @property
    def canonical(self) -> InventoryEntry:
        return self.members[0]

    @property
    def canonical_id(self) -> str:
        return self.members[0].id

    @property
    def member_ids(self) -> frozenset[str]:
        return frozenset(m.id for m in self.members)

    @property
    def redundant(self) -> tuple[InventoryEntry, ...]:
        return self.members[1:]

    @property
    def reclaimable_bytes(self) -> int:
        return sum(m.size_bytes for m in self.members[1:])

    def __len__(self) -> int:
        return len(self.members)


@dataclass(slots=True, frozen=True)
class DuplicateReport:
    groups: tuple[DuplicateGroup, ...]

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def duplicate_count(self) -> int:
        return sum(len(g) - 1 for g in self.groups)

    @property
    def reclaimable_bytes(self) -> int:
        return sum(g.reclaimable_bytes for g in self.groups)

    def group_of(self, entry_id: str) -> DuplicateGroup | None:
        for group in self.groups:
            if entry_id in group.member_ids:
                return group
        return None
