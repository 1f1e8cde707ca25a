
"""Assignment snapshots and the deltas between them."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

Move = Tuple[Optional[str], str]


def _frozen(d: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(d or {}))


@dataclass(frozen=True)
class Assignment:
    """Immutable target id -> shard id map, computed against ShardSet `version`."""
    owners: Mapping[str, str] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "owners", _frozen(self.owners))

    def shard_of(self, target_id: str) -> Optional[str]:
        return self.owners.get(target_id)

    def by_shard(self) -> Dict[str, list]:
        out: Dict[str, list] = {}
        for tid, shard in self.owners.items():
            out.setdefault(shard, []).append(tid)
        for tids in out.values():
            tids.sort()
        return out

    def __len__(self) -> int:
        return len(self.owners)


@dataclass(frozen=True)
class AssignmentDelta:
    """Targets whose owner changed between two commits.

    moved maps target -> (from_shard, to_shard); from_shard is None for new
    targets. removed maps target -> the shard it was last on. A resync delta
    lists the whole assignment as new targets and replaces the consumer's view.
    """
    moved: Mapping[str, Move] = field(default_factory=dict)
    removed: Mapping[str, str] = field(default_factory=dict)
    version: int = 0
    seq: int = 0
    resync: bool = False

    def __post_init__(self):
        object.__setattr__(self, "moved", _frozen(self.moved))
        object.__setattr__(self, "removed", _frozen(self.removed))

    def is_empty(self) -> bool:
        return not self.moved and not self.removed

    def __len__(self) -> int:
        return len(self.moved) + len(self.removed)

    def added(self) -> Dict[str, str]:
        return {t: to for t, (frm, to) in self.moved.items() if frm is None}

    def reassigned(self) -> Dict[str, Move]:
        return {t: m for t, m in self.moved.items() if m[0] is not None}
