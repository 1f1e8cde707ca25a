
"""Consistent hashing ring over shard identifiers, using xxh3_64.
- Sorted token array for O(log N) owner lookups via bisect
- Weighted virtual nodes per shard
- Seeded hashing, so placements survive process restarts
Rings are built once per shard membership and never mutated afterwards.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Tuple
import bisect
import logging

try:
    import xxhash
except ImportError as e:
    raise RuntimeError("xxhash is required. Install with: pip install xxhash") from e

log = logging.getLogger(__name__)

def h64(data: bytes, seed: int = 0) -> int:
    return xxhash.xxh3_64_intdigest(data, seed=seed)

def key_hash(key: str, seed: int = 0) -> int:
    return h64(key.encode("utf-8"), seed)


class ConsistentHasher:
    """Each shard owns the arc ending at each of its tokens."""
    def __init__(self, shards: Iterable[Tuple[str, int]] = (), virtual_nodes_per_weight: int = 128,
                 seed: int = 0):
        self._seed = seed
        self._vn_per_weight = max(1, virtual_nodes_per_weight)
        ring: List[Tuple[int, str]] = []
        seen = set()
        for shard_id, weight in shards:
            if shard_id in seen:
                raise ValueError(f"Shard {shard_id} already on the ring")
            seen.add(shard_id)
            ring.extend((self._token_for_vn(shard_id, i), shard_id)
                        for i in range(self._vn_per_weight * max(1, weight)))
        ring.sort()
        self._sorted_tokens = [t for t, _ in ring]
        self._owners = [s for _, s in ring]
        self._shard_count = len(seen)
        log.debug("built ring shards=%d tokens=%d", self._shard_count, len(ring))

    def _token_for_vn(self, shard_id: str, replica_idx: int) -> int:
        # token depends only on the shard id, never on ring membership
        return h64(f"{shard_id}#{replica_idx}".encode("utf-8"), seed=self._seed)

    def get_shard(self, key: str):
        if not self._sorted_tokens:
            return None
        tok = key_hash(key, self._seed)
        idx = bisect.bisect(self._sorted_tokens, tok) % len(self._sorted_tokens)
        return self._owners[idx]

    def __len__(self) -> int:
        return self._shard_count

    def stats(self) -> Dict[str, int]:
        return {"shards": self._shard_count, "tokens": len(self._sorted_tokens), "vn_per_weight": self._vn_per_weight}
