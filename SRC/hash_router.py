
"""Hash routers: map a target's HashKey to a shard.

Three interchangeable algorithms behind one interface:
  modulo           stable hash mod N, the hashmod relabel analog
  consistent-ring  consistent hash ring with weighted virtual nodes
  jump-hash        jump consistent hash (Lamping & Veach)

route() works on shard indices, owner() on a named ShardSet. Only owner() can
keep churn minimal when a shard in the middle of the set goes away, which is
what the Rebalancer relies on.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, Mapping, Sequence, Tuple, Type
import logging
import threading

from consistent_hash_ring import ConsistentHasher, key_hash
from errors import EmptyShardSet, RouterComputationError, ShardRouterError
from shard_state import ShardSet

log = logging.getLogger(__name__)

HASH_KEY_SEPARATOR = ";"


def derive_hash_key(target_id: str, labels: Mapping[str, str], selector: Sequence[str]) -> str:
    """Join the selected label values in selector order, like hashmod source_labels.

    Missing labels contribute an empty string. An empty selector keys on the target id.
    """
    if not selector:
        return target_id
    return HASH_KEY_SEPARATOR.join(labels.get(k, "") for k in selector)


class HashRouter(ABC):
    name = ""

    def __init__(self, seed: int = 0):
        self.seed = seed

    @abstractmethod
    def _index(self, hash_key: str, shard_count: int) -> int:
        ...

    def _owner(self, hash_key: str, shard_set: ShardSet) -> str:
        return shard_set.shards[self._index(hash_key, len(shard_set))]

    def route(self, hash_key: str, shard_count: int) -> int:
        if shard_count <= 0:
            raise EmptyShardSet(f"cannot route {hash_key!r} over {shard_count} shards")
        try:
            return self._index(hash_key, shard_count)
        except ShardRouterError:
            raise
        except Exception as e:
            raise RouterComputationError(f"{self.name} route failed for {hash_key!r}: {e}") from e

    def owner(self, hash_key: str, shard_set: ShardSet) -> str:
        if shard_set.is_empty():
            raise EmptyShardSet(f"shard set version {shard_set.version} is empty")
        try:
            return self._owner(hash_key, shard_set)
        except ShardRouterError:
            raise
        except Exception as e:
            raise RouterComputationError(f"{self.name} owner lookup failed for {hash_key!r}: {e}") from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}(seed={self.seed})"


class ModuloRouter(HashRouter):
    """hashmod: every shard count change reshuffles most keys."""
    name = "modulo"

    def _index(self, hash_key: str, shard_count: int) -> int:
        return key_hash(hash_key, self.seed) % shard_count


def jump_hash(key: int, num_buckets: int) -> int:
    b, j = -1, 0
    while j < num_buckets:
        b = j
        key = (key * 2862933555777941757 + 1) & 0xFFFFFFFFFFFFFFFF
        j = int((b + 1) * (float(1 << 31) / float((key >> 33) + 1)))
    return b


class JumpHashRouter(HashRouter):
    """Minimal movement when shards are appended or the last one removed.

    Buckets are positions, so removing a shard from the middle of the set shifts
    every later shard's keys.
    """
    name = "jump-hash"

    def _index(self, hash_key: str, shard_count: int) -> int:
        return jump_hash(key_hash(hash_key, self.seed), shard_count)


class RingRouter(HashRouter):
    name = "consistent-ring"
    max_cached_rings = 8

    def __init__(self, seed: int = 0, virtual_nodes_per_weight: int = 128):
        super().__init__(seed)
        self.virtual_nodes_per_weight = virtual_nodes_per_weight
        self._lock = threading.Lock()
        self._rings: "OrderedDict[Tuple[Tuple[str, int], ...], ConsistentHasher]" = OrderedDict()

    def ring_for(self, members: Sequence[Tuple[str, int]]) -> ConsistentHasher:
        key = tuple(members)
        with self._lock:
            ring = self._rings.get(key)
            if ring is not None:
                self._rings.move_to_end(key, last=True)
                return ring
        ring = ConsistentHasher(key, self.virtual_nodes_per_weight, self.seed)
        with self._lock:
            self._rings[key] = ring
            while len(self._rings) > self.max_cached_rings:
                self._rings.popitem(last=False)
        return ring

    def _index(self, hash_key: str, shard_count: int) -> int:
        ring = self.ring_for([(str(i), 1) for i in range(shard_count)])
        return int(ring.get_shard(hash_key))

    def _owner(self, hash_key: str, shard_set: ShardSet) -> str:
        return self.ring_for(shard_set.pairs()).get_shard(hash_key)

    def __repr__(self) -> str:
        return f"RingRouter(seed={self.seed}, virtual_nodes_per_weight={self.virtual_nodes_per_weight})"


ALGORITHMS: Dict[str, Type[HashRouter]] = {
    ModuloRouter.name: ModuloRouter,
    RingRouter.name: RingRouter,
    JumpHashRouter.name: JumpHashRouter,
}


def make_router(algorithm: str, seed: int = 0, virtual_nodes_per_weight: int = 128) -> HashRouter:
    try:
        cls = ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(f"unknown sharding algorithm {algorithm!r}, expected one of {sorted(ALGORITHMS)}") from None
    if cls is RingRouter:
        return RingRouter(seed=seed, virtual_nodes_per_weight=virtual_nodes_per_weight)
    return cls(seed=seed)
