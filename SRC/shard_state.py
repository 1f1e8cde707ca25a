
"""Shard membership as an explicit process-wide state object.

Orchestration notifications (shard added/removed) go through ShardState, which
hands out immutable ShardSet snapshots. Every membership change bumps the
version. The Rebalancer gets a ShardState injected instead of reading globals.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Tuple
import logging
import threading

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShardSet:
    shards: Tuple[str, ...] = ()
    weights: Tuple[int, ...] = ()
    version: int = 0

    def __post_init__(self):
        if not self.weights:
            object.__setattr__(self, "weights", (1,) * len(self.shards))
        if len(self.weights) != len(self.shards):
            raise ValueError("weights must align with shards")
        if len(set(self.shards)) != len(self.shards):
            raise ValueError(f"duplicate shard ids in {self.shards}")

    def __len__(self) -> int:
        return len(self.shards)

    def __iter__(self) -> Iterator[str]:
        return iter(self.shards)

    def __contains__(self, shard_id: object) -> bool:
        return shard_id in self.shards

    def is_empty(self) -> bool:
        return not self.shards

    def weight(self, shard_id: str) -> int:
        return self.weights[self.shards.index(shard_id)]

    def pairs(self) -> List[Tuple[str, int]]:
        return list(zip(self.shards, self.weights))


ShardListener = Callable[[ShardSet], None]


class ShardState:
    def __init__(self, shards: Iterable[str] = ()):
        self._lock = threading.RLock()
        self._listeners: List[ShardListener] = []
        self._current = ShardSet(tuple(shards))
        self._open = False

    def open(self) -> "ShardState":
        with self._lock:
            self._open = True
        log.debug("shard state open version=%d shards=%s", self._current.version, list(self._current))
        return self

    def close(self) -> None:
        with self._lock:
            self._open = False
            self._listeners.clear()
        log.debug("shard state closed")

    def __enter__(self) -> "ShardState":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return not self._open

    def current(self) -> ShardSet:
        return self._current

    def add_listener(self, listener: ShardListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ShardListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _commit(self, shards: Tuple[str, ...], weights: Tuple[int, ...]) -> ShardSet:
        if not self._open:
            raise RuntimeError("ShardState is not open")
        new = ShardSet(shards, weights, self._current.version + 1)
        self._current = new
        log.info("shard set version=%d shards=%s", new.version, list(new.shards))
        for listener in list(self._listeners):
            listener(new)
        return new

    def add_shard(self, shard_id: str, weight: int = 1) -> ShardSet:
        if not shard_id:
            raise ValueError("shard id must be non-empty")
        if weight < 1:
            raise ValueError(f"shard weight must be >= 1, got {weight}")
        with self._lock:
            cur = self._current
            if shard_id in cur:
                raise ValueError(f"Shard {shard_id} already exists")
            return self._commit(cur.shards + (shard_id,), cur.weights + (weight,))

    def remove_shard(self, shard_id: str) -> Optional[ShardSet]:
        """Drop a shard. Returns None when it was not a member."""
        with self._lock:
            cur = self._current
            if shard_id not in cur:
                return None
            keep = [(s, w) for s, w in cur.pairs() if s != shard_id]
            return self._commit(tuple(s for s, _ in keep), tuple(w for _, w in keep))

    def replace(self, shards: Iterable[str]) -> ShardSet:
        new_shards = tuple(shards)
        with self._lock:
            cur = self._current
            if new_shards == cur.shards:
                return cur
            weights = tuple(cur.weight(s) if s in cur else 1 for s in new_shards)
            return self._commit(new_shards, weights)
