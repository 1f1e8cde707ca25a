
"""Registry of known scrape targets and their labels.
Discovery notifications call upsert/remove; a periodic expire() drops targets
unseen for longer than the TTL. Every mutation emits a TargetEvent to the
subscribed listeners (the Rebalancer).
Readers get read-only snapshots, rebuilt lazily after a change.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import threading
import time

from errors import InvalidLabelSet
from hash_router import derive_hash_key

log = logging.getLogger(__name__)

LabelPairs = Tuple[Tuple[str, str], ...]
LabelsInput = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

ADDED = "added"
UPDATED = "updated"
REFRESHED = "refreshed"
REMOVED = "removed"
EXPIRED = "expired"


@dataclass(frozen=True)
class Target:
    id: str
    labels: LabelPairs
    hash_key: str
    last_seen: float

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

    def label(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.labels:
            if k == key:
                return v
        return default


@dataclass(frozen=True)
class TargetEvent:
    kind: str
    target: Target
    previous: Optional[Target] = None


TargetListener = Callable[[TargetEvent], None]


def normalize_labels(target_id: str, labels: LabelsInput) -> LabelPairs:
    items = labels.items() if isinstance(labels, Mapping) else labels
    out: List[Tuple[str, str]] = []
    seen = set()
    for pair in items:
        try:
            k, v = pair
        except (TypeError, ValueError):
            raise InvalidLabelSet(target_id, f"label {pair!r} is not a key/value pair") from None
        if not isinstance(k, str) or not k:
            raise InvalidLabelSet(target_id, "empty label key")
        if k in seen:
            raise InvalidLabelSet(target_id, f"duplicate label key {k!r}")
        seen.add(k)
        out.append((k, "" if v is None else str(v)))
    return tuple(out)


class TargetRegistry:
    def __init__(self, label_selector: Sequence[str] = (), ttl: float = 300.0,
                 clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.label_selector = tuple(label_selector)
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._targets: Dict[str, Target] = {}
        self._snapshot: Optional[Mapping[str, Target]] = None
        self._listeners: List[TargetListener] = []

    def subscribe(self, listener: TargetListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TargetListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: TargetEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def build_target(self, target_id: str, labels: LabelsInput, now: float) -> Target:
        if not isinstance(target_id, str) or not target_id:
            raise InvalidLabelSet(str(target_id), "empty target id")
        pairs = normalize_labels(target_id, labels)
        label_map = dict(pairs)
        hash_key = derive_hash_key(target_id, label_map, self.label_selector)
        if self.label_selector and not any(label_map.get(k) for k in self.label_selector):
            raise InvalidLabelSet(target_id, f"no value for any of {list(self.label_selector)}")
        return Target(id=target_id, labels=pairs, hash_key=hash_key, last_seen=now)

    def _store(self, target: Target) -> None:
        # caller holds the lock
        previous = self._targets.get(target.id)
        if previous is None:
            kind = ADDED
        elif previous.labels == target.labels:
            kind = REFRESHED
        else:
            kind = UPDATED
        self._targets[target.id] = target
        self._snapshot = None
        if kind != REFRESHED:
            log.debug("target %s id=%s hash_key=%s", kind, target.id, target.hash_key)
        self._emit(TargetEvent(kind, target, previous))

    def upsert(self, target_id: str, labels: LabelsInput, now: Optional[float] = None) -> Target:
        now = self._clock() if now is None else now
        target = self.build_target(target_id, labels, now)
        with self._lock:
            self._store(target)
        return target

    def upsert_many(self, items: Iterable[Tuple[str, LabelsInput]], now: Optional[float] = None) -> List[Target]:
        """Upsert a discovery batch. One invalid entry rejects the whole batch."""
        now = self._clock() if now is None else now
        targets = [self.build_target(tid, labels, now) for tid, labels in items]
        with self._lock:
            for target in targets:
                self._store(target)
        log.debug("upserted batch of %d targets", len(targets))
        return targets

    def remove(self, target_id: str) -> Optional[Target]:
        with self._lock:
            target = self._targets.pop(target_id, None)
            if target is None:
                return None
            self._snapshot = None
            log.debug("target removed id=%s", target_id)
            self._emit(TargetEvent(REMOVED, target))
        return target

    def expire(self, now: Optional[float] = None) -> List[Target]:
        now = self._clock() if now is None else now
        with self._lock:
            stale = [t for t in self._targets.values() if now - t.last_seen > self.ttl]
            if not stale:
                return []
            for t in stale:
                del self._targets[t.id]
            self._snapshot = None
            log.info("expired %d targets unseen for more than %.1fs", len(stale), self.ttl)
            for t in stale:
                self._emit(TargetEvent(EXPIRED, t))
        return stale

    def get(self, target_id: str) -> Optional[Target]:
        return self._targets.get(target_id)

    def snapshot(self) -> Mapping[str, Target]:
        """Read-only copy of the live targets; the same object until the next change."""
        snap = self._snapshot
        if snap is not None:
            return snap
        with self._lock:
            if self._snapshot is None:
                self._snapshot = MappingProxyType(dict(self._targets))
            return self._snapshot

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets
