
"""Rebalancing.

Plan owner changes between two assignments, and keep the committed assignment
in step with target and shard membership changes. Rebalancer is the only writer
of assignments; every mutation runs behind one lock and commits a complete new
snapshot or nothing.
"""
from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional, Set, Tuple
from collections import Counter
import logging
import threading
import time

from assignment import Assignment, AssignmentDelta
from assignment_publisher import AssignmentPublisher
from errors import EmptyShardSet, RouterComputationError
from hash_router import HashRouter
from shard_state import ShardSet, ShardState
from target_registry import REFRESHED, UPDATED, Target, TargetEvent, TargetRegistry

log = logging.getLogger(__name__)


class RebalancePlanner:
    def plan(self, before: Mapping[str, str], after: Mapping[str, str], version: int = 0) -> AssignmentDelta:
        """Delta of targets whose owner changed, was created, or went away."""
        moved: Dict[str, Tuple[Optional[str], str]] = {}
        for tid, to in after.items():
            frm = before.get(tid)
            if frm != to:
                moved[tid] = (frm, to)
        removed = {tid: frm for tid, frm in before.items() if tid not in after}
        return AssignmentDelta(moved=moved, removed=removed, version=version)

    def stats(self, delta: AssignmentDelta) -> Dict[str, object]:
        by_to = Counter([to for (_, to) in delta.moved.values()])
        by_from = Counter([frm for (frm, _) in delta.moved.values() if frm is not None])
        return {
            "moved_count": len(delta.reassigned()),
            "added_count": len(delta.added()),
            "removed_count": len(delta.removed),
            "by_to": dict(by_to),
            "by_from": dict(by_from),
        }


class _Superseded(Exception):
    """A newer ShardSet arrived while computing."""


class Rebalancer:
    """Sole writer of the assignment.

    Target events only queue the target id; flush() applies the queued ids as a
    single commit, so a discovery burst costs one snapshot copy instead of one
    per target. rebalance() recomputes everything against a new ShardSet.
    """
    check_every = 512

    def __init__(self, registry: TargetRegistry, shard_state: ShardState, router: HashRouter,
                 publisher: Optional[AssignmentPublisher] = None, retry_attempts: int = 3,
                 retry_initial_delay: float = 0.05, retry_max_delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.registry = registry
        self.shard_state = shard_state
        self.router = router
        self.publisher = publisher or AssignmentPublisher()
        self.planner = RebalancePlanner()
        self.retry_attempts = max(1, retry_attempts)
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._lock = threading.RLock()
        self._assignment = Assignment()
        self._shard_set = ShardSet()
        self._pending_lock = threading.Lock()
        self._pending: Set[str] = set()
        self._on_dirty: Optional[Callable[[], None]] = None
        registry.subscribe(self._on_target_event)

    @property
    def assignment(self) -> Assignment:
        return self._assignment

    @property
    def shard_set(self) -> ShardSet:
        """ShardSet the committed assignment was computed against."""
        return self._shard_set

    @property
    def pending(self) -> int:
        return len(self._pending)

    def set_dirty_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_dirty = callback

    def close(self) -> None:
        self.registry.unsubscribe(self._on_target_event)

    def _take_pending(self) -> Set[str]:
        with self._pending_lock:
            pending, self._pending = self._pending, set()
        return pending

    def _requeue(self, ids: Set[str]) -> None:
        with self._pending_lock:
            self._pending |= ids

    def _with_retry(self, fn: Callable[[], object], what: str):
        last: Optional[RouterComputationError] = None
        for attempt in range(self.retry_attempts):
            try:
                return fn()
            except RouterComputationError as e:
                last = e
                if attempt < self.retry_attempts - 1:
                    delay = min(self.retry_initial_delay * (2 ** attempt), self.retry_max_delay)
                    log.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                                what, attempt + 1, self.retry_attempts, delay, e)
                    self._sleep(delay)
        log.error("%s failed after %d attempts, keeping version %d: %s",
                  what, self.retry_attempts, self._assignment.version, last)
        raise last

    def _route_all(self, targets: Mapping[str, Target], shard_set: ShardSet, follow_state: bool) -> Dict[str, str]:
        owners: Dict[str, str] = {}
        for i, (tid, target) in enumerate(targets.items()):
            if follow_state and i % self.check_every == 0 and self.shard_state.current().version != shard_set.version:
                raise _Superseded()
            owners[tid] = self.router.owner(target.hash_key, shard_set)
        return owners

    def _reconcile(self, owners: Dict[str, str], used: Mapping[str, Target],
                   latest: Mapping[str, Target], shard_set: ShardSet) -> Dict[str, str]:
        # targets changed while routing outside the lock
        out: Dict[str, str] = {}
        for tid, target in latest.items():
            prev = used.get(tid)
            if prev is not None and prev.hash_key == target.hash_key:
                out[tid] = owners[tid]
            else:
                out[tid] = self.router.owner(target.hash_key, shard_set)
        return out

    def _route_changes(self, ids: Set[str], shard_set: ShardSet):
        owners = self._assignment.owners
        moved: Dict[str, Tuple[Optional[str], str]] = {}
        removed: Dict[str, str] = {}
        for tid in ids:
            target = self.registry.get(tid)
            current = owners.get(tid)
            if target is None:
                if current is not None:
                    removed[tid] = current
                continue
            to = self.router.owner(target.hash_key, shard_set)
            if to != current:
                moved[tid] = (current, to)
        return moved, removed

    def _commit(self, owners: Mapping[str, str], shard_set: ShardSet, delta: AssignmentDelta) -> AssignmentDelta:
        before = self._assignment
        if delta.is_empty() and before.version == shard_set.version:
            self._shard_set = shard_set
            return delta
        after = Assignment(owners, shard_set.version)
        # committed state changes only after a successful publish
        published = self.publisher.publish(after, delta)
        self._assignment = after
        self._shard_set = shard_set
        return published

    def rebalance(self, shard_set: Optional[ShardSet] = None) -> AssignmentDelta:
        """Recompute every live target and commit. Returns only the changes.

        Without `shard_set`, follows ShardState and restarts if a newer version
        shows up mid-computation. Raises EmptyShardSet or RouterComputationError
        with the previous assignment left in place.
        """
        follow_state = shard_set is None
        while True:
            wanted = self.shard_state.current() if follow_state else shard_set
            if wanted.is_empty():
                log.error("shard set version %d is empty, keeping assignment version %d",
                          wanted.version, self._assignment.version)
                raise EmptyShardSet(f"shard set version {wanted.version} is empty")
            if wanted.version < self._assignment.version:
                log.warning("ignoring stale shard set version %d (committed %d)",
                            wanted.version, self._assignment.version)
                return AssignmentDelta(version=self._assignment.version)
            used = self.registry.snapshot()
            try:
                owners = self._with_retry(lambda: self._route_all(used, wanted, follow_state),
                                          f"rebalance to version {wanted.version}")
            except _Superseded:
                log.warning("shard set moved past version %d, recomputing", wanted.version)
                continue
            with self._lock:
                if follow_state and self.shard_state.current().version != wanted.version:
                    log.warning("shard set moved past version %d, recomputing", wanted.version)
                    continue
                # everything queued so far is already in the latest snapshot
                drained = self._take_pending()
                try:
                    latest = self.registry.snapshot()
                    if latest is not used:
                        owners = self._with_retry(lambda: self._reconcile(owners, used, latest, wanted),
                                                  f"reconcile at version {wanted.version}")
                    delta = self._commit(owners, wanted,
                                         self.planner.plan(self._assignment.owners, owners, wanted.version))
                except Exception:
                    self._requeue(drained)
                    raise
            log.info("rebalanced to version=%d targets=%d changed=%d",
                     wanted.version, len(owners), len(delta))
            return delta

    def flush(self) -> AssignmentDelta:
        """Apply queued target changes as one commit against the committed ShardSet.

        Before the first successful rebalance there is nothing to route against
        and the queue is left alone.
        """
        with self._lock:
            shard_set = self._shard_set
            if shard_set.is_empty():
                return AssignmentDelta(version=self._assignment.version)
            drained = self._take_pending()
            if not drained:
                return AssignmentDelta(version=self._assignment.version)
            try:
                moved, removed = self._with_retry(lambda: self._route_changes(drained, shard_set),
                                                  f"route {len(drained)} changed targets")
                if not moved and not removed:
                    return AssignmentDelta(version=self._assignment.version)
                owners = dict(self._assignment.owners)
                for tid in removed:
                    del owners[tid]
                for tid, (_, to) in moved.items():
                    owners[tid] = to
                delta = self._commit(owners, shard_set,
                                     AssignmentDelta(moved=moved, removed=removed, version=shard_set.version))
            except Exception:
                self._requeue(drained)
                raise
        log.debug("flushed %d target changes at version %d", len(delta), shard_set.version)
        return delta

    def sync(self) -> AssignmentDelta:
        """Full rebalance when shard membership moved, otherwise a flush."""
        if self._shard_set.is_empty() or self.shard_state.current().version != self._shard_set.version:
            return self.rebalance()
        return self.flush()

    def _on_target_event(self, event: TargetEvent) -> None:
        # runs under the registry lock: queue only, never route here
        if event.kind == REFRESHED:
            return
        if event.kind == UPDATED and event.previous is not None \
                and event.previous.hash_key == event.target.hash_key:
            return
        with self._pending_lock:
            self._pending.add(event.target.id)
        self._mark_dirty()

    def _mark_dirty(self) -> None:
        if self._on_dirty is not None:
            self._on_dirty()


class RebalanceWorker:
    """Background thread running debounced rebalances and flushes.

    notify() calls within `debounce` seconds of each other collapse into one
    sync; a steady stream of notifications is still served every `max_wait`
    seconds. With `expire_interval` set the worker also expires stale targets.
    """

    def __init__(self, rebalancer: Rebalancer, debounce: float = 0.25,
                 expire_interval: Optional[float] = None, max_wait: Optional[float] = None):
        self.rebalancer = rebalancer
        self.debounce = debounce
        self.expire_interval = expire_interval
        self.max_wait = max_wait if max_wait is not None else max(debounce * 10, debounce)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._first_request = 0.0
        self._last_request = 0.0
        self._next_expire = 0.0
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    def notify(self, *_args) -> None:
        now = time.monotonic()
        if not self._wake.is_set():
            self._first_request = now
        self._last_request = now
        self._wake.set()

    def start(self) -> "RebalanceWorker":
        if self._thread is not None:
            return self
        self._stop.clear()
        if self.expire_interval:
            self._next_expire = time.monotonic() + self.expire_interval
        self._thread = threading.Thread(target=self._run, name="rebalance-worker", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "RebalanceWorker":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    def _wait_timeout(self) -> Optional[float]:
        if not self.expire_interval:
            return None
        return max(0.0, self._next_expire - time.monotonic())

    def _maybe_expire(self) -> None:
        if self.expire_interval and time.monotonic() >= self._next_expire:
            self._next_expire = time.monotonic() + self.expire_interval
            if self.rebalancer.registry.expire():
                self.notify()

    def _sync(self) -> None:
        self.runs += 1
        try:
            self.rebalancer.sync()
        except EmptyShardSet as e:
            log.warning("rebalance skipped: %s", e)
        except RouterComputationError as e:
            log.error("rebalance failed, assignment version %d kept: %s",
                      self.rebalancer.assignment.version, e)

    def _step(self, woke: bool) -> None:
        self._maybe_expire()
        if not woke:
            return
        # coalesce bursts until the window is quiet or max_wait has passed
        while True:
            deadline = min(self._last_request + self.debounce, self._first_request + self.max_wait)
            remaining = deadline - time.monotonic()
            if remaining <= 0 or self._stop.is_set():
                break
            self._stop.wait(remaining)
        self._wake.clear()
        if not self._stop.is_set():
            self._sync()

    def _run(self) -> None:
        while not self._stop.is_set():
            woke = self._wake.wait(self._wait_timeout())
            if self._stop.is_set():
                return
            try:
                self._step(woke)
            except Exception:
                self.failures += 1
                log.exception("rebalance worker step failed, continuing")
