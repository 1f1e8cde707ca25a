
"""Read side of the router: the committed assignment and a stream of deltas.

current() is a plain reference read of an immutable snapshot. subscribe() yields
deltas from a bounded backlog; consumers resume by passing the last seq they
processed. Delivery is at-least-once, so consumers apply deltas idempotently
keyed on target id + seq.
"""
from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Deque, Iterator, List, Mapping, Optional, Tuple
import logging
import threading

from assignment import Assignment, AssignmentDelta

log = logging.getLogger(__name__)


class AssignmentPublisher:
    def __init__(self, backlog: int = 1024):
        if backlog < 1:
            raise ValueError(f"backlog must be >= 1, got {backlog}")
        self._assignment = Assignment()
        self._cond = threading.Condition()
        self._backlog: Deque[AssignmentDelta] = deque(maxlen=backlog)
        self._seq = 0
        self._closed = False

    def current(self) -> Tuple[Mapping[str, str], int]:
        a = self._assignment
        return a.owners, a.version

    def assignment(self) -> Assignment:
        return self._assignment

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, assignment: Assignment, delta: AssignmentDelta) -> AssignmentDelta:
        with self._cond:
            if self._closed:
                raise RuntimeError("publisher is closed")
            self._seq += 1
            delta = replace(delta, seq=self._seq, version=assignment.version)
            self._backlog.append(delta)
            self._assignment = assignment
            self._cond.notify_all()
        log.debug("published seq=%d version=%d changes=%d", delta.seq, delta.version, len(delta))
        return delta

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _resync(self) -> AssignmentDelta:
        a = self._assignment
        return AssignmentDelta(moved={t: (None, s) for t, s in a.owners.items()},
                               version=a.version, seq=self._seq, resync=True)

    def _pending(self, after_seq: Optional[int]) -> List[AssignmentDelta]:
        if after_seq is None or after_seq > self._seq:
            return [self._resync()]
        oldest = self._backlog[0].seq if self._backlog else self._seq + 1
        if after_seq < oldest - 1:
            log.warning("subscriber at seq=%d fell behind backlog (oldest=%d), resyncing", after_seq, oldest)
            return [self._resync()]
        return [d for d in self._backlog if d.seq > after_seq]

    def subscribe(self, after_seq: Optional[int] = None, poll_interval: float = 0.5) -> Iterator[AssignmentDelta]:
        """Yield deltas after `after_seq` forever, until the publisher is closed.

        Without `after_seq` the stream starts with a resync of the current
        assignment. A cursor that fell out of the backlog also gets a resync.
        """
        cursor = after_seq
        while True:
            with self._cond:
                batch = self._pending(cursor)
                while not batch:
                    if self._closed:
                        return
                    self._cond.wait(poll_interval)
                    batch = self._pending(cursor)
            for delta in batch:
                cursor = delta.seq
                yield delta
