
"""Wires registry, shard state, router, rebalancer, publisher and worker together.

One ShardRouterService per process is the single authoritative owner of the
assignment. start() and stop() bound its lifetime.
"""
from __future__ import annotations

from typing import Iterable, Optional
import logging

from assignment_publisher import AssignmentPublisher
from hash_router import make_router
from rebalance import RebalanceWorker, Rebalancer
from router_config import RouterConfig
from shard_state import ShardState
from target_registry import TargetRegistry

log = logging.getLogger(__name__)


class ShardRouterService:
    def __init__(self, config: Optional[RouterConfig] = None, shards: Iterable[str] = (),
                 expire_interval: Optional[float] = None):
        self.config = config or RouterConfig()
        cfg = self.config
        self.registry = TargetRegistry(cfg.label_selector, ttl=cfg.target_ttl)
        self.shard_state = ShardState(shards)
        self.router = make_router(cfg.sharding_algorithm, seed=cfg.hash_seed,
                                  virtual_nodes_per_weight=cfg.virtual_nodes_per_weight)
        self.publisher = AssignmentPublisher(backlog=cfg.publisher_backlog)
        self.rebalancer = Rebalancer(self.registry, self.shard_state, self.router, self.publisher,
                                     retry_attempts=cfg.retry_attempts,
                                     retry_initial_delay=cfg.retry_initial_delay,
                                     retry_max_delay=cfg.retry_max_delay)
        if expire_interval is None:
            expire_interval = cfg.effective_expire_interval()
        self.worker = RebalanceWorker(self.rebalancer, debounce=cfg.rebalance_debounce,
                                      expire_interval=expire_interval)

    def start(self) -> "ShardRouterService":
        self.shard_state.open()
        self.shard_state.add_listener(self.worker.notify)
        self.rebalancer.set_dirty_callback(self.worker.notify)
        self.worker.start()
        if not self.shard_state.current().is_empty():
            self.worker.notify()
        log.info("shard router started algorithm=%s shards=%s",
                 self.router.name, list(self.shard_state.current()))
        return self

    def stop(self) -> None:
        self.worker.stop()
        self.rebalancer.set_dirty_callback(None)
        self.rebalancer.close()
        self.shard_state.close()
        self.publisher.close()
        log.info("shard router stopped at version %d", self.rebalancer.assignment.version)

    def __enter__(self) -> "ShardRouterService":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    # inbound notifications

    def add_shard(self, shard_id: str, weight: int = 1):
        return self.shard_state.add_shard(shard_id, weight)

    def remove_shard(self, shard_id: str):
        return self.shard_state.remove_shard(shard_id)

    def upsert_target(self, target_id: str, labels, now: Optional[float] = None):
        return self.registry.upsert(target_id, labels, now)

    def remove_target(self, target_id: str):
        return self.registry.remove(target_id)

    # outbound

    def current(self):
        return self.publisher.current()

    def subscribe(self, after_seq: Optional[int] = None, poll_interval: float = 0.5):
        return self.publisher.subscribe(after_seq, poll_interval)
