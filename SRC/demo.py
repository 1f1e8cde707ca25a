import logging
import tempfile

from errors import EmptyShardSet
from file_sd import FileSDWriter
from hash_router import make_router
from rebalance import Rebalancer
from router_config import RouterConfig
from shard_state import ShardSet, ShardState
from target_registry import TargetRegistry

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

cfg = RouterConfig(label_selector=("__address__",), sharding_algorithm="consistent-ring", hash_seed=2025)

# 1) Wire the components by hand
registry = TargetRegistry(cfg.label_selector, ttl=cfg.target_ttl)
state = ShardState(["prom-a", "prom-b", "prom-c"]).open()
rebalancer = Rebalancer(registry, state, make_router(cfg.sharding_algorithm, seed=cfg.hash_seed))

registry.upsert_many((f"node-exporter-{i}", {"__address__": f"10.0.{i // 50}.{i % 50}:9100", "job": "node"})
                     for i in range(100))

delta = rebalancer.rebalance()
print('Initial assignment:', rebalancer.planner.stats(delta))

# 2) Scale out: one more shard, only its share of targets moves
state.add_shard("prom-d")
delta = rebalancer.rebalance()
print('After adding prom-d:', rebalancer.planner.stats(delta))

# 3) Discovery churn is batched: queued target changes land in one commit
registry.remove("node-exporter-0")
registry.upsert("node-exporter-100", {"__address__": "10.0.9.9:9100", "job": "node"})
print('Flushed target changes:', rebalancer.planner.stats(rebalancer.flush()))

# 4) An empty shard set never clears the committed assignment
try:
    rebalancer.rebalance(ShardSet(version=state.current().version + 1))
except EmptyShardSet as e:
    print('Rejected:', e)
owners, version = rebalancer.publisher.current()
print(f'Committed version {version}, {len(owners)} targets')

# 5) File SD output for each scraper
out_dir = tempfile.mkdtemp(prefix="file-sd-")
paths = FileSDWriter(out_dir).write(rebalancer.assignment, registry.snapshot(), list(state.current()))
for shard, path in sorted(paths.items()):
    print(shard, '->', path)

state.close()
