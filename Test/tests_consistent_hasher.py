import pytest

from consistent_hash_ring import ConsistentHasher, key_hash


def test_single_shard_owns_everything():
    ring = ConsistentHasher([('prom-a', 1)], virtual_nodes_per_weight=128, seed=42)
    assert ring.get_shard('10.0.0.1:9100') == 'prom-a'
    assert ring.get_shard('node-exporter-7') == 'prom-a'
    assert ring.get_shard('job=api;instance=x') == 'prom-a'


def test_empty_ring_has_no_owner():
    assert ConsistentHasher().get_shard('anything') is None


def test_spread_across_shards():
    ring = ConsistentHasher([('prom-a', 1), ('prom-b', 1), ('prom-c', 1)], seed=42)
    owners = {ring.get_shard(f'k{i}') for i in range(50)}
    assert owners == {'prom-a', 'prom-b', 'prom-c'}


def test_elasticity_on_join():
    keys = [f'key-{i}' for i in range(2000)]
    before = ConsistentHasher([('a', 1), ('b', 1), ('c', 1)], seed=42)
    after = ConsistentHasher([('a', 1), ('b', 1), ('c', 1), ('d', 1)], seed=42)

    moved = [(before.get_shard(k), after.get_shard(k)) for k in keys
             if before.get_shard(k) != after.get_shard(k)]
    assert all(a == 'd' for _, a in moved)
    assert len(moved) / len(keys) < 0.25 + 0.08


def test_duplicate_shard_rejected():
    with pytest.raises(ValueError):
        ConsistentHasher([('a', 1), ('a', 2)])


def test_weight_scales_tokens():
    ring = ConsistentHasher([('small', 1), ('big', 3)], virtual_nodes_per_weight=16)
    assert ring.stats() == {"shards": 2, "tokens": 64, "vn_per_weight": 16}
    assert len(ring) == 2


def test_same_seed_same_placement_regardless_of_order():
    r1 = ConsistentHasher([('a', 1), ('b', 1), ('c', 1)], seed=7)
    r2 = ConsistentHasher([('c', 1), ('a', 1), ('b', 1)], seed=7)
    keys = [f'k{i}' for i in range(300)]
    assert [r1.get_shard(k) for k in keys] == [r2.get_shard(k) for k in keys]
    assert key_hash('x', 7) == key_hash('x', 7)
    assert key_hash('x', 7) != key_hash('x', 8)
