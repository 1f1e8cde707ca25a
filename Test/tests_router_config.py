import pytest

from errors import ConfigError
from router_config import RouterConfig


def test_defaults():
    cfg = RouterConfig()
    assert cfg.label_selector == ()
    assert cfg.target_ttl == 300.0
    assert cfg.rebalance_debounce == 0.25
    assert cfg.sharding_algorithm == 'consistent-ring'


def test_from_mapping_accepts_camel_case():
    cfg = RouterConfig.from_mapping({
        'labelSelector': ['job', 'instance'],
        'targetTTL': '120',
        'rebalanceDebounce': 0.5,
        'shardingAlgorithm': 'jump-hash',
        'virtualNodesPerWeight': 64,
    })
    assert cfg.label_selector == ('job', 'instance')
    assert cfg.target_ttl == 120.0
    assert cfg.rebalance_debounce == 0.5
    assert cfg.sharding_algorithm == 'jump-hash'
    assert cfg.virtual_nodes_per_weight == 64


def test_from_mapping_accepts_snake_case_and_single_label():
    cfg = RouterConfig.from_mapping({'label_selector': '__address__', 'hash_seed': 7})
    assert cfg.label_selector == ('__address__',)
    assert cfg.hash_seed == 7


def test_from_yaml(tmp_path):
    path = tmp_path / 'router.yml'
    path.write_text(
        "shardRouter:\n"
        "  labelSelector: [__address__]\n"
        "  targetTTL: 90\n"
        "  shardingAlgorithm: modulo\n"
    )
    cfg = RouterConfig.from_yaml(str(path))
    assert cfg.label_selector == ('__address__',)
    assert cfg.target_ttl == 90.0
    assert cfg.sharding_algorithm == 'modulo'
    assert cfg.to_dict()['label_selector'] == ['__address__']


def test_from_empty_yaml(tmp_path):
    path = tmp_path / 'empty.yml'
    path.write_text('')
    assert RouterConfig.from_yaml(str(path)) == RouterConfig()


@pytest.mark.parametrize('data', [
    {'shardingAlgorithm': 'rendezvous'},
    {'targetTTL': 0},
    {'targetTTL': 'soon'},
    {'rebalanceDebounce': -1},
    {'labelSelector': ['job', 'job']},
    {'labelSelector': ['']},
    {'retryAttempts': 0},
    {'retryInitialDelay': 2, 'retryMaxDelay': 1},
    {'publisherBacklog': True},
    {'scrapeInterval': '15s'},
    {'targetTTL': float('nan')},
    {'retryMaxDelay': float('inf')},
    {'retryAttempts': 1.7},
    {'retryAttempts': '2.5'},
    {'expireInterval': 0},
])
def test_invalid_config(data):
    with pytest.raises(ConfigError):
        RouterConfig.from_mapping(data)


def test_yaml_top_level_must_be_mapping(tmp_path):
    path = tmp_path / 'list.yml'
    path.write_text('- a\n- b\n')
    with pytest.raises(ConfigError):
        RouterConfig.from_yaml(str(path))


def test_direct_construction_rejects_non_finite_and_fractional():
    with pytest.raises(ConfigError):
        RouterConfig(target_ttl=float('nan'))
    with pytest.raises(ConfigError):
        RouterConfig(retry_attempts=1.7)


def test_expire_interval_defaults_to_half_ttl():
    assert RouterConfig(target_ttl=60).effective_expire_interval() == 30
    cfg = RouterConfig.from_mapping({'expireInterval': '10', 'retryAttempts': 4.0})
    assert cfg.effective_expire_interval() == 10.0
    assert cfg.retry_attempts == 4
    assert RouterConfig.from_mapping({'expireInterval': None}).expire_interval is None
