
"""Router configuration: defaults, validation, mapping and YAML loading.

Recognised keys (camelCase or snake_case):
  labelSelector       label keys whose values form the HashKey
  targetTTL           seconds a target may go unseen before it is expired
  rebalanceDebounce   coalescing window for rebalance requests, seconds
  shardingAlgorithm   modulo | consistent-ring | jump-hash
  expireInterval      seconds between expiry sweeps, defaults to targetTTL / 2
"""
from __future__ import annotations

from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Mapping, Optional, Tuple
import logging
import math
import re

import yaml

from errors import ConfigError
from hash_router import ALGORITHMS

log = logging.getLogger(__name__)

_FLOAT_FIELDS = ("target_ttl", "rebalance_debounce", "retry_initial_delay", "retry_max_delay", "expire_interval")
_INT_FIELDS = ("hash_seed", "virtual_nodes_per_weight", "retry_attempts", "publisher_backlog")


@dataclass(frozen=True)
class RouterConfig:
    label_selector: Tuple[str, ...] = ()
    target_ttl: float = 300.0
    rebalance_debounce: float = 0.25
    sharding_algorithm: str = "consistent-ring"
    hash_seed: int = 0
    virtual_nodes_per_weight: int = 128
    retry_attempts: int = 3
    retry_initial_delay: float = 0.05
    retry_max_delay: float = 1.0
    publisher_backlog: int = 1024
    expire_interval: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.label_selector, str):
            object.__setattr__(self, "label_selector", (self.label_selector,))
        else:
            object.__setattr__(self, "label_selector", tuple(self.label_selector))
        if any(not isinstance(k, str) or not k for k in self.label_selector):
            raise ConfigError(f"labelSelector entries must be non-empty strings: {list(self.label_selector)}")
        if len(set(self.label_selector)) != len(self.label_selector):
            raise ConfigError(f"labelSelector has duplicate keys: {list(self.label_selector)}")
        for name in _FLOAT_FIELDS:
            value = getattr(self, name)
            if value is None and name == "expire_interval":
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ConfigError(f"{name} must be a finite number, got {value!r}")
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
        if self.sharding_algorithm not in ALGORITHMS:
            raise ConfigError(f"shardingAlgorithm must be one of {sorted(ALGORITHMS)}, got {self.sharding_algorithm!r}")
        if self.target_ttl <= 0:
            raise ConfigError(f"targetTTL must be positive, got {self.target_ttl}")
        if self.rebalance_debounce < 0:
            raise ConfigError(f"rebalanceDebounce must be >= 0, got {self.rebalance_debounce}")
        if self.virtual_nodes_per_weight < 1:
            raise ConfigError("virtualNodesPerWeight must be >= 1")
        if self.retry_attempts < 1:
            raise ConfigError("retryAttempts must be >= 1")
        if self.retry_initial_delay < 0 or self.retry_max_delay < self.retry_initial_delay:
            raise ConfigError("retry delays must satisfy 0 <= retryInitialDelay <= retryMaxDelay")
        if self.publisher_backlog < 1:
            raise ConfigError("publisherBacklog must be >= 1")
        if self.expire_interval is not None and self.expire_interval <= 0:
            raise ConfigError(f"expireInterval must be positive, got {self.expire_interval}")

    def effective_expire_interval(self) -> float:
        if self.expire_interval is not None:
            return self.expire_interval
        return self.target_ttl / 2

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RouterConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for raw_key, value in (data or {}).items():
            key = _snake(raw_key)
            if key not in known:
                raise ConfigError(f"unknown config option {raw_key!r}")
            kwargs[key] = _coerce(key, known[key].type, value)
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str) -> "RouterConfig":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, Mapping):
            raise ConfigError(f"{path}: top level must be a mapping")
        section = data.get("shardRouter", data.get("shard_router", data))
        cfg = cls.from_mapping(section)
        log.info("loaded config from %s algorithm=%s selector=%s", path, cfg.sharding_algorithm, list(cfg.label_selector))
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["label_selector"] = list(self.label_selector)
        return d


def _snake(key: str) -> str:
    key = key.replace("-", "_")
    key = re.sub(r"TTL$", "Ttl", key)
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def _coerce(key: str, type_name: Any, value: Any) -> Any:
    type_name = str(type_name)
    if type_name.startswith("Optional["):
        if value is None:
            return None
        type_name = type_name[len("Optional["):-1]
    try:
        if type_name.startswith("Tuple"):
            if value is None:
                return ()
            return (value,) if isinstance(value, str) else tuple(value)
        if isinstance(value, bool):
            raise TypeError("booleans are not numbers")
        if type_name == "float":
            return float(value)
        if type_name == "int":
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("not a whole number")
            return int(value)
        return str(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ConfigError(f"bad value for {key}: {value!r} ({e})") from None
