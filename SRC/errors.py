
"""Error kinds raised by the shard router."""
from __future__ import annotations


class ShardRouterError(Exception):
    """Base class for router errors."""


class InvalidLabelSet(ShardRouterError, ValueError):
    """Malformed target input. Rejected at ingestion, existing targets untouched."""

    def __init__(self, target_id: str, reason: str):
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"invalid label set for target {target_id!r}: {reason}")


class EmptyShardSet(ShardRouterError):
    """No shard to route to. The last committed assignment is kept."""


class RouterComputationError(ShardRouterError):
    """Transient routing failure; retried with backoff."""


class ConfigError(ShardRouterError, ValueError):
    pass
