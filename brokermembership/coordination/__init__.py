"""ZooKeeper session adapter and transient-failure retry."""

from brokermembership.coordination.client import CoordinationClient
from brokermembership.coordination.retry import RetryConfig, RetryManager

__all__ = ["CoordinationClient", "RetryConfig", "RetryManager"]
