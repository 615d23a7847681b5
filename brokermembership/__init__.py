"""
brokermembership - broker cluster membership on top of ZooKeeper.

Brokers announce their identity and connection metadata as ephemeral
entries under /brokers/ids, discover each other, and receive a membership
snapshot every time a broker joins or leaves.
"""

__version__ = "0.1.0"

from brokermembership.broker.record import BrokerRecord
from brokermembership.coordination.client import CoordinationClient
from brokermembership.errors import (
    BrokerNotFound,
    CoordinationConnectionError,
    CoordinationRequestError,
    DuplicateBrokerId,
    MalformedRecord,
    MembershipError,
    SessionExpired,
)
from brokermembership.membership.notifier import MembershipSnapshot
from brokermembership.membership.registry import BROKER_IDS_PATH, MembershipRegistry
from brokermembership.membership.subscription import SubscriptionState

__all__ = [
    "BROKER_IDS_PATH",
    "BrokerNotFound",
    "BrokerRecord",
    "CoordinationClient",
    "CoordinationConnectionError",
    "CoordinationRequestError",
    "DuplicateBrokerId",
    "MalformedRecord",
    "MembershipError",
    "MembershipRegistry",
    "MembershipSnapshot",
    "SessionExpired",
    "SubscriptionState",
]
