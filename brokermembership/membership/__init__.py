"""Membership registry, change notifier and children subscription."""

from brokermembership.membership.notifier import ChangeNotifier, MembershipSnapshot
from brokermembership.membership.registry import MembershipRegistry
from brokermembership.membership.subscription import ChildrenSubscription, SubscriptionState

__all__ = [
    "ChangeNotifier",
    "ChildrenSubscription",
    "MembershipRegistry",
    "MembershipSnapshot",
    "SubscriptionState",
]
