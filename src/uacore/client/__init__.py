"""Client side sessions, subscriptions and monitored items."""

from uacore.client.client import UAClient
from uacore.client.monitored_item import MonitoredItem
from uacore.client.session import BrowseResult, Session
from uacore.client.subscription import Subscription, SubscriptionState

__all__ = [
    "BrowseResult",
    "MonitoredItem",
    "Session",
    "Subscription",
    "SubscriptionState",
    "UAClient",
]
