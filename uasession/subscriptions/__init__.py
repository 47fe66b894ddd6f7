# uasession/subscriptions/__init__.py
from uasession.subscriptions.dispatcher import (
    ManagedSubscription,
    MonitoredItem,
    SubscriptionDispatcher,
)

__all__ = ["SubscriptionDispatcher", "ManagedSubscription", "MonitoredItem"]
