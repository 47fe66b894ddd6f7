# uasession/subscriptions/dispatcher.py
"""
Subscriptions, monitored items and change notification routing.

One subscription exists per distinct publishing interval. Each incoming
data change is routed to the monitored item's own handlers first and then,
if the item asked for it, to the manager's global ``node_changed`` event.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from asyncua import ua

from uasession.errors import BatchFailure, ServiceFault, UaSessionError
from uasession.events import EventHook
from uasession.protocols.services import (
    DataValue,
    ExtensionObject,
    MonitoredItemRequest,
    check_status,
    is_bad,
    to_node_id,
)
from uasession.security.logging_system import EventCategory, EventSeverity, get_logger
from uasession.state.node_registry import NodeEntry, NodeValueRecord

if TYPE_CHECKING:
    from uasession.session.manager import SessionManager

__all__ = ["MonitoredItem", "ManagedSubscription", "SubscriptionDispatcher"]

logger = get_logger(__name__)

MonitorTarget = str | ua.NodeId | NodeEntry


@dataclass(eq=False)
class MonitoredItem:
    """A node watched by a subscription.

    Attributes:
        node_id: Node being sampled
        entry: Node entry the item was created from, if any
        sampling_interval: Requested sampling interval (ms)
        queue_size: Server-side queue size
        discard_oldest: Drop the oldest queued value when the queue is full
        global_notify: Also raise the manager's ``node_changed`` event
        client_handle: Handle identifying the item in notifications
        monitored_item_id: Server-assigned id, None until created
        notification: Per-item handlers, called as handler(item, record)
    """

    node_id: ua.NodeId
    entry: NodeEntry | None = None
    sampling_interval: float = 1.0
    queue_size: int = 1
    discard_oldest: bool = True
    global_notify: bool = False
    client_handle: int = 0
    monitored_item_id: int | None = None
    notification: EventHook = field(default_factory=lambda: EventHook("monitored_item"))

    @property
    def is_udt(self) -> bool:
        return self.entry is not None and self.entry.is_udt

    @property
    def created(self) -> bool:
        return self.monitored_item_id is not None

    def record_entry(self) -> NodeEntry:
        return self.entry if self.entry is not None else NodeEntry(self.node_id)


@dataclass(eq=False)
class ManagedSubscription:
    publishing_interval: float
    publishing_enabled: bool = True
    subscription_id: int | None = None
    generation: int | None = None
    items: dict[int, MonitoredItem] = field(default_factory=dict)

    def __contains__(self, item: object) -> bool:
        return any(existing is item for existing in self.items.values())

    def find(self, node: str | ua.NodeId) -> list[MonitoredItem]:
        node_id = to_node_id(node)
        return [item for item in self.items.values() if item.node_id == node_id]


class SubscriptionDispatcher:
    """
    Owns subscriptions and fans out their notifications.

    Example:
        >>> subscription = await dispatcher.get_or_create_subscription(500)
        >>> await dispatcher.add_monitored_item(subscription, "ns=2;s=Temperature", on_change)
    """

    def __init__(self, manager: "SessionManager"):
        self._manager = manager
        self._subscriptions: dict[float, ManagedSubscription] = {}
        self._client_handles = itertools.count(1)
        self._lock = asyncio.Lock()

        manager.session_established.add(self.on_session_established)
        manager.clear_node_entries.add(self.on_session_closed)

    @property
    def subscriptions(self) -> list[ManagedSubscription]:
        return list(self._subscriptions.values())

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _call(self, operation, *args):
        return await self._manager.execute(operation, *args, allow_reconnecting=True)

    # ----------------------------------------------------------------
    # Subscriptions
    # ----------------------------------------------------------------

    def get_subscription(self, publishing_interval: float) -> ManagedSubscription | None:
        return self._subscriptions.get(float(publishing_interval))

    async def get_or_create_subscription(
        self, publishing_interval: float, publishing_enabled: bool = True
    ) -> ManagedSubscription:
        """
        Subscription for ``publishing_interval`` (ms), created on first use.

        Creation failures propagate; nothing is retried.
        """
        interval = float(publishing_interval)
        async with self._lock:
            existing = self._subscriptions.get(interval)
            if existing is not None:
                return existing

            subscription = ManagedSubscription(interval, publishing_enabled)
            subscription.subscription_id = await self._call(
                self._manager.engine.create_subscription,
                interval,
                publishing_enabled,
                partial(self._dispatch, subscription),
            )
            subscription.generation = self._manager.generation
            self._subscriptions[interval] = subscription

        await logger.log_event(
            EventSeverity.INFO,
            EventCategory.SUBSCRIPTION,
            f"Created subscription {subscription.subscription_id} at {interval} ms",
        )
        return subscription

    async def delete_subscription(self, subscription: ManagedSubscription) -> None:
        """Delete a subscription and all of its items on the server."""
        if self._subscriptions.get(subscription.publishing_interval) is not subscription:
            return
        await self._call(self._manager.engine.delete_subscription, subscription.subscription_id)
        self._subscriptions.pop(subscription.publishing_interval, None)
        subscription.items.clear()

    # ----------------------------------------------------------------
    # Monitored items
    # ----------------------------------------------------------------

    def create_monitored_item(
        self,
        target: MonitorTarget,
        handler: Callable[..., Any] | None = None,
        sampling_interval: float = 1.0,
        queue_size: int = 1,
        discard_oldest: bool = True,
        global_notify: bool = False,
    ) -> MonitoredItem:
        """Build a monitored item without contacting the server."""
        entry = target if isinstance(target, NodeEntry) else None
        item = MonitoredItem(
            node_id=entry.node_id if entry is not None else to_node_id(target),
            entry=entry,
            sampling_interval=sampling_interval,
            queue_size=queue_size,
            discard_oldest=discard_oldest,
            global_notify=global_notify,
            client_handle=next(self._client_handles),
        )
        if handler is not None:
            item.notification.add(handler)
        return item

    async def add_monitored_item(
        self,
        subscription: ManagedSubscription,
        target: MonitorTarget | MonitoredItem,
        handler: Callable[..., Any] | None = None,
        **params: Any,
    ) -> MonitoredItem:
        """
        Create one monitored item on the server.

        Raises:
            ServiceFault: If the server rejected the item
        """
        if isinstance(target, MonitoredItem):
            item = target
            if handler is not None:
                item.notification.add(handler)
        else:
            item = self.create_monitored_item(target, handler, **params)

        (failure,) = await self._apply(subscription, [item])
        if failure is not None:
            raise failure
        return item

    async def add_monitored_items(
        self,
        subscription: ManagedSubscription,
        targets: Iterable[MonitorTarget | MonitoredItem],
        handler: Callable[..., Any] | None = None,
        **params: Any,
    ) -> list[MonitoredItem]:
        """
        Create several monitored items in a single server call.

        Raises:
            BatchFailure: If the server rejected some items. The accepted
                items remain on the subscription.
        """
        items = [
            target if isinstance(target, MonitoredItem) else self.create_monitored_item(target, handler, **params)
            for target in targets
        ]
        if not items:
            return []

        results = await self._apply(subscription, items)
        failures = [
            (item.node_id.to_string(), error)
            for item, error in zip(items, results)
            if error is not None
        ]
        if failures:
            raise BatchFailure(f"Failed to create {len(failures)} monitored items", failures)
        return items

    async def _apply(
        self, subscription: ManagedSubscription, items: list[MonitoredItem]
    ) -> list[ServiceFault | None]:
        # Items are routable before the call returns; early notifications must not be lost
        for item in items:
            subscription.items[item.client_handle] = item

        requests = [
            MonitoredItemRequest(
                node_id=item.node_id,
                client_handle=item.client_handle,
                sampling_interval=item.sampling_interval,
                queue_size=item.queue_size,
                discard_oldest=item.discard_oldest,
            )
            for item in items
        ]
        try:
            results = await self._call(
                self._manager.engine.create_monitored_items, subscription.subscription_id, requests
            )
        except BaseException:
            for item in items:
                subscription.items.pop(item.client_handle, None)
            raise

        errors: list[ServiceFault | None] = []
        for item, result in zip(items, results):
            if is_bad(result.status_code):
                subscription.items.pop(item.client_handle, None)
                errors.append(ServiceFault(result.status_code, f"Monitoring {item.node_id.to_string()}"))
            else:
                item.monitored_item_id = result.monitored_item_id
                errors.append(None)
        return errors

    async def remove_monitored_item(self, subscription: ManagedSubscription, item: MonitoredItem) -> bool:
        """
        Delete a monitored item from the server.

        Returns:
            False if the item is not on the subscription (nothing to do)
        """
        if item not in subscription:
            return False

        (status,) = await self._call(
            self._manager.engine.delete_monitored_items,
            subscription.subscription_id,
            [item.monitored_item_id],
        )
        if status != ua.StatusCodes.BadMonitoredItemIdInvalid:
            check_status(status, f"Removing monitored item {item.node_id.to_string()}")
        subscription.items.pop(item.client_handle, None)
        item.monitored_item_id = None
        return True

    async def remove_monitored_items(
        self, subscription: ManagedSubscription, items: Iterable[MonitoredItem]
    ) -> int:
        """
        Remove items one by one; a failure does not stop the others.

        Raises:
            BatchFailure: After all items were attempted, if any failed
        """
        removed = 0
        failures: list[tuple[str, Exception]] = []
        for item in list(items):
            try:
                if await self.remove_monitored_item(subscription, item):
                    removed += 1
            except (UaSessionError, OSError) as e:
                failures.append((item.node_id.to_string(), e))
        if failures:
            raise BatchFailure(f"Failed to remove {len(failures)} monitored items", failures)
        return removed

    async def remove_monitored_item_by_node(
        self, target: MonitorTarget, publishing_interval: float | None = None
    ) -> int:
        """Remove every item watching ``target``, optionally on one subscription only."""
        node = target.node_id if isinstance(target, NodeEntry) else target
        if publishing_interval is None:
            subscriptions = self.subscriptions
        else:
            subscription = self.get_subscription(publishing_interval)
            subscriptions = [subscription] if subscription is not None else []

        removed = 0
        for subscription in subscriptions:
            removed += await self.remove_monitored_items(subscription, subscription.find(node))
        return removed

    # ----------------------------------------------------------------
    # Notification routing
    # ----------------------------------------------------------------

    async def _dispatch(self, subscription: ManagedSubscription, client_handle: int, value: DataValue) -> None:
        item = subscription.items.get(client_handle)
        if item is None:
            logger.debug(f"Notification for unknown client handle {client_handle}")
            return

        await self._manager.item_changed.fire(item, value)

        payload = value.value
        structured = isinstance(payload, ExtensionObject) or (
            isinstance(payload, list) and any(isinstance(v, ExtensionObject) for v in payload)
        )
        if item.is_udt and not structured:
            logger.error(
                f"Dropping notification for {item.node_id.to_string()}: "
                f"expected a structured value, got {type(payload).__name__}"
            )
            return

        if structured:
            try:
                payload = await self._manager.resolver.decode_value(payload)
            except UaSessionError as e:
                logger.error(f"Dropping notification for {item.node_id.to_string()}: {e}")
                return

        record = NodeValueRecord(
            item.record_entry(),
            payload,
            status_code=value.status_code,
            source_timestamp=value.source_timestamp,
        )
        await item.notification.fire(item, record)
        if item.global_notify:
            await self._manager.node_changed.fire(item, record)

    # ----------------------------------------------------------------
    # Session events
    # ----------------------------------------------------------------

    def on_session_established(self, manager: "SessionManager") -> None:
        """Forget subscriptions that belonged to an earlier server session."""
        stale = [s for s in self._subscriptions.values() if s.generation != manager.generation]
        for subscription in stale:
            logger.warning(
                f"Subscription {subscription.subscription_id} ({subscription.publishing_interval} ms) "
                "did not survive the new session; recreate it"
            )
            self._forget(subscription)

    def on_session_closed(self, *_: Any) -> None:
        for subscription in list(self._subscriptions.values()):
            self._forget(subscription)

    def _forget(self, subscription: ManagedSubscription) -> None:
        self._subscriptions.pop(subscription.publishing_interval, None)
        for item in subscription.items.values():
            item.monitored_item_id = None
        subscription.items.clear()
