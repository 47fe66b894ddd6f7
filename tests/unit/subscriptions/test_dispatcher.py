# tests/unit/subscriptions/test_dispatcher.py
"""Tests for subscriptions and notification routing.

Test Coverage:
- One subscription per publishing interval
- Routing to per-item handlers and the global node_changed event
- UDT items: decoding and dropping of unstructured payloads
- Creation failures (single and bulk)
- Removal semantics (absent items, tolerated statuses, partial failures, transport errors)
- Subscription lifetime across sessions
"""

import pytest
from asyncua import ua

from uasession.errors import BatchFailure, ServiceFault
from uasession.protocols.codec import EncodingTag
from uasession.protocols.services import DataValue, ExtensionObject
from uasession.state.node_registry import NodeEntry


class Recorder:
    """Collects (item, record) notifications."""

    def __init__(self):
        self.calls = []

    def __call__(self, item, record):
        self.calls.append((item, record))

    @property
    def values(self):
        return [record.value for _, record in self.calls]


# ================================================================
# SUBSCRIPTIONS
# ================================================================
class TestSubscriptions:
    """Test subscription creation and lookup."""

    @pytest.mark.asyncio
    async def test_one_subscription_per_interval(self, connected_manager, engine):
        """Test repeated requests share a subscription.

        WHY: Servers limit the number of subscriptions per session.
        """
        a = await connected_manager.get_subscription(500)
        b = await connected_manager.get_subscription(500.0)
        c = await connected_manager.get_subscription(1000)

        assert a is b
        assert a is not c
        assert engine.count("create_subscription") == 2

    @pytest.mark.asyncio
    async def test_default_interval_from_config(self, connected_manager, client_config):
        """Test the configured publishing interval is the default.

        WHY: Most applications use one interval for everything.
        """
        subscription = await connected_manager.get_subscription()

        assert subscription.publishing_interval == client_config.subscriptions.default_publishing_interval

    @pytest.mark.asyncio
    async def test_delete_subscription(self, connected_manager, engine):
        """Test deletion on the server and locally.

        WHY: Deleted subscriptions must not be handed out again.
        """
        subscription = await connected_manager.get_subscription(500)

        await connected_manager.delete_subscription(subscription)

        assert engine.count("delete_subscription") == 1
        assert connected_manager.subscriptions.get_subscription(500) is None


# ================================================================
# ROUTING
# ================================================================
class TestRouting:
    """Test notification routing."""

    @pytest.mark.asyncio
    async def test_item_handler_receives_record(self, connected_manager, engine):
        """Test a data change reaches the item's handler.

        WHY: This is the core subscription contract.
        """
        handler = Recorder()
        subscription = await connected_manager.get_subscription(500)
        item = await connected_manager.add_monitored_item(subscription, "ns=2;s=Temp", handler)

        await engine.notify(subscription.subscription_id, item.client_handle, DataValue(21.5))

        assert handler.values == [21.5]
        routed_item, record = handler.calls[0]
        assert routed_item is item
        assert record.node_id == ua.NodeId.from_string("ns=2;s=Temp")

    @pytest.mark.asyncio
    async def test_global_notify(self, connected_manager, engine):
        """Test node_changed fires only for items that ask for it.

        WHY: Global observers would otherwise see every private item.
        """
        global_handler = Recorder()
        connected_manager.node_changed.add(global_handler)
        subscription = await connected_manager.get_subscription(500)
        loud = await connected_manager.add_monitored_item(subscription, "ns=2;s=A", global_notify=True)
        quiet = await connected_manager.add_monitored_item(subscription, "ns=2;s=B")

        await engine.notify(subscription.subscription_id, loud.client_handle, DataValue(1))
        await engine.notify(subscription.subscription_id, quiet.client_handle, DataValue(2))

        assert global_handler.values == [1]

    @pytest.mark.asyncio
    async def test_item_changed_sees_raw_values(self, connected_manager, engine):
        """Test item_changed fires for every notification.

        WHY: Diagnostics want the undecoded data value.
        """
        raw = []
        connected_manager.item_changed.add(lambda item, value: raw.append(value))
        subscription = await connected_manager.get_subscription(500)
        item = await connected_manager.add_monitored_item(subscription, "ns=2;s=A")

        await engine.notify(subscription.subscription_id, item.client_handle, DataValue(5))

        assert raw == [DataValue(5)]

    @pytest.mark.asyncio
    async def test_udt_item_decoded(self, connected_manager, engine):
        """Test structured payloads reach handlers decoded.

        WHY: Handlers work with dicts, not encoded bodies.
        """
        handler = Recorder()
        subscription = await connected_manager.get_subscription(500)
        entry = NodeEntry("ns=2;s=Pump", is_udt=True)
        item = await connected_manager.add_monitored_item(subscription, entry, handler)
        body = ExtensionObject(ua.NodeId(5001, 2), EncodingTag.OBJECT, {"Speed": 1.0})

        await engine.notify(subscription.subscription_id, item.client_handle, DataValue(body))

        assert handler.values == [{"Speed": 1.0}]
        assert handler.calls[0][1].entry is entry

    @pytest.mark.asyncio
    async def test_udt_item_drops_plain_value(self, connected_manager, engine):
        """Test a UDT item ignores non-structured payloads.

        WHY: A scalar where a structure is expected means a misconfigured item.
        """
        handler = Recorder()
        subscription = await connected_manager.get_subscription(500)
        item = await connected_manager.add_monitored_item(
            subscription, NodeEntry("ns=2;s=Pump", is_udt=True), handler
        )

        await engine.notify(subscription.subscription_id, item.client_handle, DataValue(3.0))

        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_unknown_client_handle_ignored(self, connected_manager, engine):
        """Test notifications for removed items.

        WHY: In-flight notifications may arrive after removal.
        """
        subscription = await connected_manager.get_subscription(500)

        await engine.notify(subscription.subscription_id, 999, DataValue(1))

    @pytest.mark.asyncio
    async def test_notification_during_creation(self, connected_manager, engine):
        """Test a notification arriving before creation returns is delivered.

        WHY: Servers may publish the initial value before the create response.
        """
        handler = Recorder()
        subscription = await connected_manager.get_subscription(500)
        original = engine.create_monitored_items

        async def create_and_publish(handle, subscription_id, items):
            await engine.notify(subscription_id, items[0].client_handle, DataValue("initial"))
            return await original(handle, subscription_id, items)

        engine.create_monitored_items = create_and_publish

        await connected_manager.add_monitored_item(subscription, "ns=2;s=A", handler)

        assert handler.values == ["initial"]


# ================================================================
# CREATION
# ================================================================
class TestCreation:
    """Test monitored item creation."""

    @pytest.mark.asyncio
    async def test_config_defaults_applied(self, connected_manager, engine, client_config):
        """Test sampling and queue defaults come from the configuration.

        WHY: Applications configure these once.
        """
        item = await connected_manager.add_monitored_item(500.0, "ns=2;s=A")

        assert item.sampling_interval == client_config.subscriptions.default_sampling_interval
        assert item.queue_size == client_config.subscriptions.default_queue_size
        assert item.created

    @pytest.mark.asyncio
    async def test_rejected_item(self, connected_manager, engine):
        """Test a rejected item raises and is not kept.

        WHY: A dead item would never deliver notifications.
        """
        engine.reject_items.add("ns=2;s=Missing")
        subscription = await connected_manager.get_subscription(500)

        with pytest.raises(ServiceFault) as exc_info:
            await connected_manager.add_monitored_item(subscription, "ns=2;s=Missing")

        assert exc_info.value.status_code == ua.StatusCodes.BadNodeIdUnknown
        assert subscription.items == {}

    @pytest.mark.asyncio
    async def test_bulk_partial_failure(self, connected_manager, engine):
        """Test accepted items stay when others are rejected.

        WHY: One bad node id must not cancel the rest of the batch.
        """
        engine.reject_items.add("ns=2;s=Missing")
        subscription = await connected_manager.get_subscription(500)

        with pytest.raises(BatchFailure) as exc_info:
            await connected_manager.add_monitored_items(subscription, ["ns=2;s=A", "ns=2;s=Missing", "ns=2;s=B"])

        assert exc_info.value.keys == ["ns=2;s=Missing"]
        assert sorted(i.node_id.to_string() for i in subscription.items.values()) == ["ns=2;s=A", "ns=2;s=B"]
        assert engine.count("create_monitored_items") == 1


# ================================================================
# REMOVAL
# ================================================================
class TestRemoval:
    """Test monitored item removal."""

    @pytest.mark.asyncio
    async def test_remove_absent_item_is_noop(self, connected_manager, engine):
        """Test removing an item that is not on the subscription.

        WHY: Removal must be idempotent.
        """
        subscription = await connected_manager.get_subscription(500)
        item = connected_manager.subscriptions.create_monitored_item("ns=2;s=A")

        assert await connected_manager.remove_monitored_item(subscription, item) is False
        assert engine.count("delete_monitored_items") == 0

    @pytest.mark.asyncio
    async def test_remove_tolerates_invalid_id(self, connected_manager, engine):
        """Test an item the server already forgot.

        WHY: BadMonitoredItemIdInvalid means the goal is already reached.
        """
        subscription = await connected_manager.get_subscription(500)
        item = await connected_manager.add_monitored_item(subscription, "ns=2;s=A")
        engine.monitored[subscription.subscription_id].clear()

        assert await connected_manager.remove_monitored_item(subscription, item) is True
        assert item not in subscription
        assert not item.created

    @pytest.mark.asyncio
    async def test_bulk_removal_attempts_all(self, connected_manager, engine):
        """Test a failing removal does not stop the others.

        WHY: Cleanup should go as far as it can.
        """
        subscription = await connected_manager.get_subscription(500)
        first, second = await connected_manager.add_monitored_items(subscription, ["ns=2;s=A", "ns=2;s=B"])
        engine.fail_next("delete_monitored_items", ServiceFault(ua.StatusCodes.BadTooManyOperations))

        with pytest.raises(BatchFailure) as exc_info:
            await connected_manager.remove_monitored_items(subscription, [first, second])

        assert exc_info.value.keys == ["ns=2;s=A"]
        assert first in subscription
        assert second not in subscription

    @pytest.mark.asyncio
    async def test_bulk_removal_survives_transport_error(self, connected_manager, engine):
        """Test a socket error on one removal does not stop the others.

        WHY: Transport errors reach the dispatcher as OSError.
        """
        subscription = await connected_manager.get_subscription(500)
        first, second = await connected_manager.add_monitored_items(subscription, ["ns=2;s=A", "ns=2;s=B"])
        engine.fail_next("delete_monitored_items", ConnectionResetError("connection reset by peer"))

        with pytest.raises(BatchFailure) as exc_info:
            await connected_manager.remove_monitored_items(subscription, [first, second])

        assert exc_info.value.keys == ["ns=2;s=A"]
        assert engine.count("delete_monitored_items") == 2
        assert second not in subscription

    @pytest.mark.asyncio
    async def test_remove_by_node(self, connected_manager):
        """Test removal by node across subscriptions.

        WHY: Callers often only know the node they stopped caring about.
        """
        fast = await connected_manager.get_subscription(100)
        slow = await connected_manager.get_subscription(1000)
        await connected_manager.add_monitored_item(fast, "ns=2;s=A")
        await connected_manager.add_monitored_item(slow, "ns=2;s=A")
        await connected_manager.add_monitored_item(slow, "ns=2;s=B")

        removed = await connected_manager.remove_monitored_item_by_node("ns=2;s=A")

        assert removed == 2
        assert [i.node_id.to_string() for i in slow.items.values()] == ["ns=2;s=B"]


# ================================================================
# SESSION LIFETIME
# ================================================================
class TestSessionLifetime:
    """Test subscriptions across disconnects and new sessions."""

    @pytest.mark.asyncio
    async def test_disconnect_forgets_subscriptions(self, connected_manager):
        """Test subscriptions are dropped on disconnect.

        WHY: They died with the server session.
        """
        subscription = await connected_manager.get_subscription(500)
        item = await connected_manager.add_monitored_item(subscription, "ns=2;s=A")

        await connected_manager.disconnect()

        assert connected_manager.subscriptions.subscription_count == 0
        assert not item.created

    @pytest.mark.asyncio
    async def test_new_session_forgets_stale_subscriptions(self, connected_manager, engine):
        """Test a new server session invalidates old subscriptions.

        WHY: Subscription ids are scoped to the session that created them.
        """
        await connected_manager.get_subscription(500)

        engine.reconnect_mode = "new"
        await connected_manager.on_keepalive(connected_manager.session.handle, ua.StatusCodes.BadTimeout)
        await connected_manager._reconnect_task

        assert connected_manager.subscriptions.subscription_count == 0

    @pytest.mark.asyncio
    async def test_resumed_session_keeps_subscriptions(self, connected_manager, engine):
        """Test a resumed session keeps its subscriptions.

        WHY: The server kept them alive.
        """
        subscription = await connected_manager.get_subscription(500)

        engine.reconnect_mode = "resume"
        await connected_manager.on_keepalive(connected_manager.session.handle, ua.StatusCodes.BadTimeout)
        await connected_manager._reconnect_task

        assert connected_manager.subscriptions.get_subscription(500) is subscription
