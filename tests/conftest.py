# tests/conftest.py
"""Shared pytest fixtures for uasession tests.

FakeEngine is an in-memory ProtocolEngine: an address space of values,
browse pages and canned results that tests fill in, plus a call log.
Components are tested through a real SessionManager wired to it.
"""

import itertools
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio
from asyncua import ua

from config.config_loader import ClientConfig
from uasession.protocols.engine import Endpoint, ProtocolEngine, SessionHandle
from uasession.protocols.services import (
    GOOD,
    BrowsePathResult,
    BrowseResult,
    CallMethodResult,
    DataValue,
    ExpandedNodeRef,
    MonitoredItemResult,
    ReferenceDescription,
    to_node_id,
)
from uasession.session.manager import SessionManager

TEST_NAMESPACES = ["http://opcfoundation.org/UA/", "urn:test:server"]


def make_ref(
    node,
    name: str | None = None,
    node_class: ua.NodeClass = ua.NodeClass.Variable,
    namespace_uri: str | None = None,
    server_index: int = 0,
) -> ReferenceDescription:
    """Reference description pointing at ``node``."""
    node_id = to_node_id(node)
    name = name or str(node_id.Identifier)
    return ReferenceDescription(
        node_id=ExpandedNodeRef(node_id, namespace_uri, server_index),
        browse_name=ua.QualifiedName(Name=name, NamespaceIndex=node_id.NamespaceIndex),
        display_name=name,
        node_class=node_class,
    )


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine(ProtocolEngine):
    """In-memory engine.

    Attributes:
        calls: (service name, args) for every call, in order
        values: (node id string, attribute id) -> DataValue
        pages: node id string -> list of reference pages (first page from
            browse, the rest through browse_next)
        browse_status: node id string -> status returned by browse
        no_continuation_points: node id strings answered
            BadNoContinuationPoints once
        null_handles: node id strings whose registration returns a null handle
        translate_results: BrowsePathResults returned by translate_browse_paths
        write_status: node id string -> status returned by write
        call_results: CallMethodResults returned by call
        reject_items: node id strings create_monitored_items rejects
        reconnect_mode: "resume" keeps the session id, "new" issues a new one,
            an exception instance is raised
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.endpoints: list[Endpoint] = [Endpoint("opc.tcp://test:4840/")]
        self.keepalive_interval = 5.0
        self.listener = None
        self.open_sessions: dict[str, SessionHandle] = {}
        self.closed_sessions: list[str] = []

        self.values: dict[tuple[str, int], DataValue] = {}
        self.pages: dict[str, list[list[ReferenceDescription]]] = {}
        self.browse_status: dict[str, int] = {}
        self.no_continuation_points: set[str] = set()
        self.null_handles: set[str] = set()
        self.registered: dict[str, str] = {}
        self.translate_results: list[BrowsePathResult] = []
        self.write_status: dict[str, int] = {}
        self.written: dict[str, object] = {}
        self.call_results: list[CallMethodResult] = []
        self.reject_items: set[str] = set()
        self.reconnect_mode = "new"

        self.subscriptions: dict[int, object] = {}
        self.monitored: dict[int, dict[int, object]] = {}
        self.faults: dict[str, Exception] = {}

        self._session_ids = itertools.count(1)
        self._handles = itertools.count(1000)
        self._subscription_ids = itertools.count(1)
        self._item_ids = itertools.count(500)

    # ------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        fault = self.faults.pop(name, None)
        if fault is not None:
            raise fault

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def fail_next(self, name: str, error: Exception) -> None:
        self.faults[name] = error

    def set_value(self, node, value, attribute=ua.AttributeIds.Value, status=GOOD) -> None:
        self.values[(to_node_id(node).to_string(), attribute)] = DataValue(value, status)

    def _new_handle(self) -> SessionHandle:
        handle = SessionHandle(
            session_id=f"session-{next(self._session_ids)}",
            keepalive_interval=self.keepalive_interval,
            session_timeout=60.0,
            namespace_uris=list(TEST_NAMESPACES),
        )
        self.open_sessions[handle.session_id] = handle
        return handle

    async def notify(self, subscription_id: int, client_handle: int, value: DataValue) -> None:
        """Deliver a data change as the engine would."""
        await self.subscriptions[subscription_id](client_handle, value)

    # ------------------------------------------------------------
    # discovery and sessions
    # ------------------------------------------------------------

    async def get_endpoints(self, url):
        self._record("get_endpoints", url)
        return list(self.endpoints)

    async def open_session(self, endpoint, identity, session_name, timeout, listener):
        self._record("open_session", endpoint, identity, session_name, timeout)
        self.listener = listener
        return self._new_handle()

    async def close_session(self, handle, timeout):
        self._record("close_session", handle.session_id)
        self.open_sessions.pop(handle.session_id, None)
        self.closed_sessions.append(handle.session_id)

    async def reconnect(self, handle, timeout):
        self._record("reconnect", handle.session_id)
        if isinstance(self.reconnect_mode, Exception):
            raise self.reconnect_mode
        if self.reconnect_mode == "resume":
            return handle
        self.open_sessions.pop(handle.session_id, None)
        return self._new_handle()

    # ------------------------------------------------------------
    # node management
    # ------------------------------------------------------------

    async def register_nodes(self, handle, nodes):
        self._record("register_nodes", handle.session_id, list(nodes))
        handles = []
        for node in nodes:
            key = node.to_string()
            if key in self.null_handles:
                handles.append(ua.NodeId())
            else:
                issued = ua.NodeId(next(self._handles), 9)
                self.registered[issued.to_string()] = key
                handles.append(issued)
        return handles

    async def unregister_nodes(self, handle, nodes):
        self._record("unregister_nodes", handle.session_id, list(nodes))
        for node in nodes:
            self.registered.pop(node.to_string(), None)

    # ------------------------------------------------------------
    # view services
    # ------------------------------------------------------------

    def _page(self, key: str, index: int) -> BrowseResult:
        pages = self.pages.get(key, [[]])
        more = index + 1 < len(pages)
        return BrowseResult(
            status_code=GOOD,
            continuation_point=f"{key}|{index + 1}".encode() if more else None,
            references=list(pages[index]),
        )

    async def browse(self, handle, descriptions, max_references_per_node):
        self._record("browse", handle.session_id, list(descriptions))
        results = []
        for description in descriptions:
            key = description.node_id.to_string()
            if key in self.no_continuation_points:
                self.no_continuation_points.discard(key)
                results.append(BrowseResult(status_code=ua.StatusCodes.BadNoContinuationPoints))
            elif key in self.browse_status:
                results.append(BrowseResult(status_code=self.browse_status[key]))
            else:
                results.append(self._page(key, 0))
        return results

    async def browse_next(self, handle, continuation_points, release=False):
        self._record("browse_next", handle.session_id, list(continuation_points), release)
        if release:
            return [BrowseResult() for _ in continuation_points]
        results = []
        for point in continuation_points:
            key, index = point.decode().rsplit("|", 1)
            results.append(self._page(key, int(index)))
        return results

    async def translate_browse_paths(self, handle, paths):
        self._record("translate_browse_paths", handle.session_id, list(paths))
        return list(self.translate_results)

    # ------------------------------------------------------------
    # attribute and method services
    # ------------------------------------------------------------

    async def read(self, handle, nodes):
        self._record("read", handle.session_id, list(nodes))
        results = []
        for node in nodes:
            key = node.node_id.to_string()
            key = self.registered.get(key, key)
            value = self.values.get((key, node.attribute_id))
            results.append(value if value is not None else DataValue(None, ua.StatusCodes.BadNodeIdUnknown))
        return results

    async def write(self, handle, values):
        self._record("write", handle.session_id, list(values))
        statuses = []
        for value in values:
            key = value.node_id.to_string()
            key = self.registered.get(key, key)
            status = self.write_status.get(key, GOOD)
            if status == GOOD:
                self.written[key] = value.value.value
            statuses.append(status)
        return statuses

    async def call(self, handle, requests):
        self._record("call", handle.session_id, list(requests))
        return list(self.call_results)

    # ------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------

    async def create_subscription(self, handle, publishing_interval, publishing_enabled, callback):
        self._record("create_subscription", handle.session_id, publishing_interval, publishing_enabled)
        subscription_id = next(self._subscription_ids)
        self.subscriptions[subscription_id] = callback
        self.monitored[subscription_id] = {}
        return subscription_id

    async def delete_subscription(self, handle, subscription_id):
        self._record("delete_subscription", handle.session_id, subscription_id)
        self.subscriptions.pop(subscription_id, None)
        self.monitored.pop(subscription_id, None)

    async def create_monitored_items(self, handle, subscription_id, items):
        self._record("create_monitored_items", handle.session_id, subscription_id, list(items))
        results = []
        for item in items:
            if item.node_id.to_string() in self.reject_items:
                results.append(MonitoredItemResult(status_code=ua.StatusCodes.BadNodeIdUnknown))
                continue
            monitored_item_id = next(self._item_ids)
            self.monitored[subscription_id][monitored_item_id] = item
            results.append(
                MonitoredItemResult(
                    monitored_item_id=monitored_item_id,
                    revised_sampling_interval=item.sampling_interval,
                    revised_queue_size=item.queue_size,
                )
            )
        return results

    async def delete_monitored_items(self, handle, subscription_id, monitored_item_ids):
        self._record("delete_monitored_items", handle.session_id, subscription_id, list(monitored_item_ids))
        items = self.monitored.get(subscription_id, {})
        statuses = []
        for monitored_item_id in monitored_item_ids:
            if items.pop(monitored_item_id, None) is None:
                statuses.append(ua.StatusCodes.BadMonitoredItemIdInvalid)
            else:
                statuses.append(GOOD)
        return statuses


# ----------------------------------------------------------------
# Configuration fixtures
# ----------------------------------------------------------------
@pytest.fixture
def temp_config_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test configuration files.

    Yields:
        Path to temporary configuration directory
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def client_config() -> ClientConfig:
    """Client configuration with test-friendly reconnect timing."""
    config = ClientConfig(application_name="TestClient")
    config.session.reconnect_period = 30.0
    config.session.keepalive_interval = 5.0
    return config


# ----------------------------------------------------------------
# Engine and manager fixtures
# ----------------------------------------------------------------
@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint("opc.tcp://test:4840/")


@pytest.fixture
def manager(engine, client_config, clock) -> SessionManager:
    """A disconnected manager over the fake engine."""
    return SessionManager(engine, client_config, clock=clock)


@pytest_asyncio.fixture
async def connected_manager(manager, endpoint):
    """A manager with an open session; disconnected on teardown."""
    await manager.connect(endpoint)
    yield manager
    await manager.disconnect()


@pytest.fixture
def reference():
    """Factory for reference descriptions, see make_ref()."""
    return make_ref
