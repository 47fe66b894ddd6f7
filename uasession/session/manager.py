# uasession/session/manager.py
"""
Session manager: connection lifecycle, reconnection and service surface.

The manager owns the one live server session, the connection state machine

    DISCONNECTED -> CONNECTING -> CONNECTED <-> RECONNECTING -> DISCONNECTED

and the session-scoped components (registry, resolver, paginator,
dispatcher). Every service call goes through execute(), which checks the
connection state and disconnects on session-identity faults.

Keepalive handling:
- good keepalive while RECONNECTING: back to CONNECTED
- bad keepalive: start (or continue) a reconnect cycle; one reconnect
  attempt in flight at a time, plus a liveness task that re-enters the
  cycle when keepalives stop arriving for twice the keepalive interval
- reconnect_period elapsed: give up, disconnect, raise session_lost
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from asyncua import ua

from uasession.browse.paginator import BrowsePaginator
from uasession.datatypes.descriptors import TypeDescriptor
from uasession.datatypes.resolver import TypeDescriptorResolver
from uasession.errors import (
    BatchFailure,
    ConfigurationError,
    NoActiveSession,
    ServiceFault,
    SessionLost,
    TypeResolutionError,
    UaSessionError,
    status_name,
)
from uasession.events import EventHook
from uasession.protocols.codec import EncodingTag
from uasession.protocols.engine import (
    Endpoint,
    EngineListener,
    ProtocolEngine,
    SessionHandle,
    UserIdentity,
    UserTokenType,
)
from uasession.protocols.services import (
    GOOD,
    BrowseDescription,
    CallMethodRequest,
    DataValue,
    ExtensionObject,
    ReadValueId,
    ReferenceDescription,
    WriteValue,
    check_status,
    is_bad,
    is_good,
    to_node_id,
)
from uasession.security.certificates import CertificateInfo, CertificateValidationRequest
from uasession.security.logging_system import (
    EventCategory,
    EventSeverity,
    LogEntry,
    configure_logging,
    get_logger,
)
from uasession.session.methods import MethodArguments, MethodCaller
from uasession.state.connection_state import ConnectionState, ConnectionStatusChange, Session
from uasession.state.node_registry import (
    NodeEntry,
    NodeEntryCollection,
    NodeIdentifier,
    NodeIdRegistry,
    NodeValueRecord,
)
from uasession.subscriptions.dispatcher import (
    ManagedSubscription,
    MonitoredItem,
    SubscriptionDispatcher,
)

if TYPE_CHECKING:
    from config.config_loader import ClientConfig

__all__ = ["SessionManager", "DISCONNECT_STATUS_CODES"]

# Service faults meaning the server session is gone
DISCONNECT_STATUS_CODES = frozenset(
    {
        ua.StatusCodes.BadSessionIdInvalid,
        ua.StatusCodes.BadSecureChannelClosed,
        ua.StatusCodes.BadSessionClosed,
    }
)

# Attributes returned by read_node()
NODE_ATTRIBUTES = (
    ("node_class", ua.AttributeIds.NodeClass),
    ("browse_name", ua.AttributeIds.BrowseName),
    ("display_name", ua.AttributeIds.DisplayName),
    ("description", ua.AttributeIds.Description),
)


class SessionManager(EngineListener):
    """
    Managed client session.

    Example:
        >>> manager = SessionManager(AsyncuaEngine(), ClientConfig.load())
        >>> await manager.connect(Endpoint("opc.tcp://localhost:4840/"))
        >>> await manager.read_value("ns=2;s=Temperature")
        21.5
        >>> await manager.disconnect()
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        config: ClientConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.config = config
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._session: Session | None = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._closing = False

        # Last endpoint/identity, for reconnect()
        self._endpoint: Endpoint | None = None
        self._identity: UserIdentity | None = None

        # Reconnect cycle
        self._disconnection_time: float | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._liveness_task: asyncio.Task | None = None

        # Events
        self.connection_status_changed = EventHook("connection_status_changed")
        self.keepalive = EventHook("keepalive")
        self.certificate_validation = EventHook("certificate_validation")
        self.session_established = EventHook("session_established")
        self.session_lost = EventHook("session_lost")
        self.clear_node_entries = EventHook("clear_node_entries")
        self.item_changed = EventHook("item_changed")
        self.node_changed = EventHook("node_changed")

        # Session-scoped components; they subscribe to the events above
        self.registry = NodeIdRegistry(self)
        self.resolver = TypeDescriptorResolver(self)
        self.paginator = BrowsePaginator(self)
        self.subscriptions = SubscriptionDispatcher(self)
        self.methods = MethodCaller(self)

        session_name = ""
        if config is not None:
            configure_logging(config.log_dir, config.log_level)
            session_name = config.session.name
        self.logger = get_logger(__name__, session=session_name)

    # ----------------------------------------------------------------
    # State
    # ----------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """True while CONNECTED and also while RECONNECTING."""
        return self._state in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def session(self) -> Session | None:
        return self._session

    def require_session(self, allow_reconnecting: bool = False) -> Session:
        """
        The live session.

        Raises:
            NoActiveSession: If disconnected, or reconnecting and the
                operation cannot wait for the reconnect
        """
        session = self._session
        if session is None or not self.connected:
            raise NoActiveSession("No active session")
        if self._state == ConnectionState.RECONNECTING and not allow_reconnecting:
            raise NoActiveSession("Reconnect in progress")
        return session

    async def execute(self, operation: Callable[..., Any], *args: Any, allow_reconnecting: bool = False) -> Any:
        """
        Run an engine service call against the live session.

        ``operation`` is an engine method; the session handle is passed as
        its first argument. Faults that mean the server session is gone
        disconnect the manager before being re-raised.
        """
        handle = self.require_session(allow_reconnecting).handle
        try:
            return await operation(handle, *args)
        except ServiceFault as e:
            if e.status_code in DISCONNECT_STATUS_CODES and self._is_current(handle):
                self.logger.warning(f"Session invalidated by server ({e.status_name}), disconnecting")
                await self.disconnect(e.status_code, e.status_name)
            raise

    def _is_current(self, handle: SessionHandle) -> bool:
        session = self._session
        return session is not None and session.handle.session_id == handle.session_id

    async def _notify_state(self, state: ConnectionState, status_code: int = GOOD, message: str = "") -> None:
        await self.connection_status_changed.fire(self, ConnectionStatusChange(state, status_code, message))

    # ----------------------------------------------------------------
    # Connect / disconnect
    # ----------------------------------------------------------------

    async def connect(self, endpoint: Endpoint, identity: UserIdentity | None = None) -> Session:
        """
        Open a session on ``endpoint``.

        Raises:
            ConfigurationError: If there is no client configuration or
                application name
        """
        if self.config is None:
            raise ConfigurationError("Client configuration is not set")
        self.config.validate()
        identity = identity or UserIdentity.anonymous()

        if self._session is not None:
            await self.disconnect()

        async with self._lock:
            self._state = ConnectionState.CONNECTING
        await self._notify_state(ConnectionState.CONNECTING, message=f"Connecting to {endpoint.url}")

        settings = self.config.session
        session_name = f"{self.config.application_name}_{uuid.uuid4().hex[:4]}"
        try:
            handle = await self.engine.open_session(endpoint, identity, session_name, settings.timeout, self)
        except BaseException as e:
            async with self._lock:
                self._state = ConnectionState.DISCONNECTED
            await self._notify_state(ConnectionState.DISCONNECTED, message=f"Connect failed: {e}")
            raise

        async with self._lock:
            self._generation += 1
            self._session = Session(
                handle=handle,
                endpoint=endpoint,
                identity=identity,
                name=session_name,
                session_timeout=handle.session_timeout,
                keepalive_interval=handle.keepalive_interval or settings.keepalive_interval,
                generation=self._generation,
                last_keepalive=self._clock(),
            )
            self._endpoint = endpoint
            self._identity = identity
            self._disconnection_time = None
            self._state = ConnectionState.CONNECTED
            session = self._session

        await self.logger.log_event(
            EventSeverity.NOTICE,
            EventCategory.SESSION,
            f"Session {session_name} established",
            endpoint=endpoint.url,
            user=identity.display_name,
            data={"generation": session.generation},
        )
        await self._notify_state(ConnectionState.CONNECTED, message="Connected")
        await self.session_established.fire(self)
        await self._refresh_schemas_logged()
        return session

    async def connect_url(
        self,
        url: str,
        identity: UserIdentity | None = None,
        fallback_anonymous: bool = False,
    ) -> Session:
        """
        Discover the server's endpoints and connect to a suitable one.

        Anonymous identities use an unsecured endpoint. Other identities use
        the last secured endpoint offered, or the last unsecured one when
        ``fallback_anonymous`` is set.
        """
        identity = identity or UserIdentity.anonymous()
        endpoints = await self.engine.get_endpoints(url)

        if identity.token_type == UserTokenType.ANONYMOUS:
            endpoint = next((e for e in endpoints if not e.secured), None)
            if endpoint is None:
                raise ConfigurationError(f"{url} offers no anonymous endpoint")
        else:
            secured = [e for e in endpoints if e.secured]
            endpoint = secured[-1] if secured else None
            if endpoint is None and fallback_anonymous:
                unsecured = [e for e in endpoints if not e.secured]
                endpoint = unsecured[-1] if unsecured else None
            if endpoint is None:
                raise ConfigurationError(f"{url} offers no sign-in endpoint")

        return await self.connect(endpoint, identity)

    async def reconnect(self) -> Session | None:
        """Open a fresh session with the last endpoint and identity."""
        if self.connected:
            return self._session
        if self._endpoint is None:
            raise ConfigurationError("No connection information available")
        return await self.connect(self._endpoint, self._identity)

    async def disconnect(self, status_code: int = GOOD, message: str = "Disconnected") -> None:
        """Close the session. Safe to call repeatedly and from callbacks."""
        await self._shutdown(status_code, message, close_engine=True)

    async def _shutdown(self, status_code: int, message: str, close_engine: bool) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            async with self._lock:
                session = self._session
                was_disconnected = self._state == ConnectionState.DISCONNECTED and session is None
                tasks = self._take_tasks()
                self._session = None
                self._disconnection_time = None
                self._state = ConnectionState.DISCONNECTED
            await self._cancel(tasks)
            if was_disconnected:
                return

            await self.registry.clear()
            if session is not None and close_engine:
                try:
                    await self.engine.close_session(session.handle, self._setting("close_timeout", 5.0))
                except Exception as e:
                    self.logger.warning(f"Closing session {session.name} failed: {e}")

            await self.clear_node_entries.fire(self)
            await self._notify_state(ConnectionState.DISCONNECTED, status_code, message)
            await self.logger.log_event(
                EventSeverity.NOTICE if is_good(status_code) else EventSeverity.WARNING,
                EventCategory.SESSION,
                f"Session closed: {message}",
            )
        finally:
            self._closing = False

    def _setting(self, name: str, default: float) -> float:
        if self.config is None:
            return default
        return getattr(self.config.session, name, default)

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    # ----------------------------------------------------------------
    # Engine listener
    # ----------------------------------------------------------------

    async def on_keepalive(self, handle: SessionHandle, status_code: int) -> None:
        """Drive the reconnect cycle from engine keepalives."""
        if self._closing or self._session is None:
            return
        if not self._is_current(handle):
            self.logger.warning(f"Keepalive from stale session {handle.session_id}, closing it")
            try:
                await self.engine.close_session(handle, self._setting("close_timeout", 5.0))
            except Exception as e:
                self.logger.warning(f"Closing stale session {handle.session_id} failed: {e}")
            return

        self._session.last_keepalive = self._clock()
        await self.keepalive.fire(self, status_code)
        await self._reconnect_cycle(status_code)

    async def on_session_closing(self, handle: SessionHandle) -> None:
        """The engine closes a session on its own."""
        if self._closing or not self._is_current(handle):
            return
        await self._shutdown(ua.StatusCodes.BadSessionClosed, "Session closing", close_engine=False)

    async def on_validate_certificate(self, der: bytes) -> bool:
        """Offer an untrusted server certificate to certificate_validation observers."""
        try:
            info = CertificateInfo.from_der(der)
        except ValueError as e:
            self.logger.warning(f"Unparseable server certificate: {e}")
            info = None

        request = CertificateValidationRequest(
            der=der,
            info=info,
            accept=bool(self.config and self.config.auto_accept_untrusted),
        )
        await self.certificate_validation.fire(self, request)

        subject = info.subject if info else "<unparseable>"
        await self.logger.log_security(
            f"Server certificate {'accepted' if request.accept else 'rejected'}: {subject}",
            severity=EventSeverity.NOTICE if request.accept else EventSeverity.WARNING,
            data={"fingerprint": info.fingerprint_sha256 if info else None},
        )
        return request.accept

    # ----------------------------------------------------------------
    # Reconnect cycle
    # ----------------------------------------------------------------

    async def _reconnect_cycle(self, status_code: int) -> None:
        if is_good(status_code):
            await self._reconnected()
            return

        period = self._setting("reconnect_period", 30.0)
        now = self._clock()
        async with self._lock:
            session = self._session
            if session is None or not self.connected:
                return
            first = self._disconnection_time is None
            if first:
                self._disconnection_time = now
            elapsed = now - self._disconnection_time
            abandon = elapsed >= period
            if not abandon:
                self._state = ConnectionState.RECONNECTING
                if self._liveness_task is None:
                    self._liveness_task = asyncio.create_task(self._watch_liveness())
                if self._reconnect_task is None:
                    self._reconnect_task = asyncio.create_task(self._attempt_reconnect(session.handle))

        if abandon:
            await self._abandon(status_code, period)
            return

        if first:
            await self.logger.log_event(
                EventSeverity.WARNING,
                EventCategory.SESSION,
                f"Keepalive failed ({status_name(status_code)}), reconnecting",
                endpoint=session.endpoint.url,
            )
        await self._notify_state(
            ConnectionState.RECONNECTING,
            status_code,
            f"Reconnecting: {elapsed:.0f}/{period:.0f} seconds",
        )

    async def _reconnected(self) -> None:
        """A good keepalive arrived while reconnecting: the channel recovered."""
        async with self._lock:
            if self._state != ConnectionState.RECONNECTING:
                return
            self._state = ConnectionState.CONNECTED
            self._disconnection_time = None
            tasks = self._take_tasks()
        await self._cancel(tasks)

        await self.logger.log_event(EventSeverity.NOTICE, EventCategory.SESSION, "Keepalive recovered")
        await self._notify_state(ConnectionState.CONNECTED, message="Reconnected")
        await self.session_established.fire(self)

    async def _attempt_reconnect(self, handle: SessionHandle) -> None:
        try:
            new_handle = await self.engine.reconnect(handle, self._setting("reconnect_timeout", 10.0))
        except Exception as e:
            self.logger.warning(f"Reconnect attempt failed: {e}")
            async with self._lock:
                if self._reconnect_task is asyncio.current_task():
                    self._reconnect_task = None
            return
        await self._complete_reconnect(handle, new_handle)

    async def _complete_reconnect(self, old_handle: SessionHandle, new_handle: SessionHandle) -> None:
        resumed = new_handle.session_id == old_handle.session_id
        async with self._lock:
            current = self._state == ConnectionState.RECONNECTING and self._is_current(old_handle)
            if current:
                if not resumed:
                    self._generation += 1
                session = self._session
                session.handle = new_handle
                session.generation = self._generation
                session.session_timeout = new_handle.session_timeout
                session.last_keepalive = self._clock()
                self._state = ConnectionState.CONNECTED
                self._disconnection_time = None
                tasks = self._take_tasks()

        if not current:
            # The cycle ended (recovered, abandoned or disconnected) meanwhile
            if not resumed:
                try:
                    await self.engine.close_session(new_handle, self._setting("close_timeout", 5.0))
                except Exception as e:
                    self.logger.warning(f"Closing superseded session failed: {e}")
            return

        await self._cancel(tasks)
        await self.logger.log_event(
            EventSeverity.NOTICE,
            EventCategory.SESSION,
            "Session resumed" if resumed else "Reconnected with a new session",
            endpoint=session.endpoint.url,
            data={"generation": self._generation, "resumed": resumed},
        )
        await self._notify_state(ConnectionState.CONNECTED, message="Reconnected")
        await self.session_established.fire(self)
        if not resumed:
            await self._refresh_schemas_logged()

    async def _watch_liveness(self) -> None:
        """Re-enter the cycle when keepalives stop arriving altogether."""
        while True:
            session = self._session
            if session is None:
                return
            interval = session.keepalive_interval
            await asyncio.sleep(interval)
            if self._state != ConnectionState.RECONNECTING or self._session is not session:
                return
            if self._clock() - session.last_keepalive >= 2 * interval:
                await self._reconnect_cycle(ua.StatusCodes.BadTimeout)

    async def _abandon(self, status_code: int, period: float) -> None:
        await self.logger.log_event(
            EventSeverity.ERROR,
            EventCategory.SESSION,
            f"No connection for {period:.0f} seconds, giving up",
        )
        await self._shutdown(status_code, "Session lost", close_engine=True)
        await self.session_lost.fire(self, SessionLost(f"Reconnect period of {period:.0f} seconds elapsed"))

    def _take_tasks(self) -> list[asyncio.Task]:
        # Caller holds the lock
        tasks = [t for t in (self._reconnect_task, self._liveness_task) if t is not None]
        self._reconnect_task = None
        self._liveness_task = None
        return tasks

    @staticmethod
    async def _cancel(tasks: list[asyncio.Task]) -> None:
        current = asyncio.current_task()
        pending = [t for t in tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _refresh_schemas_logged(self) -> None:
        try:
            await self.resolver.refresh_schemas()
        except (UaSessionError, OSError) as e:
            self.logger.warning(f"Type schema refresh failed, types resolve on demand: {e}")

    # ----------------------------------------------------------------
    # Read / write
    # ----------------------------------------------------------------

    async def read_value(self, node: NodeIdentifier) -> Any:
        """
        Read the Value attribute of one node; structures come back as dicts.

        Raises:
            ServiceFault: If the read returned a bad status
        """
        node_id = to_node_id(node)
        (value,) = await self.execute(self.engine.read, [ReadValueId(node_id)])
        check_status(value.status_code, f"Reading {node_id.to_string()}")
        return await self.resolver.decode_value(value.value)

    async def read_values(self, nodes: Sequence[NodeIdentifier]) -> list[DataValue]:
        """Read several Value attributes in one round trip, statuses included."""
        if not nodes:
            return []
        return await self.execute(self.engine.read, [ReadValueId(to_node_id(node)) for node in nodes])

    async def read_nodes(self, nodes: Sequence[NodeIdentifier]) -> list[dict[str, Any]]:
        """Read descriptive attributes of several nodes; bad attributes are None."""
        node_ids = [to_node_id(node) for node in nodes]
        if not node_ids:
            return []
        requests = [
            ReadValueId(node_id, attribute_id)
            for node_id in node_ids
            for _, attribute_id in NODE_ATTRIBUTES
        ]
        values = await self.execute(self.engine.read, requests)

        width = len(NODE_ATTRIBUTES)
        results = []
        for index, node_id in enumerate(node_ids):
            chunk = values[index * width:(index + 1) * width]
            info: dict[str, Any] = {"node_id": node_id}
            for (name, _), value in zip(NODE_ATTRIBUTES, chunk):
                info[name] = None if is_bad(value.status_code) else value.value
            if info["node_class"] is not None:
                info["node_class"] = ua.NodeClass(info["node_class"])
            results.append(info)
        return results

    async def read_node(self, node: NodeIdentifier) -> dict[str, Any]:
        return (await self.read_nodes([node]))[0]

    async def read_entry(self, entry: NodeEntry) -> NodeValueRecord:
        """Read an entry through its registered handle when it has one."""
        (record,) = await self.read_entries([entry])
        return record

    async def read_entries(self, entries: NodeEntryCollection | Sequence[NodeEntry]) -> list[NodeValueRecord]:
        """
        Read entries in one round trip, decoding UDT values.

        Raises:
            BatchFailure: If some UDT values could not be decoded
        """
        if isinstance(entries, NodeEntryCollection):
            entries = entries.entries
        if not entries:
            return []
        values = await self.execute(
            self.engine.read, [ReadValueId(entry.service_node_id) for entry in entries]
        )

        records = []
        failures: list[tuple[str, Exception]] = []
        for entry, value in zip(entries, values):
            payload = value.value
            if entry.is_udt and is_good(value.status_code):
                try:
                    payload = await self.resolver.decode_value(payload)
                except (TypeResolutionError, BatchFailure) as e:
                    failures.append((entry.node_id.to_string(), e))
                    payload = None
            records.append(NodeValueRecord(entry, payload, value.status_code, value.source_timestamp))
        if failures:
            raise BatchFailure(f"Failed to decode {len(failures)} values", failures)
        return records

    async def _prepare_value(self, node_id: ua.NodeId, value: Any, type_name: str | None = None) -> Any:
        # Dicts are structures of the node's data type
        if isinstance(value, ExtensionObject) or not isinstance(value, dict):
            return value
        if type_name is None:
            type_name = (await self.resolver.resolve_encoding(node_id)).name
        return await self.resolver.encode_value(type_name, value)

    async def write_value(self, node: NodeIdentifier, value: Any, type_name: str | None = None) -> None:
        """
        Write the Value attribute of one node.

        A dict is encoded as a structure of ``type_name``, or of the node's
        own data type when no type name is given.

        Raises:
            ServiceFault: If the write was rejected
        """
        node_id = to_node_id(node)
        prepared = await self._prepare_value(node_id, value, type_name)
        (status,) = await self.execute(self.engine.write, [WriteValue(node_id, DataValue(prepared))])
        await self.audit(
            f"Write {node_id.to_string()}",
            action="write",
            result="FAILED" if is_bad(status) else "OK",
            node=node_id.to_string(),
        )
        check_status(status, f"Writing {node_id.to_string()}")

    async def write_values(self, nodes: Sequence[NodeIdentifier], values: Sequence[Any]) -> None:
        """
        Write several values in one round trip.

        Raises:
            ValueError: If the number of values differs from the number of nodes
            BatchFailure: If some writes were rejected
        """
        if len(nodes) != len(values):
            raise ValueError(f"Value count mismatch: {len(values)} values for {len(nodes)} nodes")
        node_ids = [to_node_id(node) for node in nodes]
        requests = [
            WriteValue(node_id, DataValue(await self._prepare_value(node_id, value)))
            for node_id, value in zip(node_ids, values)
        ]
        await self._write(node_ids, requests)

    async def write_records(self, records: Sequence[NodeValueRecord]) -> None:
        """Write record values through their entries' registered handles."""
        requests = []
        for record in records:
            value = record.value
            if record.entry.is_udt:
                value = await self._prepare_value(record.entry.node_id, value)
            requests.append(WriteValue(record.entry.service_node_id, DataValue(value)))
        await self._write([record.node_id for record in records], requests)

    async def _write(self, node_ids: list[ua.NodeId], requests: list[WriteValue]) -> None:
        if not requests:
            return
        statuses = await self.execute(self.engine.write, requests)
        failures = [
            (node_id.to_string(), ServiceFault(status, "Write rejected"))
            for node_id, status in zip(node_ids, statuses)
            if is_bad(status)
        ]
        await self.audit(
            f"Wrote {len(requests) - len(failures)} of {len(requests)} values",
            action="write",
            result="FAILED" if failures else "OK",
            failed=[key for key, _ in failures],
        )
        if failures:
            raise BatchFailure(f"{len(failures)} of {len(requests)} writes failed", failures)

    # ----------------------------------------------------------------
    # Browse
    # ----------------------------------------------------------------

    async def browse(
        self, descriptions: Sequence[BrowseDescription], max_references_per_node: int = 0
    ) -> list[list[ReferenceDescription]]:
        return await self.paginator.browse(descriptions, max_references_per_node)

    async def browse_node(self, node: NodeIdentifier, **kwargs: Any) -> list[ReferenceDescription]:
        return await self.paginator.browse_node(node, **kwargs)

    async def translate_browse_path(
        self, start: NodeIdentifier, path: Any, default_namespace: int = 0
    ) -> ua.NodeId | None:
        return await self.paginator.translate_browse_path(start, path, default_namespace)

    async def translate_browse_paths(
        self, start: NodeIdentifier, paths: Sequence[Any], default_namespace: int = 0
    ) -> list[ua.NodeId | None]:
        return await self.paginator.translate_browse_paths(start, paths, default_namespace)

    # ----------------------------------------------------------------
    # Registration
    # ----------------------------------------------------------------

    async def register_node_ids(self, identifiers: Sequence[NodeIdentifier]) -> list[ua.NodeId]:
        return await self.registry.register(identifiers)

    async def register_entry(self, entry: NodeEntry, auto_reregister: bool = True) -> ua.NodeId:
        return await self.registry.register_entry(entry, auto_reregister)

    async def register_entries(
        self,
        entries: NodeEntryCollection | Sequence[NodeEntry | NodeIdentifier],
        auto_reregister: bool = True,
    ) -> NodeEntryCollection:
        """Register entries as one identifier set, kept across reconnects."""
        if isinstance(entries, NodeEntryCollection):
            collection = entries
        else:
            collection = NodeEntryCollection()
            for entry in entries:
                collection.add(entry)
        await self.registry.register_collection(collection, auto_reregister)
        return collection

    async def unregister_node_ids(self, handles: Sequence[ua.NodeId]) -> None:
        await self.registry.unregister(handles)

    # ----------------------------------------------------------------
    # Methods
    # ----------------------------------------------------------------

    async def get_method_arguments(self, method: NodeIdentifier) -> MethodArguments:
        return await self.methods.get_method_arguments(method)

    async def call_method(self, object_id: NodeIdentifier, method_id: NodeIdentifier, *args: Any) -> list[Any]:
        return await self.methods.call_method(object_id, method_id, *args)

    async def call_methods(self, requests: Sequence[CallMethodRequest]) -> list[list[Any]]:
        return await self.methods.call_methods(requests)

    # ----------------------------------------------------------------
    # Subscriptions
    # ----------------------------------------------------------------

    async def get_subscription(
        self, publishing_interval: float | None = None, publishing_enabled: bool = True
    ) -> ManagedSubscription:
        """Subscription for ``publishing_interval`` (ms), created on first use."""
        if publishing_interval is None:
            publishing_interval = (
                self.config.subscriptions.default_publishing_interval if self.config else 1000.0
            )
        return await self.subscriptions.get_or_create_subscription(publishing_interval, publishing_enabled)

    async def _resolve_subscription(self, subscription: ManagedSubscription | float | None) -> ManagedSubscription:
        if isinstance(subscription, ManagedSubscription):
            return subscription
        return await self.get_subscription(subscription)

    def _item_params(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.config is not None:
            params.setdefault("sampling_interval", self.config.subscriptions.default_sampling_interval)
            params.setdefault("queue_size", self.config.subscriptions.default_queue_size)
        return params

    async def add_monitored_item(
        self,
        subscription: ManagedSubscription | float | None,
        target: Any,
        handler: Callable[..., Any] | None = None,
        **params: Any,
    ) -> MonitoredItem:
        """
        Watch ``target`` on a subscription, or on the subscription of a
        publishing interval.
        """
        subscription = await self._resolve_subscription(subscription)
        if not isinstance(target, MonitoredItem):
            params = self._item_params(params)
        return await self.subscriptions.add_monitored_item(subscription, target, handler, **params)

    async def add_monitored_items(
        self,
        subscription: ManagedSubscription | float | None,
        targets: Sequence[Any],
        handler: Callable[..., Any] | None = None,
        **params: Any,
    ) -> list[MonitoredItem]:
        subscription = await self._resolve_subscription(subscription)
        return await self.subscriptions.add_monitored_items(
            subscription, targets, handler, **self._item_params(params)
        )

    async def remove_monitored_item(self, subscription: ManagedSubscription, item: MonitoredItem) -> bool:
        return await self.subscriptions.remove_monitored_item(subscription, item)

    async def remove_monitored_items(self, subscription: ManagedSubscription, items: Sequence[MonitoredItem]) -> int:
        return await self.subscriptions.remove_monitored_items(subscription, items)

    async def remove_monitored_item_by_node(self, target: Any, publishing_interval: float | None = None) -> int:
        return await self.subscriptions.remove_monitored_item_by_node(target, publishing_interval)

    async def delete_subscription(self, subscription: ManagedSubscription) -> None:
        await self.subscriptions.delete_subscription(subscription)

    # ----------------------------------------------------------------
    # Data types
    # ----------------------------------------------------------------

    async def resolve_encoding(self, node: NodeIdentifier) -> TypeDescriptor:
        return await self.resolver.resolve_encoding(node)

    async def decode_value(self, value: Any) -> Any:
        return await self.resolver.decode_value(value)

    async def encode_value(
        self, type_name: str, value: dict[str, Any], tag: EncodingTag = EncodingTag.BINARY
    ) -> ExtensionObject:
        return await self.resolver.encode_value(type_name, value, tag)

    async def refresh_schemas(self) -> int:
        return await self.resolver.refresh_schemas()

    # ----------------------------------------------------------------
    # Status
    # ----------------------------------------------------------------

    async def audit(self, message: str, action: str, result: str = "OK", **data: Any) -> None:
        """Record a registration, write or method call in the audit trail."""
        session = self._session
        await self.logger.log_audit(
            message,
            user=session.identity.display_name if session else "",
            action=action,
            result=result,
            endpoint=session.endpoint.url if session else "",
            data=data,
        )

    async def get_audit_trail(self, limit: int = 100) -> list[LogEntry]:
        """Most recent audit and security entries of this session, oldest first."""
        return await self.logger.get_audit_trail(limit=limit)

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the session for dashboards and logs."""
        session = self._session
        disconnected_for = None
        if self._disconnection_time is not None:
            disconnected_for = self._clock() - self._disconnection_time
        return {
            "state": self._state.value,
            "connected": self.connected,
            "generation": self._generation,
            "endpoint": session.endpoint.url if session else None,
            "session_id": str(session.handle.session_id) if session else None,
            "registered_handles": self.registry.cached_count,
            "subscriptions": self.subscriptions.subscription_count,
            "monitored_items": sum(len(s.items) for s in self.subscriptions.subscriptions),
            "schema_types": len(self.resolver.types),
            "disconnected_for": disconnected_for,
        }
