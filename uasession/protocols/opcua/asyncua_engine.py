# uasession/protocols/opcua/asyncua_engine.py
"""
ProtocolEngine implemented with asyncua.

- One asyncua.Client per server session
- Keepalive loop reading Server_ServerStatus_State, reported to the listener
- reconnect() builds a fresh client and session, then drops the old one
- asyncua status errors surface as ServiceFault
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any

from asyncua import Client, ua
from asyncua.common.subscription import Subscription

from uasession.errors import ConfigurationError, ServiceFault
from uasession.protocols.codec import EncodingTag
from uasession.protocols.engine import (
    Endpoint,
    EngineListener,
    MessageSecurityMode,
    NotificationCallback,
    ProtocolEngine,
    SessionHandle,
    UserIdentity,
    UserTokenType,
)
from uasession.protocols.services import (
    GOOD,
    BrowseDescription,
    BrowsePath,
    BrowsePathResult,
    BrowsePathTarget,
    BrowseResult,
    CallMethodRequest,
    CallMethodResult,
    DataValue,
    ExpandedNodeRef,
    ExtensionObject,
    MonitoredItemRequest,
    MonitoredItemResult,
    ReadValueId,
    ReferenceDescription,
    WriteValue,
    is_bad,
)
from uasession.security.logging_system import get_logger

__all__ = ["AsyncuaEngine"]

logger = get_logger(__name__)

def _fault(error: Exception, service: str) -> ServiceFault:
    """ServiceFault for a failed service call of an open session."""
    if isinstance(error, ua.UaStatusCodeError):
        return ServiceFault(error.code, service)
    # asyncua raises ConnectionError once the secure channel is closed
    return ServiceFault(ua.StatusCodes.BadSecureChannelClosed, f"{service}: {error}")


_SECURITY_MODES = {
    MessageSecurityMode.SIGN: "Sign",
    MessageSecurityMode.SIGN_AND_ENCRYPT: "SignAndEncrypt",
}

# Keepalive statuses meaning the server ended the session itself
_SESSION_ENDED = frozenset({ua.StatusCodes.BadSessionClosed, ua.StatusCodes.BadSessionIdInvalid})


# ------------------------------------------------------------
# value conversion
# ------------------------------------------------------------


def _code(status: Any) -> int:
    if status is None:
        return GOOD
    return int(getattr(status, "value", status))


def _expanded(node_id: Any) -> ExpandedNodeRef:
    # asyncua's ExpandedNodeId is a NodeId with namespace URI and server index
    return ExpandedNodeRef(
        node_id=ua.NodeId(node_id.Identifier, node_id.NamespaceIndex, node_id.NodeIdType),
        namespace_uri=getattr(node_id, "NamespaceUri", None) or None,
        server_index=getattr(node_id, "ServerIndex", 0) or 0,
    )


def from_ua_value(value: Any) -> Any:
    """asyncua value -> session layer value (ExtensionObjects are tagged)."""
    if isinstance(value, ua.ExtensionObject):
        tag = EncodingTag.BINARY if value.Body is not None else EncodingTag.NONE
        return ExtensionObject(type_id=value.TypeId, encoding=tag, body=value.Body)
    if isinstance(value, list):
        return [from_ua_value(item) for item in value]
    return value


def to_ua_value(value: Any) -> Any:
    if isinstance(value, ExtensionObject):
        if value.encoding == EncodingTag.OBJECT:
            return value.body
        if value.encoding not in (EncodingTag.BINARY, EncodingTag.NONE):
            raise ValueError(f"asyncua transports binary bodies only, got {value.encoding.name}")
        return ua.ExtensionObject(TypeId=value.type_id, Body=value.body)
    if isinstance(value, list):
        return [to_ua_value(item) for item in value]
    return value


def from_ua_data_value(data_value: ua.DataValue) -> DataValue:
    variant = data_value.Value
    return DataValue(
        value=from_ua_value(variant.Value) if variant is not None else None,
        status_code=_code(data_value.StatusCode),
        source_timestamp=data_value.SourceTimestamp,
        server_timestamp=data_value.ServerTimestamp,
    )


def _from_ua_reference(ref: ua.ReferenceDescription) -> ReferenceDescription:
    return ReferenceDescription(
        node_id=_expanded(ref.NodeId),
        reference_type_id=ref.ReferenceTypeId,
        is_forward=ref.IsForward,
        browse_name=ref.BrowseName,
        display_name=ref.DisplayName.Text if ref.DisplayName is not None else "",
        node_class=ua.NodeClass(ref.NodeClass),
        type_definition=_expanded(ref.TypeDefinition) if ref.TypeDefinition is not None else None,
    )


def _from_ua_browse_result(result: ua.BrowseResult) -> BrowseResult:
    return BrowseResult(
        status_code=_code(result.StatusCode),
        continuation_point=result.ContinuationPoint or None,
        references=[_from_ua_reference(ref) for ref in result.References or []],
    )


def _to_ua_browse_description(description: BrowseDescription) -> ua.BrowseDescription:
    return ua.BrowseDescription(
        NodeId=description.node_id,
        BrowseDirection=description.direction,
        ReferenceTypeId=description.reference_type_id,
        IncludeSubtypes=description.include_subtypes,
        NodeClassMask=description.node_class_mask,
        ResultMask=description.result_mask,
    )


def _to_ua_browse_path(path: BrowsePath) -> ua.BrowsePath:
    return ua.BrowsePath(
        StartingNode=path.starting_node,
        RelativePath=ua.RelativePath(
            Elements=[
                ua.RelativePathElement(
                    ReferenceTypeId=element.reference_type_id,
                    IsInverse=element.is_inverse,
                    IncludeSubtypes=element.include_subtypes,
                    TargetName=element.target_name,
                )
                for element in path.elements
            ]
        ),
    )


# ------------------------------------------------------------
# per-session state
# ------------------------------------------------------------


class _NotificationHandler:
    """asyncua subscription handler forwarding data changes by client handle."""

    def __init__(self, callback: NotificationCallback):
        self._callback = callback

    async def datachange_notification(self, node, val, data) -> None:
        notification = data.monitored_item
        result = self._callback(notification.ClientHandle, from_ua_data_value(notification.Value))
        if inspect.isawaitable(result):
            await result

    def status_change_notification(self, status) -> None:
        logger.warning(f"Subscription status changed: {status}")


@dataclass
class _ClientSession:
    client: Client
    endpoint: Endpoint
    identity: UserIdentity
    session_name: str
    timeout: float
    listener: EngineListener
    subscriptions: dict[int, Subscription] = field(default_factory=dict)
    keepalive_task: asyncio.Task | None = None
    closed: bool = False


class AsyncuaEngine(ProtocolEngine):
    """
    OPC UA client stack backed by asyncua.

    Example:
        >>> engine = AsyncuaEngine(keepalive_interval=5.0)
        >>> manager = SessionManager(engine, ClientConfig.load())
    """

    def __init__(
        self,
        request_timeout: float = 4.0,
        keepalive_interval: float = 5.0,
        application_uri: str | None = None,
        certificate_path: str | None = None,
        private_key_path: str | None = None,
    ):
        """
        Args:
            request_timeout: Timeout of a single service request (s)
            keepalive_interval: Period of the server status probe (s)
            application_uri: Client application URI sent to the server
            certificate_path: Client application certificate, needed for
                secured endpoints
            private_key_path: Private key of the application certificate
        """
        self.request_timeout = request_timeout
        self.keepalive_interval = keepalive_interval
        self.application_uri = application_uri
        self.certificate_path = certificate_path
        self.private_key_path = private_key_path

        self._sessions: dict[str, _ClientSession] = {}

    # ------------------------------------------------------------
    # discovery and sessions
    # ------------------------------------------------------------

    async def get_endpoints(self, url: str) -> list[Endpoint]:
        client = Client(url, timeout=self.request_timeout)
        try:
            descriptions = await client.connect_and_get_server_endpoints()
        except ua.UaStatusCodeError as e:
            raise ServiceFault(e.code, f"GetEndpoints on {url}") from e

        endpoints = []
        for description in descriptions:
            try:
                mode = MessageSecurityMode(int(description.SecurityMode))
            except ValueError:
                continue
            endpoints.append(
                Endpoint(
                    url=description.EndpointUrl,
                    security_policy=description.SecurityPolicyUri.rsplit("#", 1)[-1],
                    security_mode=mode,
                    server_certificate=description.ServerCertificate or None,
                )
            )
        return endpoints

    async def _connect_client(
        self, endpoint: Endpoint, identity: UserIdentity, session_name: str, timeout: float
    ) -> Client:
        client = Client(endpoint.url, timeout=self.request_timeout)
        client.name = session_name
        client.session_timeout = int(timeout * 1000)
        if self.application_uri:
            client.application_uri = self.application_uri

        if identity.token_type == UserTokenType.USERNAME:
            client.set_user(identity.username)
            client.set_password(identity.password)
        elif identity.token_type == UserTokenType.CERTIFICATE:
            await client.load_client_certificate(identity.certificate_path)
            await client.load_private_key(identity.private_key_path)

        if endpoint.secured:
            if not (self.certificate_path and self.private_key_path):
                raise ConfigurationError(f"{endpoint.url} is secured but no client certificate is configured")
            await client.set_security_string(
                f"{endpoint.security_policy},{_SECURITY_MODES[endpoint.security_mode]},"
                f"{self.certificate_path},{self.private_key_path}"
            )

        try:
            await client.connect()
        except ua.UaStatusCodeError as e:
            raise ServiceFault(e.code, f"Connecting to {endpoint.url}") from e
        return client

    async def _start(self, client: Client, entry: _ClientSession) -> SessionHandle:
        handle = SessionHandle(
            session_id=uuid.uuid4().hex,
            keepalive_interval=self.keepalive_interval,
            session_timeout=client.session_timeout / 1000,
            namespace_uris=await client.get_namespace_array(),
        )
        self._sessions[handle.session_id] = entry
        entry.keepalive_task = asyncio.create_task(self._keepalive_loop(handle, entry))
        return handle

    async def open_session(
        self,
        endpoint: Endpoint,
        identity: UserIdentity,
        session_name: str,
        timeout: float,
        listener: EngineListener,
    ) -> SessionHandle:
        if endpoint.secured and endpoint.server_certificate:
            if not await listener.on_validate_certificate(endpoint.server_certificate):
                raise ServiceFault(ua.StatusCodes.BadCertificateUntrusted, f"Rejected {endpoint.url}")

        client = await self._connect_client(endpoint, identity, session_name, timeout)
        entry = _ClientSession(client, endpoint, identity, session_name, timeout, listener)
        handle = await self._start(client, entry)
        logger.info(f"Opened session {session_name} on {endpoint.url}")
        return handle

    async def close_session(self, handle: SessionHandle, timeout: float) -> None:
        entry = self._sessions.pop(handle.session_id, None)
        if entry is None:
            return
        self._stop_keepalive(entry)
        try:
            await asyncio.wait_for(entry.client.disconnect(), timeout)
        except ua.UaStatusCodeError as e:
            raise ServiceFault(e.code, f"Closing session {entry.session_name}") from e

    async def reconnect(self, handle: SessionHandle, timeout: float) -> SessionHandle:
        """Open a new session on the same endpoint; asyncua cannot resume sessions."""
        entry = self._entry(handle)
        client = await asyncio.wait_for(
            self._connect_client(entry.endpoint, entry.identity, entry.session_name, entry.timeout),
            timeout,
        )

        self._sessions.pop(handle.session_id, None)
        self._stop_keepalive(entry)
        try:
            await entry.client.disconnect()
        except (OSError, ua.UaError) as e:
            logger.warning(f"Dropping previous client of {entry.session_name} failed: {e}")

        replacement = _ClientSession(
            client, entry.endpoint, entry.identity, entry.session_name, entry.timeout, entry.listener
        )
        return await self._start(client, replacement)

    def _entry(self, handle: SessionHandle) -> _ClientSession:
        entry = self._sessions.get(handle.session_id)
        if entry is None:
            raise ServiceFault(ua.StatusCodes.BadSessionIdInvalid, f"Unknown session {handle.session_id}")
        return entry

    def _stop_keepalive(self, entry: _ClientSession) -> None:
        entry.closed = True
        task = entry.keepalive_task
        entry.keepalive_task = None
        # The loop may be the caller, when a keepalive callback closes the session
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------
    # keepalive
    # ------------------------------------------------------------

    async def _probe(self, client: Client) -> int:
        params = ua.ReadParameters()
        params.NodesToRead = [
            ua.ReadValueId(
                NodeId=ua.NodeId(ua.ObjectIds.Server_ServerStatus_State),
                AttributeId=ua.AttributeIds.Value,
            )
        ]
        try:
            (result,) = await client.uaclient.read(params)
        except ua.UaStatusCodeError as e:
            return e.code
        except (OSError, ua.UaError) as e:
            logger.debug(f"Keepalive read failed: {e}")
            return ua.StatusCodes.BadConnectionClosed

        status = _code(result.StatusCode)
        if is_bad(status):
            return status
        if result.Value is not None and result.Value.Value != ua.ServerState.Running:
            return ua.StatusCodes.BadServerHalted
        return GOOD

    async def _keepalive_loop(self, handle: SessionHandle, entry: _ClientSession) -> None:
        while not entry.closed:
            await asyncio.sleep(handle.keepalive_interval)
            if entry.closed:
                return
            status = await self._probe(entry.client)
            if status in _SESSION_ENDED:
                await entry.listener.on_session_closing(handle)
                return
            await entry.listener.on_keepalive(handle, status)

    # ------------------------------------------------------------
    # services
    # ------------------------------------------------------------

    async def _invoke(self, handle: SessionHandle, service: str, *args: Any) -> Any:
        uaclient = self._entry(handle).client.uaclient
        try:
            return await getattr(uaclient, service)(*args)
        except (ua.UaStatusCodeError, ConnectionError) as e:
            raise _fault(e, service) from e

    async def register_nodes(self, handle: SessionHandle, nodes: list[ua.NodeId]) -> list[ua.NodeId]:
        return list(await self._invoke(handle, "register_nodes", nodes))

    async def unregister_nodes(self, handle: SessionHandle, nodes: list[ua.NodeId]) -> None:
        await self._invoke(handle, "unregister_nodes", nodes)

    async def browse(
        self,
        handle: SessionHandle,
        descriptions: list[BrowseDescription],
        max_references_per_node: int,
    ) -> list[BrowseResult]:
        params = ua.BrowseParameters()
        params.View = ua.ViewDescription()
        params.RequestedMaxReferencesPerNode = max_references_per_node
        params.NodesToBrowse = [_to_ua_browse_description(d) for d in descriptions]
        results = await self._invoke(handle, "browse", params)
        return [_from_ua_browse_result(result) for result in results]

    async def browse_next(
        self,
        handle: SessionHandle,
        continuation_points: list[bytes],
        release: bool = False,
    ) -> list[BrowseResult]:
        params = ua.BrowseNextParameters()
        params.ReleaseContinuationPoints = release
        params.ContinuationPoints = list(continuation_points)
        results = await self._invoke(handle, "browse_next", params)
        return [_from_ua_browse_result(result) for result in results]

    async def translate_browse_paths(
        self, handle: SessionHandle, paths: list[BrowsePath]
    ) -> list[BrowsePathResult]:
        results = await self._invoke(
            handle, "translate_browsepaths_to_nodeids", [_to_ua_browse_path(p) for p in paths]
        )
        return [
            BrowsePathResult(
                status_code=_code(result.StatusCode),
                targets=[
                    BrowsePathTarget(_expanded(target.TargetId), target.RemainingPathIndex)
                    for target in result.Targets or []
                ],
            )
            for result in results
        ]

    async def read(self, handle: SessionHandle, nodes: list[ReadValueId]) -> list[DataValue]:
        params = ua.ReadParameters()
        params.NodesToRead = [
            ua.ReadValueId(NodeId=node.node_id, AttributeId=node.attribute_id) for node in nodes
        ]
        results = await self._invoke(handle, "read", params)
        return [from_ua_data_value(result) for result in results]

    async def write(self, handle: SessionHandle, values: list[WriteValue]) -> list[int]:
        params = ua.WriteParameters()
        params.NodesToWrite = [
            ua.WriteValue(
                NodeId=value.node_id,
                AttributeId=value.attribute_id,
                Value=ua.DataValue(ua.Variant(to_ua_value(value.value.value))),
            )
            for value in values
        ]
        results = await self._invoke(handle, "write", params)
        return [_code(result) for result in results]

    async def call(self, handle: SessionHandle, requests: list[CallMethodRequest]) -> list[CallMethodResult]:
        methods = [
            ua.CallMethodRequest(
                ObjectId=request.object_id,
                MethodId=request.method_id,
                InputArguments=[ua.Variant(to_ua_value(arg)) for arg in request.input_arguments],
            )
            for request in requests
        ]
        results = await self._invoke(handle, "call", methods)
        return [
            CallMethodResult(
                status_code=_code(result.StatusCode),
                input_argument_results=[_code(code) for code in result.InputArgumentResults or []],
                output_arguments=[from_ua_value(v.Value) for v in result.OutputArguments or []],
            )
            for result in results
        ]

    # ------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------

    def _subscription(self, handle: SessionHandle, subscription_id: int) -> Subscription:
        subscription = self._entry(handle).subscriptions.get(subscription_id)
        if subscription is None:
            raise ServiceFault(ua.StatusCodes.BadSubscriptionIdInvalid, f"Subscription {subscription_id}")
        return subscription

    async def create_subscription(
        self,
        handle: SessionHandle,
        publishing_interval: float,
        publishing_enabled: bool,
        callback: NotificationCallback,
    ) -> int:
        entry = self._entry(handle)
        try:
            subscription = await entry.client.create_subscription(
                publishing_interval, _NotificationHandler(callback), publishing=publishing_enabled
            )
        except (ua.UaStatusCodeError, ConnectionError) as e:
            raise _fault(e, "create_subscription") from e
        entry.subscriptions[subscription.subscription_id] = subscription
        return subscription.subscription_id

    async def delete_subscription(self, handle: SessionHandle, subscription_id: int) -> None:
        subscription = self._subscription(handle, subscription_id)
        try:
            await subscription.delete()
        except (ua.UaStatusCodeError, ConnectionError) as e:
            raise _fault(e, "delete_subscription") from e
        self._entry(handle).subscriptions.pop(subscription_id, None)

    async def create_monitored_items(
        self,
        handle: SessionHandle,
        subscription_id: int,
        items: list[MonitoredItemRequest],
    ) -> list[MonitoredItemResult]:
        subscription = self._subscription(handle, subscription_id)
        requests = []
        for item in items:
            parameters = ua.MonitoringParameters()
            parameters.ClientHandle = item.client_handle
            parameters.SamplingInterval = item.sampling_interval
            parameters.QueueSize = item.queue_size
            parameters.DiscardOldest = item.discard_oldest
            requests.append(
                ua.MonitoredItemCreateRequest(
                    ItemToMonitor=ua.ReadValueId(NodeId=item.node_id, AttributeId=item.attribute_id),
                    MonitoringMode=ua.MonitoringMode.Reporting,
                    RequestedParameters=parameters,
                )
            )

        try:
            results = await subscription.create_monitored_items(requests)
        except (ua.UaStatusCodeError, ConnectionError) as e:
            raise _fault(e, "create_monitored_items") from e

        return [
            MonitoredItemResult(status_code=_code(result))
            if isinstance(result, ua.StatusCode)
            else MonitoredItemResult(
                monitored_item_id=result,
                revised_sampling_interval=item.sampling_interval,
                revised_queue_size=item.queue_size,
            )
            for item, result in zip(items, results)
        ]

    async def delete_monitored_items(
        self,
        handle: SessionHandle,
        subscription_id: int,
        monitored_item_ids: list[int],
    ) -> list[int]:
        subscription = self._subscription(handle, subscription_id)
        statuses = []
        for monitored_item_id in monitored_item_ids:
            try:
                await subscription.unsubscribe(monitored_item_id)
                statuses.append(GOOD)
            except ua.UaStatusCodeError as e:
                statuses.append(e.code)
            except ConnectionError as e:
                raise _fault(e, "delete_monitored_items") from e
        return statuses
