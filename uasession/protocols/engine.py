# uasession/protocols/engine.py
"""
Protocol engine abstraction.

The session layer never talks to a wire stack directly. A ProtocolEngine
owns the secure channel, sessions and primitive codecs; concrete engines
are injected (see ``uasession.protocols.opcua.asyncua_engine``).

Engine calls raise ``ServiceFault`` when the server rejects a whole
service call. Per-element failures are reported through the status codes
of the returned result records.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from asyncua import ua

from uasession.protocols import codec
from uasession.protocols.codec import EncodingTag
from uasession.protocols.services import (
    BrowseDescription,
    BrowsePath,
    BrowsePathResult,
    BrowseResult,
    CallMethodRequest,
    CallMethodResult,
    DataValue,
    MonitoredItemRequest,
    MonitoredItemResult,
    ReadValueId,
    WriteValue,
)

__all__ = [
    "MessageSecurityMode",
    "UserTokenType",
    "Endpoint",
    "UserIdentity",
    "SessionHandle",
    "EngineListener",
    "ProtocolEngine",
    "NotificationCallback",
]

# Called by the engine for every data change: (client_handle, value)
NotificationCallback = Callable[[int, DataValue], Awaitable[None] | None]


class MessageSecurityMode(Enum):
    NONE = 1
    SIGN = 2
    SIGN_AND_ENCRYPT = 3


class UserTokenType(Enum):
    ANONYMOUS = "anonymous"
    USERNAME = "username"
    CERTIFICATE = "certificate"


@dataclass(frozen=True)
class Endpoint:
    """A server endpoint. Immutable once a session has been built on it."""

    url: str
    security_policy: str = "None"
    security_mode: MessageSecurityMode = MessageSecurityMode.NONE
    server_certificate: bytes | None = None

    @property
    def secured(self) -> bool:
        return self.security_mode != MessageSecurityMode.NONE


@dataclass(frozen=True)
class UserIdentity:
    token_type: UserTokenType = UserTokenType.ANONYMOUS
    username: str | None = None
    password: str | None = None
    certificate_path: str | None = None
    private_key_path: str | None = None

    @classmethod
    def anonymous(cls) -> "UserIdentity":
        return cls()

    @classmethod
    def user(cls, username: str, password: str) -> "UserIdentity":
        return cls(UserTokenType.USERNAME, username=username, password=password)

    @property
    def display_name(self) -> str:
        if self.token_type == UserTokenType.USERNAME:
            return self.username or ""
        return self.token_type.value

    def __repr__(self) -> str:
        # Keep passwords out of logs
        return f"UserIdentity({self.token_type.value}, username={self.username!r})"


@dataclass
class SessionHandle:
    """
    An open server session as seen by the engine.

    Two handles with the same ``session_id`` refer to the same server
    session (a reconnect that resumed it).
    """

    session_id: Any
    keepalive_interval: float = 5.0
    session_timeout: float = 60.0
    namespace_uris: list[str] = field(default_factory=list)

    def namespace_index(self, uri: str) -> int | None:
        try:
            return self.namespace_uris.index(uri)
        except ValueError:
            return None


class EngineListener(ABC):
    """Callbacks an engine delivers while a session is open."""

    @abstractmethod
    async def on_keepalive(self, handle: SessionHandle, status_code: int) -> None:
        """A keepalive round completed (or failed) for ``handle``."""

    @abstractmethod
    async def on_session_closing(self, handle: SessionHandle) -> None:
        """The engine is about to close ``handle`` on its own initiative."""

    @abstractmethod
    async def on_validate_certificate(self, der: bytes) -> bool:
        """Decide whether an untrusted server certificate is accepted."""


class ProtocolEngine(ABC):
    """
    Abstract interface to an OPC UA client stack.

    Every method is a coroutine. Implementations raise ServiceFault for
    service-level rejections and let transport errors (OSError,
    asyncio.TimeoutError) propagate.
    """

    # ------------------------------------------------------------
    # discovery and sessions
    # ------------------------------------------------------------

    @abstractmethod
    async def get_endpoints(self, url: str) -> list[Endpoint]: ...

    @abstractmethod
    async def open_session(
        self,
        endpoint: Endpoint,
        identity: UserIdentity,
        session_name: str,
        timeout: float,
        listener: EngineListener,
    ) -> SessionHandle: ...

    @abstractmethod
    async def close_session(self, handle: SessionHandle, timeout: float) -> None: ...

    @abstractmethod
    async def reconnect(self, handle: SessionHandle, timeout: float) -> SessionHandle:
        """
        Re-establish the channel for ``handle``.

        Returns a handle with the same session_id if the server session was
        resumed, or a new one if a fresh session had to be created.
        """

    # ------------------------------------------------------------
    # node management
    # ------------------------------------------------------------

    @abstractmethod
    async def register_nodes(self, handle: SessionHandle, nodes: list[ua.NodeId]) -> list[ua.NodeId]: ...

    @abstractmethod
    async def unregister_nodes(self, handle: SessionHandle, nodes: list[ua.NodeId]) -> None: ...

    # ------------------------------------------------------------
    # view services
    # ------------------------------------------------------------

    @abstractmethod
    async def browse(
        self,
        handle: SessionHandle,
        descriptions: list[BrowseDescription],
        max_references_per_node: int,
    ) -> list[BrowseResult]: ...

    @abstractmethod
    async def browse_next(
        self,
        handle: SessionHandle,
        continuation_points: list[bytes],
        release: bool = False,
    ) -> list[BrowseResult]: ...

    @abstractmethod
    async def translate_browse_paths(
        self, handle: SessionHandle, paths: list[BrowsePath]
    ) -> list[BrowsePathResult]: ...

    # ------------------------------------------------------------
    # attribute and method services
    # ------------------------------------------------------------

    @abstractmethod
    async def read(self, handle: SessionHandle, nodes: list[ReadValueId]) -> list[DataValue]: ...

    @abstractmethod
    async def write(self, handle: SessionHandle, values: list[WriteValue]) -> list[int]: ...

    @abstractmethod
    async def call(
        self, handle: SessionHandle, requests: list[CallMethodRequest]
    ) -> list[CallMethodResult]: ...

    # ------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------

    @abstractmethod
    async def create_subscription(
        self,
        handle: SessionHandle,
        publishing_interval: float,
        publishing_enabled: bool,
        callback: NotificationCallback,
    ) -> int: ...

    @abstractmethod
    async def delete_subscription(self, handle: SessionHandle, subscription_id: int) -> None: ...

    @abstractmethod
    async def create_monitored_items(
        self,
        handle: SessionHandle,
        subscription_id: int,
        items: list[MonitoredItemRequest],
    ) -> list[MonitoredItemResult]: ...

    @abstractmethod
    async def delete_monitored_items(
        self,
        handle: SessionHandle,
        subscription_id: int,
        monitored_item_ids: list[int],
    ) -> list[int]: ...

    # ------------------------------------------------------------
    # structure codecs
    # ------------------------------------------------------------

    def create_decoder(self, tag: EncodingTag, payload: Any):
        return codec.create_decoder(tag, payload)

    def create_encoder(self, tag: EncodingTag, type_name: str = "Structure"):
        return codec.create_encoder(tag, type_name)
