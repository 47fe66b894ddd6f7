# uasession/state/connection_state.py
"""
Connection state records owned by the SessionManager.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from uasession.protocols.engine import Endpoint, SessionHandle, UserIdentity
from uasession.protocols.services import GOOD

__all__ = ["ConnectionState", "Session", "ConnectionStatusChange"]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class Session:
    """The live server session.

    Attributes:
        handle: Engine handle for the server session
        endpoint: Endpoint the session was built on
        identity: User identity the session was activated with
        name: Session name sent to the server
        session_timeout: Negotiated session timeout (s)
        keepalive_interval: Keepalive period (s)
        generation: Incremented whenever a connect or reconnect produced a
            different server session
        last_keepalive: Monotonic time of the last keepalive received
    """

    handle: SessionHandle
    endpoint: Endpoint
    identity: UserIdentity
    name: str
    session_timeout: float
    keepalive_interval: float
    generation: int
    last_keepalive: float = 0.0

    @property
    def namespace_uris(self) -> list[str]:
        return self.handle.namespace_uris


@dataclass
class ConnectionStatusChange:
    """Payload of the ``connection_status_changed`` event."""

    state: ConnectionState
    status_code: int = GOOD
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
