# uasession/__init__.py
"""
Managed OPC UA client session layer.

Structure:
    uasession/
    ├── session/         # SessionManager (reconnection, service surface), method calls
    ├── state/           # ConnectionState, Session, NodeIdRegistry
    ├── datatypes/       # TypeDescriptor parsing, TypeDescriptorResolver
    ├── browse/          # BrowsePaginator, relative path parser
    ├── subscriptions/   # SubscriptionDispatcher
    ├── protocols/       # ProtocolEngine ABC, service records, codecs, asyncua engine
    └── security/        # structured logging, certificate inspection
"""

from uasession.errors import (
    AggregateFailure,
    BatchFailure,
    ConfigurationError,
    NoActiveSession,
    NoEncodingFound,
    RegistrationFailure,
    ServiceFault,
    SessionLost,
    TypeNotFound,
    TypeResolutionError,
    UaSessionError,
    UnknownEncoding,
    UnsupportedType,
)
from uasession.protocols.engine import Endpoint, MessageSecurityMode, UserIdentity
from uasession.session.manager import SessionManager
from uasession.state.connection_state import ConnectionState
from uasession.state.node_registry import NodeEntry, NodeEntryCollection, NodeValueRecord

__version__ = "0.3.0"

__all__ = [
    "SessionManager",
    "ConnectionState",
    "Endpoint",
    "MessageSecurityMode",
    "UserIdentity",
    "NodeEntry",
    "NodeEntryCollection",
    "NodeValueRecord",
    # Errors
    "UaSessionError",
    "ConfigurationError",
    "NoActiveSession",
    "SessionLost",
    "ServiceFault",
    "AggregateFailure",
    "RegistrationFailure",
    "BatchFailure",
    "TypeResolutionError",
    "UnsupportedType",
    "NoEncodingFound",
    "TypeNotFound",
    "UnknownEncoding",
]
