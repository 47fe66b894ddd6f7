# uasession/protocols/__init__.py
"""
Protocol engine interface and wire-level helpers.

Structure:
    uasession/protocols/
    ├── engine.py        # ProtocolEngine / EngineListener ABCs, Endpoint, UserIdentity
    ├── services.py      # service request/result records, status helpers
    ├── codec.py         # binary / XML / JSON structure codecs
    └── opcua/
        └── asyncua_engine.py  # AsyncuaEngine
"""

from uasession.protocols.codec import EncodingTag, create_decoder, create_encoder
from uasession.protocols.engine import (
    Endpoint,
    EngineListener,
    MessageSecurityMode,
    ProtocolEngine,
    SessionHandle,
    UserIdentity,
    UserTokenType,
)

__all__ = [
    "ProtocolEngine",
    "EngineListener",
    "SessionHandle",
    "Endpoint",
    "MessageSecurityMode",
    "UserIdentity",
    "UserTokenType",
    "EncodingTag",
    "create_decoder",
    "create_encoder",
]
