# uasession/protocols/services.py
"""
Service request and result records exchanged with the protocol engine.

These are plain dataclasses so the session layer does not depend on the
structure classes of a particular OPC UA stack. Node identifiers are
``asyncua.ua.NodeId`` everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from asyncua import ua

from uasession.errors import ServiceFault
from uasession.protocols.codec import EncodingTag

__all__ = [
    "GOOD",
    "END_OF_PATH",
    "is_good",
    "is_bad",
    "is_uncertain",
    "check_status",
    "to_node_id",
    "DataValue",
    "ExtensionObject",
    "BrowseDescription",
    "ReferenceDescription",
    "BrowseResult",
    "RelativePathElement",
    "BrowsePath",
    "ExpandedNodeRef",
    "BrowsePathTarget",
    "BrowsePathResult",
    "ReadValueId",
    "WriteValue",
    "CallMethodRequest",
    "CallMethodResult",
    "MonitoredItemRequest",
    "MonitoredItemResult",
]

GOOD = 0

# RemainingPathIndex value meaning the target matched the whole path
END_OF_PATH = 0xFFFFFFFF

# Every field except the reference type definition (ResultMask bits 0..5)
RESULT_MASK_ALL = 0x3F

_SEVERITY_MASK = 0xC0000000
_SEVERITY_BAD = 0x80000000
_SEVERITY_UNCERTAIN = 0x40000000


def is_good(status_code: int) -> bool:
    return (status_code & _SEVERITY_MASK) == 0


def is_bad(status_code: int) -> bool:
    return (status_code & _SEVERITY_BAD) != 0


def is_uncertain(status_code: int) -> bool:
    return (status_code & _SEVERITY_MASK) == _SEVERITY_UNCERTAIN


def check_status(status_code: int, message: str = "") -> None:
    """Raise ServiceFault if the status code is bad."""
    if is_bad(status_code):
        raise ServiceFault(status_code, message)


def to_node_id(node: str | ua.NodeId) -> ua.NodeId:
    """Accept either a NodeId or its string form (``ns=2;s=Pump``)."""
    if isinstance(node, ua.NodeId):
        return node
    if isinstance(node, str):
        return ua.NodeId.from_string(node)
    raise TypeError(f"Expected NodeId or string, got {type(node).__name__}")


# ----------------------------------------------------------------
# Values
# ----------------------------------------------------------------


@dataclass
class DataValue:
    """An attribute value with its status and timestamps."""

    value: Any = None
    status_code: int = GOOD
    source_timestamp: datetime | None = None
    server_timestamp: datetime | None = None


@dataclass
class ExtensionObject:
    """
    A structured value of a custom data type.

    ``type_id`` is the encoding node the body was serialised with. ``body``
    is bytes for BINARY, text for XML and JSON, and the already decoded
    object for OBJECT.
    """

    type_id: ua.NodeId
    encoding: EncodingTag
    body: Any = None


# ----------------------------------------------------------------
# Browse
# ----------------------------------------------------------------


@dataclass
class BrowseDescription:
    node_id: ua.NodeId
    direction: ua.BrowseDirection = ua.BrowseDirection.Forward
    reference_type_id: ua.NodeId = field(
        default_factory=lambda: ua.NodeId(ua.ObjectIds.HierarchicalReferences)
    )
    include_subtypes: bool = True
    node_class_mask: int = 0
    result_mask: int = RESULT_MASK_ALL


@dataclass
class ExpandedNodeRef:
    """A node id that may live in another namespace table or another server."""

    node_id: ua.NodeId
    namespace_uri: str | None = None
    server_index: int = 0


@dataclass
class ReferenceDescription:
    node_id: ExpandedNodeRef
    reference_type_id: ua.NodeId | None = None
    is_forward: bool = True
    browse_name: ua.QualifiedName | None = None
    display_name: str = ""
    node_class: ua.NodeClass = ua.NodeClass.Unspecified
    type_definition: ExpandedNodeRef | None = None


@dataclass
class BrowseResult:
    status_code: int = GOOD
    continuation_point: bytes | None = None
    references: list[ReferenceDescription] = field(default_factory=list)


@dataclass
class RelativePathElement:
    target_name: ua.QualifiedName
    reference_type_id: ua.NodeId = field(
        default_factory=lambda: ua.NodeId(ua.ObjectIds.HierarchicalReferences)
    )
    is_inverse: bool = False
    include_subtypes: bool = True


@dataclass
class BrowsePath:
    starting_node: ua.NodeId
    elements: list[RelativePathElement] = field(default_factory=list)


@dataclass
class BrowsePathTarget:
    target_id: ExpandedNodeRef
    remaining_path_index: int = END_OF_PATH


@dataclass
class BrowsePathResult:
    status_code: int = GOOD
    targets: list[BrowsePathTarget] = field(default_factory=list)


# ----------------------------------------------------------------
# Attribute services
# ----------------------------------------------------------------


@dataclass
class ReadValueId:
    node_id: ua.NodeId
    attribute_id: int = ua.AttributeIds.Value


@dataclass
class WriteValue:
    node_id: ua.NodeId
    value: DataValue
    attribute_id: int = ua.AttributeIds.Value


# ----------------------------------------------------------------
# Method service
# ----------------------------------------------------------------


@dataclass
class CallMethodRequest:
    object_id: ua.NodeId
    method_id: ua.NodeId
    input_arguments: list[Any] = field(default_factory=list)


@dataclass
class CallMethodResult:
    status_code: int = GOOD
    input_argument_results: list[int] = field(default_factory=list)
    output_arguments: list[Any] = field(default_factory=list)


# ----------------------------------------------------------------
# Monitored items
# ----------------------------------------------------------------


@dataclass
class MonitoredItemRequest:
    node_id: ua.NodeId
    client_handle: int
    sampling_interval: float = 1.0
    queue_size: int = 1
    discard_oldest: bool = True
    attribute_id: int = ua.AttributeIds.Value


@dataclass
class MonitoredItemResult:
    status_code: int = GOOD
    monitored_item_id: int = 0
    revised_sampling_interval: float = 0.0
    revised_queue_size: int = 0
