# uasession/datatypes/resolver.py
"""
Dynamic resolution of custom data types.

Maps nodes and encoding ids to TypeDescriptors built from the server's
binary type dictionaries, and decodes/encodes ExtensionObject bodies with
them.
"""

from __future__ import annotations

import asyncio
import struct
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Any

from asyncua import ua
from asyncua.common.utils import NotEnoughData

from uasession.datatypes.descriptors import (
    TypeDescriptor,
    build_descriptors,
    decode_structure,
    encode_structure,
    normalize_type_name,
)
from uasession.errors import (
    BatchFailure,
    NoEncodingFound,
    TypeNotFound,
    TypeResolutionError,
    UnknownEncoding,
    UnsupportedType,
)
from uasession.protocols.codec import EncodingTag
from uasession.protocols.services import (
    BrowseDescription,
    DataValue,
    ExtensionObject,
    ReadValueId,
    check_status,
    is_bad,
    to_node_id,
)
from uasession.security.logging_system import EventCategory, EventSeverity, get_logger

if TYPE_CHECKING:
    from uasession.session.manager import SessionManager

__all__ = ["TypeDescriptorResolver", "ENCODING_PREFERENCE"]

logger = get_logger(__name__)

# Encoding nodes in order of preference, by browse/display name
ENCODING_PREFERENCE = ("Default Binary", "Default XML", "Default JSON")

_DECODABLE = (EncodingTag.BINARY, EncodingTag.XML, EncodingTag.JSON)
_CODEC_ERRORS = (ValueError, TypeError, struct.error, ET.ParseError, NotEnoughData, ua.UaError)


class TypeDescriptorResolver:
    """
    Resolves custom data types against the server's type dictionaries.

    Example:
        >>> descriptor = await resolver.resolve_encoding("ns=3;s=Pump1")
        >>> value = await resolver.decode_value(extension_object)
    """

    def __init__(self, manager: "SessionManager"):
        self._manager = manager
        self._lock = asyncio.Lock()

        # Type name -> descriptor; replaced wholesale on refresh
        self._types: dict[str, TypeDescriptor] = {}
        # Node id string -> type name, filled lazily
        self._node_types: dict[str, str] = {}
        # Encoding node id string -> type name
        self._encoding_keys: dict[str, str] = {}
        # Type name -> encoding node id, for encode_value()
        self._encoding_nodes: dict[str, ua.NodeId] = {}
        self._generation: int | None = None

        manager.session_established.add(self.on_session_established)

    @property
    def types(self) -> dict[str, TypeDescriptor]:
        return self._types

    def on_session_established(self, manager: "SessionManager") -> None:
        # Node and encoding ids are only meaningful within one server session
        if self._generation != manager.generation:
            self._node_types.clear()
            self._encoding_keys.clear()
            self._encoding_nodes.clear()
            self._generation = manager.generation

    # ----------------------------------------------------------------
    # Server queries
    # ----------------------------------------------------------------

    async def _references(self, node_id: ua.NodeId, reference_type: int, node_class_mask: int = 0):
        results = await self._manager.paginator.browse(
            [
                BrowseDescription(
                    node_id=node_id,
                    reference_type_id=ua.NodeId(reference_type),
                    include_subtypes=True,
                    node_class_mask=node_class_mask,
                )
            ]
        )
        return results[0]

    async def _read(self, nodes: list[ReadValueId]) -> list[DataValue]:
        return await self._manager.execute(self._manager.engine.read, nodes)

    async def _type_key_for_encoding(self, encoding_id: ua.NodeId) -> str:
        """Type name for an encoding node, via its HasDescription target."""
        cache_key = encoding_id.to_string()
        if cache_key in self._encoding_keys:
            return self._encoding_keys[cache_key]

        descriptions = await self._references(encoding_id, ua.ObjectIds.HasDescription)
        if descriptions:
            (value,) = await self._read([ReadValueId(descriptions[0].node_id.node_id)])
            check_status(value.status_code, f"Reading description of {cache_key}")
            raw = value.value.decode() if isinstance(value.value, bytes) else str(value.value)
        elif isinstance(encoding_id.Identifier, str):
            raw = encoding_id.Identifier
        else:
            raw = cache_key

        type_name = normalize_type_name(raw)
        self._encoding_keys[cache_key] = type_name
        self._encoding_nodes.setdefault(type_name, encoding_id)
        return type_name

    # ----------------------------------------------------------------
    # Resolution
    # ----------------------------------------------------------------

    async def resolve_encoding(self, node: str | ua.NodeId) -> TypeDescriptor:
        """
        Descriptor for the data type of a variable node.

        Raises:
            UnsupportedType: If the node is not a variable
            NoEncodingFound: If the data type has no binary, XML or JSON encoding
            TypeNotFound: If no dictionary declares the type, even after a refresh
        """
        node_id = to_node_id(node)
        key = node_id.to_string()

        type_name = self._node_types.get(key)
        if type_name is not None:
            return await self.get_type_encoding(type_name)

        node_class, data_type = await self._read(
            [
                ReadValueId(node_id, ua.AttributeIds.NodeClass),
                ReadValueId(node_id, ua.AttributeIds.DataType),
            ]
        )
        check_status(node_class.status_code, f"Reading NodeClass of {key}")
        if ua.NodeClass(node_class.value) != ua.NodeClass.Variable:
            raise UnsupportedType(f"{key} is not a variable and has no data type")
        check_status(data_type.status_code, f"Reading DataType of {key}")

        encodings = await self._references(data_type.value, ua.ObjectIds.HasEncoding)
        if not encodings:
            raise NoEncodingFound(
                f"Data type {data_type.value.to_string()} of {key} has no encodings; "
                "it may be a builtin type"
            )

        chosen = None
        for preferred in ENCODING_PREFERENCE:
            chosen = next(
                (
                    ref for ref in encodings
                    if ref.display_name == preferred
                    or (ref.browse_name is not None and ref.browse_name.Name == preferred)
                ),
                None,
            )
            if chosen is not None:
                break
        if chosen is None:
            raise NoEncodingFound(f"No binary, XML or JSON encoding for {key}")

        encoding_id = chosen.node_id.node_id
        type_name = await self._type_key_for_encoding(encoding_id)
        self._encoding_nodes[type_name] = encoding_id

        descriptor = await self.get_type_encoding(type_name)
        self._node_types[key] = descriptor.name
        return descriptor

    async def get_type_encoding(self, type_name: str) -> TypeDescriptor:
        """
        Descriptor by type name, refreshing the dictionaries once on a miss.

        Raises:
            TypeNotFound: If the type is still unknown after the refresh
        """
        name = normalize_type_name(type_name)
        descriptor = self._types.get(name)
        if descriptor is not None:
            return descriptor

        await self.refresh_schemas()
        descriptor = self._types.get(name)
        if descriptor is None:
            raise TypeNotFound(f"Type not found: {name}")
        return descriptor

    async def refresh_schemas(self) -> int:
        """
        Reload every binary type dictionary from the server.

        Returns:
            Number of types in the new cache
        """
        dictionaries = await self._references(
            ua.NodeId(ua.ObjectIds.OPCBinarySchema_TypeSystem),
            ua.ObjectIds.HasComponent,
            node_class_mask=ua.NodeClass.Variable.value,
        )

        documents: list[bytes | str] = []
        if dictionaries:
            values = await self._read([ReadValueId(ref.node_id.node_id) for ref in dictionaries])
            for ref, value in zip(dictionaries, values):
                if is_bad(value.status_code) or not value.value:
                    logger.warning(f"Skipping type dictionary {ref.node_id.node_id.to_string()}")
                    continue
                documents.append(value.value)

        parsed: list[bytes | str] = []
        for document in documents:
            try:
                ET.fromstring(document.rstrip(b"\x00") if isinstance(document, bytes) else document)
            except ET.ParseError as e:
                logger.warning(f"Skipping malformed type dictionary: {e}")
                continue
            parsed.append(document)

        types = build_descriptors(parsed)
        async with self._lock:
            self._types = types

        await logger.log_event(
            EventSeverity.INFO,
            EventCategory.TYPES,
            f"Loaded {len(types)} types from {len(parsed)} dictionaries",
        )
        return len(types)

    # ----------------------------------------------------------------
    # Decode / encode
    # ----------------------------------------------------------------

    async def _type_name_of(self, value: ExtensionObject) -> str:
        identifier = value.type_id.Identifier
        if isinstance(identifier, str):
            return normalize_type_name(identifier)
        return await self._type_key_for_encoding(value.type_id)

    async def _decode_extension_object(self, value: ExtensionObject) -> Any:
        if value.encoding in (EncodingTag.NONE, EncodingTag.OBJECT):
            return value.body
        if value.encoding not in _DECODABLE:
            raise UnknownEncoding(f"Unknown encoding: {value.encoding!r}")

        descriptor = await self.get_type_encoding(await self._type_name_of(value))
        try:
            decoder = self._manager.engine.create_decoder(value.encoding, value.body)
            return decode_structure(descriptor, decoder)
        except _CODEC_ERRORS as e:
            raise TypeResolutionError(f"Failed to decode {descriptor.name}: {e}") from e

    async def decode_value(self, value: Any) -> Any:
        """
        Decode extension objects into dicts; other values pass through.

        Lists are decoded element-wise.

        Raises:
            UnknownEncoding: If the encoding tag is not decodable
            TypeNotFound: If the type is not declared by any dictionary
            BatchFailure: If some elements of a list failed
        """
        if isinstance(value, DataValue):
            value = value.value

        if isinstance(value, list):
            decoded: list[Any] = []
            failures: list[tuple[int, Exception]] = []
            for index, item in enumerate(value):
                try:
                    decoded.append(await self.decode_value(item))
                except TypeResolutionError as e:
                    failures.append((index, e))
                    decoded.append(None)
            if failures:
                raise BatchFailure(f"Failed to decode {len(failures)} of {len(value)} values", failures)
            return decoded

        if isinstance(value, ExtensionObject):
            return await self._decode_extension_object(value)
        return value

    async def encode_value(
        self,
        type_name: str,
        value: dict[str, Any],
        tag: EncodingTag = EncodingTag.BINARY,
        type_id: ua.NodeId | None = None,
    ) -> ExtensionObject:
        """
        Encode a dict as an ExtensionObject of ``type_name``.

        The encoding node id is taken from ``type_id`` or from an earlier
        resolve_encoding() of a node of the same type.

        Raises:
            NoEncodingFound: If no encoding node id is known
            TypeResolutionError: If ``value`` does not fit the type
        """
        if tag not in _DECODABLE:
            raise UnknownEncoding(f"Cannot encode as {tag!r}")

        descriptor = await self.get_type_encoding(type_name)
        encoding_id = type_id or self._encoding_nodes.get(descriptor.name)
        if encoding_id is None:
            raise NoEncodingFound(
                f"No encoding node known for {descriptor.name}; resolve a node of this type first"
            )

        try:
            encoder = self._manager.engine.create_encoder(tag, descriptor.name)
            encode_structure(descriptor, encoder, value)
        except _CODEC_ERRORS as e:
            raise TypeResolutionError(f"Failed to encode {descriptor.name}: {e}") from e
        return ExtensionObject(type_id=encoding_id, encoding=tag, body=encoder.finish())
