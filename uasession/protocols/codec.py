# uasession/protocols/codec.py
"""
Structure codecs for custom data types.

A decoder/encoder pair exists per wire encoding (binary, XML, JSON). They
only know how to move builtin values in and out of a payload; the field
layout comes from a TypeDescriptor and is walked by
``uasession.datatypes.descriptors``.

Decoder interface:
    read_builtin(type_name, name)       one builtin value (name None = current item)
    read_bits(name, count)              packed bit field, None if the encoding has none
    read_length(name)                   array length prefix, None if the encoding has none
    read_structure(name, fn)            fn(decoder) inside a nested structure
    read_array(name, count, fn)         list of fn(decoder), one per element

Encoders mirror this with write_* methods and ``finish()`` returning the
payload.
"""

from __future__ import annotations

import base64
import json
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from asyncua import ua
from asyncua.common.utils import Buffer
from asyncua.ua import ua_binary
from asyncua.ua.ua_binary import Primitives

__all__ = [
    "EncodingTag",
    "BUILTIN_TYPES",
    "BinaryDecoder",
    "BinaryEncoder",
    "XmlDecoder",
    "XmlEncoder",
    "JsonDecoder",
    "JsonEncoder",
    "create_decoder",
    "create_encoder",
]


class EncodingTag(Enum):
    """How the body of an ExtensionObject is serialised."""

    NONE = 0
    OBJECT = 1
    BINARY = 2
    XML = 3
    JSON = 4


_INTEGER_TYPES = {"SByte", "Byte", "Int16", "UInt16", "Int32", "UInt32", "Int64", "UInt64"}
_FLOAT_TYPES = {"Float", "Double"}
_TEXT_TYPES = {"String", "CharArray", "XmlElement"}
_PRIMITIVE_TYPES = {"Boolean", "DateTime", "Guid", "ByteString"} | _INTEGER_TYPES | _FLOAT_TYPES | _TEXT_TYPES

# Builtins with their own asyncua binary codec
_NODE_ID_TYPES = {"NodeId", "ExpandedNodeId"}
_UA_STRUCT_TYPES = {"StatusCode", "QualifiedName", "LocalizedText", "DataValue", "DiagnosticInfo"}

# Builtins the XML and JSON codecs can represent
_TEXTUAL_TYPES = _PRIMITIVE_TYPES | _NODE_ID_TYPES | {"StatusCode", "QualifiedName", "LocalizedText", "Bit"}

# Builtin type names as they appear in type dictionaries (after normalisation)
BUILTIN_TYPES = frozenset(
    _PRIMITIVE_TYPES | _NODE_ID_TYPES | _UA_STRUCT_TYPES | {"Variant", "ExtensionObject", "Bit"}
)


def _check_builtin(type_name: str, supported: frozenset[str] | set[str] = BUILTIN_TYPES) -> None:
    if type_name not in BUILTIN_TYPES:
        raise ValueError(f"Unsupported builtin type: {type_name}")
    if type_name not in supported:
        raise ValueError(f"{type_name} cannot be carried in this encoding")


def _coerce(type_name: str, value: Any) -> Any:
    """Accept plain Python values for the asyncua builtin types."""
    if type_name in _NODE_ID_TYPES and isinstance(value, str):
        return ua.NodeId.from_string(value)
    if type_name == "StatusCode" and isinstance(value, int):
        return ua.StatusCode(value)
    if type_name == "LocalizedText" and isinstance(value, str):
        return ua.LocalizedText(Text=value)
    if type_name == "QualifiedName" and isinstance(value, str):
        return ua.QualifiedName.from_string(value)
    if type_name == "Variant" and not isinstance(value, ua.Variant):
        return ua.Variant(value)
    return value


# ----------------------------------------------------------------
# Binary
# ----------------------------------------------------------------


class BinaryDecoder:
    """Reads builtins sequentially from an OPC UA binary body."""

    def __init__(self, payload: bytes):
        self._buffer = Buffer(payload)
        self._bits = 0
        self._bit_count = 0

    def read_builtin(self, type_name: str, name: str | None) -> Any:
        _check_builtin(type_name)
        if type_name == "Bit":
            return bool(self.read_bits(name, 1))
        # Bit fields are padded to a byte boundary
        self._bit_count = 0
        self._bits = 0
        if type_name in _NODE_ID_TYPES:
            return ua_binary.nodeid_from_binary(self._buffer)
        if type_name == "Variant":
            return ua_binary.variant_from_binary(self._buffer)
        if type_name == "ExtensionObject":
            return ua_binary.extensionobject_from_binary(self._buffer)
        if type_name in _UA_STRUCT_TYPES:
            return ua_binary.struct_from_binary(getattr(ua, type_name), self._buffer)
        if type_name == "XmlElement":
            return Primitives.String.unpack(self._buffer)
        return getattr(Primitives, type_name).unpack(self._buffer)

    def read_bits(self, name: str | None, count: int) -> int:
        while self._bit_count < count:
            self._bits |= Primitives.Byte.unpack(self._buffer) << self._bit_count
            self._bit_count += 8
        value = self._bits & ((1 << count) - 1)
        self._bits >>= count
        self._bit_count -= count
        if self._bit_count == 0:
            self._bits = 0
        return value

    def read_length(self, name: str) -> int | None:
        self._bit_count = 0
        self._bits = 0
        return Primitives.Int32.unpack(self._buffer)

    def read_structure(self, name: str | None, fn: Callable[[Any], Any]) -> Any:
        return fn(self)

    def read_array(self, name: str, count: int | None, fn: Callable[[Any], Any]) -> list[Any]:
        # -1 encodes a null array
        if count is None or count < 0:
            return []
        return [fn(self) for _ in range(count)]


class BinaryEncoder:
    """Appends builtins to an OPC UA binary body."""

    def __init__(self):
        self._chunks: list[bytes] = []
        self._bits = 0
        self._bit_count = 0

    def _flush_bits(self) -> None:
        while self._bit_count > 0:
            self._chunks.append(Primitives.Byte.pack(self._bits & 0xFF))
            self._bits >>= 8
            self._bit_count -= 8
        self._bits = 0
        self._bit_count = 0

    def write_builtin(self, type_name: str, name: str | None, value: Any) -> None:
        _check_builtin(type_name)
        if type_name == "Bit":
            self.write_bits(name, 1, int(bool(value)))
            return
        self._flush_bits()
        value = _coerce(type_name, value)
        if type_name in _NODE_ID_TYPES:
            self._chunks.append(ua_binary.nodeid_to_binary(value))
        elif type_name == "Variant":
            self._chunks.append(ua_binary.variant_to_binary(value))
        elif type_name == "ExtensionObject":
            self._chunks.append(ua_binary.extensionobject_to_binary(value))
        elif type_name in _UA_STRUCT_TYPES:
            self._chunks.append(ua_binary.struct_to_binary(value))
        elif type_name == "XmlElement":
            self._chunks.append(Primitives.String.pack(value))
        else:
            self._chunks.append(getattr(Primitives, type_name).pack(value))

    def write_bits(self, name: str | None, count: int, value: int) -> None:
        self._bits |= (value & ((1 << count) - 1)) << self._bit_count
        self._bit_count += count
        while self._bit_count >= 8:
            self._chunks.append(Primitives.Byte.pack(self._bits & 0xFF))
            self._bits >>= 8
            self._bit_count -= 8

    def write_length(self, name: str, count: int) -> None:
        self._flush_bits()
        self._chunks.append(Primitives.Int32.pack(count))

    def write_structure(self, name: str | None, fn: Callable[[Any], None]) -> None:
        fn(self)

    def write_array(self, name: str, values: list[Any], fn: Callable[[Any, Any], None]) -> None:
        for value in values:
            fn(self, value)

    def finish(self) -> bytes:
        self._flush_bits()
        return b"".join(self._chunks)


# ----------------------------------------------------------------
# XML
# ----------------------------------------------------------------


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_text(type_name: str, text: str | None) -> Any:
    if text is None:
        return None if type_name not in _TEXT_TYPES else ""
    text = text.strip()
    if type_name in ("Boolean", "Bit"):
        return text.lower() in ("true", "1")
    if type_name in _INTEGER_TYPES:
        return int(text)
    if type_name in _FLOAT_TYPES:
        return float(text)
    if type_name == "DateTime":
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    if type_name == "Guid":
        return uuid.UUID(text)
    if type_name == "ByteString":
        return base64.b64decode(text)
    return text


def _format_text(type_name: str, value: Any) -> str | None:
    if value is None:
        return None
    if type_name in ("Boolean", "Bit"):
        return "true" if value else "false"
    if type_name == "DateTime":
        return value.isoformat()
    if type_name == "ByteString":
        return base64.b64encode(value).decode("ascii")
    return str(value)


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name:
            return child.text.strip() if child.text is not None else None
    return None


def _parse_element(type_name: str, element: ET.Element) -> Any:
    if type_name in _NODE_ID_TYPES:
        identifier = _child_text(element, "Identifier")
        return ua.NodeId.from_string(identifier) if identifier else ua.NodeId()
    if type_name == "StatusCode":
        return ua.StatusCode(int(_child_text(element, "Code") or 0))
    if type_name == "QualifiedName":
        return ua.QualifiedName(
            Name=_child_text(element, "Name"),
            NamespaceIndex=int(_child_text(element, "NamespaceIndex") or 0),
        )
    if type_name == "LocalizedText":
        return ua.LocalizedText(Text=_child_text(element, "Text"), Locale=_child_text(element, "Locale"))
    return _parse_text(type_name, element.text)


def _format_element(target: ET.Element, type_name: str, value: Any) -> None:
    value = _coerce(type_name, value)
    if value is None:
        return
    if type_name in _NODE_ID_TYPES:
        ET.SubElement(target, "Identifier").text = value.to_string()
    elif type_name == "StatusCode":
        ET.SubElement(target, "Code").text = str(value.value)
    elif type_name == "QualifiedName":
        ET.SubElement(target, "NamespaceIndex").text = str(value.NamespaceIndex)
        ET.SubElement(target, "Name").text = value.Name
    elif type_name == "LocalizedText":
        if value.Locale:
            ET.SubElement(target, "Locale").text = value.Locale
        ET.SubElement(target, "Text").text = value.Text
    else:
        target.text = _format_text(type_name, value)


class XmlDecoder:
    """Reads builtins from the child elements of an XML body."""

    def __init__(self, payload: str | bytes):
        self._stack: list[ET.Element] = [ET.fromstring(payload)]

    def _child(self, name: str | None) -> ET.Element | None:
        current = self._stack[-1]
        if name is None:
            return current
        for child in current:
            if _local_name(child.tag) == name:
                return child
        return None

    def read_builtin(self, type_name: str, name: str | None) -> Any:
        _check_builtin(type_name, _TEXTUAL_TYPES)
        element = self._child(name)
        if element is None:
            return None
        return _parse_element(type_name, element)

    def read_bits(self, name: str | None, count: int) -> int | None:
        return None

    def read_length(self, name: str) -> int | None:
        return None

    def read_structure(self, name: str | None, fn: Callable[[Any], Any]) -> Any:
        element = self._child(name)
        if element is None:
            return None
        self._stack.append(element)
        try:
            return fn(self)
        finally:
            self._stack.pop()

    def read_array(self, name: str, count: int | None, fn: Callable[[Any], Any]) -> list[Any]:
        container = self._child(name)
        if container is None:
            return []
        values = []
        for element in container:
            self._stack.append(element)
            try:
                values.append(fn(self))
            finally:
                self._stack.pop()
        return values


class XmlEncoder:
    """Builds an XML body, one child element per field."""

    def __init__(self, root_name: str):
        self._root = ET.Element(root_name)
        self._stack: list[ET.Element] = [self._root]

    def _target(self, name: str | None) -> ET.Element:
        if name is None:
            return self._stack[-1]
        return ET.SubElement(self._stack[-1], name)

    def write_builtin(self, type_name: str, name: str | None, value: Any) -> None:
        _check_builtin(type_name, _TEXTUAL_TYPES)
        _format_element(self._target(name), type_name, value)

    def write_bits(self, name: str | None, count: int, value: int) -> None:
        pass

    def write_length(self, name: str, count: int) -> None:
        pass

    def write_structure(self, name: str | None, fn: Callable[[Any], None]) -> None:
        self._stack.append(self._target(name))
        try:
            fn(self)
        finally:
            self._stack.pop()

    def write_array(self, name: str, values: list[Any], fn: Callable[[Any, Any], None]) -> None:
        container = ET.SubElement(self._stack[-1], name)
        for value in values:
            self._stack.append(ET.SubElement(container, "Item"))
            try:
                fn(self, value)
            finally:
                self._stack.pop()

    def finish(self) -> str:
        return ET.tostring(self._root, encoding="unicode")


# ----------------------------------------------------------------
# JSON
# ----------------------------------------------------------------


def _from_json(type_name: str, value: Any) -> Any:
    if value is None:
        return None
    if type_name == "DateTime":
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if type_name == "Guid":
        return uuid.UUID(value)
    if type_name == "ByteString":
        return base64.b64decode(value)
    if type_name in _INTEGER_TYPES:
        # 64-bit integers travel as strings
        return int(value)
    if type_name in _NODE_ID_TYPES:
        return ua.NodeId.from_string(value)
    if type_name == "StatusCode":
        return ua.StatusCode(int(value))
    if type_name == "QualifiedName":
        return ua.QualifiedName(Name=value.get("Name"), NamespaceIndex=int(value.get("Uri", 0)))
    if type_name == "LocalizedText":
        return ua.LocalizedText(Text=value.get("Text"), Locale=value.get("Locale"))
    return value


def _to_json(type_name: str, value: Any) -> Any:
    value = _coerce(type_name, value)
    if value is None:
        return None
    if type_name in _NODE_ID_TYPES:
        return value.to_string()
    if type_name == "StatusCode":
        return value.value
    if type_name == "QualifiedName":
        return {"Name": value.Name, "Uri": value.NamespaceIndex}
    if type_name == "LocalizedText":
        return {"Locale": value.Locale, "Text": value.Text}
    if type_name == "DateTime":
        return value.isoformat()
    if type_name == "Guid":
        return str(value)
    if type_name == "ByteString":
        return base64.b64encode(value).decode("ascii")
    if type_name in ("Int64", "UInt64"):
        return str(value)
    return value


class JsonDecoder:
    """Reads builtins from a JSON object body."""

    def __init__(self, payload: str | bytes):
        self._stack: list[Any] = [json.loads(payload)]

    def _get(self, name: str | None) -> Any:
        current = self._stack[-1]
        if name is None:
            return current
        if not isinstance(current, dict):
            return None
        return current.get(name)

    def read_builtin(self, type_name: str, name: str | None) -> Any:
        _check_builtin(type_name, _TEXTUAL_TYPES)
        return _from_json(type_name, self._get(name))

    def read_bits(self, name: str | None, count: int) -> int | None:
        return None

    def read_length(self, name: str) -> int | None:
        return None

    def read_structure(self, name: str | None, fn: Callable[[Any], Any]) -> Any:
        value = self._get(name)
        if value is None:
            return None
        self._stack.append(value)
        try:
            return fn(self)
        finally:
            self._stack.pop()

    def read_array(self, name: str, count: int | None, fn: Callable[[Any], Any]) -> list[Any]:
        values = []
        for item in self._get(name) or []:
            self._stack.append(item)
            try:
                values.append(fn(self))
            finally:
                self._stack.pop()
        return values


class JsonEncoder:
    """Builds a JSON object body."""

    def __init__(self):
        self._root: dict[str, Any] = {}
        self._stack: list[Any] = [self._root]
        self._item: Any = None

    def write_builtin(self, type_name: str, name: str | None, value: Any) -> None:
        _check_builtin(type_name, _TEXTUAL_TYPES)
        if name is None:
            self._item = _to_json(type_name, value)
        else:
            self._stack[-1][name] = _to_json(type_name, value)

    def write_bits(self, name: str | None, count: int, value: int) -> None:
        pass

    def write_length(self, name: str, count: int) -> None:
        pass

    def write_structure(self, name: str | None, fn: Callable[[Any], None]) -> None:
        nested: dict[str, Any] = {}
        self._stack.append(nested)
        try:
            fn(self)
        finally:
            self._stack.pop()
        if name is None:
            self._item = nested
        else:
            self._stack[-1][name] = nested

    def write_array(self, name: str, values: list[Any], fn: Callable[[Any, Any], None]) -> None:
        items = []
        for value in values:
            self._item = None
            fn(self, value)
            items.append(self._item)
        self._item = None
        self._stack[-1][name] = items

    def finish(self) -> str:
        return json.dumps(self._root)


def create_decoder(tag: EncodingTag, payload: Any):
    """Decoder for a BINARY, XML or JSON body."""
    if tag == EncodingTag.BINARY:
        return BinaryDecoder(payload)
    if tag == EncodingTag.XML:
        return XmlDecoder(payload)
    if tag == EncodingTag.JSON:
        return JsonDecoder(payload)
    raise ValueError(f"No decoder for encoding {tag.name}")


def create_encoder(tag: EncodingTag, type_name: str = "Structure"):
    """Encoder for a BINARY, XML or JSON body."""
    if tag == EncodingTag.BINARY:
        return BinaryEncoder()
    if tag == EncodingTag.XML:
        return XmlEncoder(type_name)
    if tag == EncodingTag.JSON:
        return JsonEncoder()
    raise ValueError(f"No encoder for encoding {tag.name}")
