# uasession/datatypes/descriptors.py
"""
Type descriptors for custom structured data types.

Descriptors are built from the server's OPC binary type dictionaries:

    <opc:TypeDictionary xmlns:opc="http://opcfoundation.org/BinarySchema/" ...>
      <opc:StructuredType Name="Pump">
        <opc:Field Name="Speed" TypeName="opc:Double"/>
        <opc:Field Name="NoOfAlarms" TypeName="opc:Int32"/>
        <opc:Field Name="Alarms" TypeName="tns:Alarm" LengthField="NoOfAlarms"/>
      </opc:StructuredType>
    </opc:TypeDictionary>

Parsing is two-pass: every StructuredType is first read into a flat
name -> descriptor map, then fields are linked to the single descriptor
instance of their type. Declaration order does not matter and recursive
types link to themselves.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any

from uasession.protocols.codec import BUILTIN_TYPES
from uasession.security.logging_system import get_logger

__all__ = [
    "BINARY_SCHEMA_NS",
    "FieldDescriptor",
    "TypeDescriptor",
    "normalize_type_name",
    "parse_type_dictionary",
    "link_descriptors",
    "build_descriptors",
    "decode_structure",
    "encode_structure",
]

logger = get_logger(__name__)

BINARY_SCHEMA_NS = "http://opcfoundation.org/BinarySchema/"

_QUOTE_TOKENS = ("&quot;", '"')
_BUILTIN_PREFIXES = ("opc:", "ua:")
_NAMESPACE_PREFIXES = ("tns:",) + _BUILTIN_PREFIXES
_ENCODING_PREFIX = "TE_"


def normalize_type_name(raw: str) -> str:
    """
    Strip quoting, namespace prefixes and the encoding prefix.

    >>> normalize_type_name('tns:"TE_Motor"')
    'Motor'
    """
    name = _strip_quotes(raw)
    for prefix in _NAMESPACE_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix) :]
            break
    if name.startswith(_ENCODING_PREFIX):
        name = name[len(_ENCODING_PREFIX) :]
    return name


def _strip_quotes(raw: str) -> str:
    for token in _QUOTE_TOKENS:
        raw = raw.replace(token, "")
    return raw.strip()


def _is_builtin_reference(raw: str) -> bool:
    return _strip_quotes(raw).startswith(_BUILTIN_PREFIXES)


@dataclass(eq=False)
class FieldDescriptor:
    """One field of a structured type.

    Attributes:
        name: Field name
        type_name: Normalised type name of the field
        builtin: True if the type is a builtin primitive
        length_field: Name of the preceding field holding the element
            count; set for array fields only
        switch_field: Name of the bit field that flags this optional
            field as present
        bit_length: Width of a Bit field
        descriptor: Linked descriptor of a non-builtin type
    """

    name: str
    type_name: str
    builtin: bool = False
    length_field: str | None = None
    switch_field: str | None = None
    bit_length: int = 1
    descriptor: TypeDescriptor | None = field(default=None, repr=False)

    @property
    def is_array(self) -> bool:
        return self.length_field is not None

    @property
    def is_bits(self) -> bool:
        return self.builtin and self.type_name == "Bit"

    @property
    def resolved(self) -> bool:
        if self.builtin:
            return self.type_name in BUILTIN_TYPES
        return self.descriptor is not None


@dataclass(eq=False)
class TypeDescriptor:
    """Layout of one custom data type."""

    name: str
    type_name: str
    fields: list[FieldDescriptor] = field(default_factory=list)
    encoding_id: str | None = None
    is_enum: bool = False

    @property
    def length_fields(self) -> dict[str, str]:
        """Length field name -> array field name."""
        return {f.length_field: f.name for f in self.fields if f.length_field}

    @property
    def switch_fields(self) -> set[str]:
        return {f.switch_field for f in self.fields if f.switch_field}

    def is_hidden(self, f: FieldDescriptor) -> bool:
        """Length, switch and padding fields are wire-only."""
        if f.name in self.length_fields:
            return True
        return f.is_bits and (f.name in self.switch_fields or f.bit_length > 1)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields if not self.is_hidden(f)]


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_type_dictionary(document: str | bytes) -> dict[str, TypeDescriptor]:
    """
    Read StructuredType and EnumeratedType declarations.

    Fields are left unlinked; see link_descriptors().

    Raises:
        ET.ParseError: If the document is not well-formed XML
    """
    if isinstance(document, bytes):
        # Dictionaries are served as ByteString; some servers NUL-terminate them
        document = document.rstrip(b"\x00")
    root = ET.fromstring(document)
    descriptors: dict[str, TypeDescriptor] = {}

    for element in root.iter():
        kind = _local_name(element.tag)
        if kind not in ("StructuredType", "EnumeratedType"):
            continue
        name = normalize_type_name(element.get("Name", ""))
        if not name:
            continue

        descriptor = TypeDescriptor(name=name, type_name=name, is_enum=kind == "EnumeratedType")
        if not descriptor.is_enum:
            for child in element:
                if _local_name(child.tag) != "Field":
                    continue
                raw_type = child.get("TypeName", "")
                length_field = child.get("LengthField")
                switch_field = child.get("SwitchField")
                descriptor.fields.append(
                    FieldDescriptor(
                        name=_strip_quotes(child.get("Name", "")),
                        type_name=normalize_type_name(raw_type),
                        builtin=_is_builtin_reference(raw_type),
                        length_field=_strip_quotes(length_field) if length_field else None,
                        switch_field=_strip_quotes(switch_field) if switch_field else None,
                        bit_length=int(child.get("Length", 1)),
                    )
                )
        descriptors[name] = descriptor

    return descriptors


def link_descriptors(descriptors: dict[str, TypeDescriptor]) -> dict[str, TypeDescriptor]:
    """
    Link nested fields to the shared descriptor of their type.

    Types with a field that references an unknown type (directly or through
    another dropped type) are removed with a warning, so every returned
    descriptor is fully resolved.
    """
    linked = dict(descriptors)

    for descriptor in linked.values():
        for f in descriptor.fields:
            if not f.builtin:
                f.descriptor = linked.get(f.type_name)

    changed = True
    while changed:
        changed = False
        for name, descriptor in list(linked.items()):
            unresolved = [
                f for f in descriptor.fields
                if not f.resolved or (f.descriptor is not None and f.descriptor.name not in linked)
            ]
            if unresolved:
                logger.warning(
                    f"Dropping type '{name}': unresolved field types "
                    f"{', '.join(f'{f.name}:{f.type_name}' for f in unresolved)}"
                )
                del linked[name]
                changed = True

    return linked


def build_descriptors(documents: list[str | bytes]) -> dict[str, TypeDescriptor]:
    """Parse several dictionaries into one linked cache."""
    flat: dict[str, TypeDescriptor] = {}
    for document in documents:
        flat.update(parse_type_dictionary(document))
    return link_descriptors(flat)


# ----------------------------------------------------------------
# Structural decode / encode
# ----------------------------------------------------------------


def _decode_item(f: FieldDescriptor, decoder, name: str | None) -> Any:
    if f.builtin:
        return decoder.read_builtin(f.type_name, name)
    if f.descriptor.is_enum:
        return decoder.read_builtin("Int32", name)
    return decoder.read_structure(name, lambda d: decode_structure(f.descriptor, d))


def decode_structure(descriptor: TypeDescriptor, decoder) -> dict[str, Any]:
    """
    Decode one value of ``descriptor`` into a dict of field values.

    Length fields are consumed but not returned; the array field carries
    the elements. Switch and padding bits are consumed too, and an optional
    field whose switch bit is clear decodes as None.
    """
    length_fields = descriptor.length_fields
    counts: dict[str, int | None] = {}
    flags: dict[str, int | None] = {}
    result: dict[str, Any] = {}

    for f in descriptor.fields:
        if f.switch_field is not None and flags.get(f.switch_field) == 0:
            result[f.name] = None
        elif f.name in length_fields:
            counts[f.name] = decoder.read_length(f.name)
        elif descriptor.is_hidden(f):
            flags[f.name] = decoder.read_bits(f.name, f.bit_length)
        elif f.is_array:
            result[f.name] = decoder.read_array(
                f.name, counts.get(f.length_field), lambda d, f=f: _decode_item(f, d, None)
            )
        else:
            result[f.name] = _decode_item(f, decoder, f.name)

    return result


def _encode_item(f: FieldDescriptor, encoder, name: str | None, value: Any) -> None:
    if f.builtin:
        encoder.write_builtin(f.type_name, name, value)
    elif f.descriptor.is_enum:
        encoder.write_builtin("Int32", name, int(value))
    else:
        encoder.write_structure(name, lambda e: encode_structure(f.descriptor, e, value))


def encode_structure(descriptor: TypeDescriptor, encoder, value: dict[str, Any]) -> None:
    """
    Encode a dict of field values as ``descriptor``.

    Raises:
        ValueError: If a field is missing from ``value``
    """
    if not isinstance(value, dict):
        raise ValueError(f"{descriptor.name} expects a dict, got {type(value).__name__}")

    length_fields = descriptor.length_fields
    switches = descriptor.switch_fields
    for f in descriptor.fields:
        if f.name in length_fields:
            items = value.get(length_fields[f.name]) or []
            encoder.write_length(f.name, len(items))
            continue
        if f.name in switches:
            present = any(
                value.get(o.name) is not None for o in descriptor.fields if o.switch_field == f.name
            )
            encoder.write_bits(f.name, f.bit_length, int(present))
            continue
        if descriptor.is_hidden(f):
            encoder.write_bits(f.name, f.bit_length, 0)
            continue
        if f.switch_field is not None and value.get(f.name) is None:
            continue
        if f.name not in value:
            raise ValueError(f"Missing field '{f.name}' for {descriptor.name}")
        if f.is_array:
            encoder.write_array(
                f.name, value[f.name] or [], lambda e, v, f=f: _encode_item(f, e, None, v)
            )
        else:
            _encode_item(f, encoder, f.name, value[f.name])
