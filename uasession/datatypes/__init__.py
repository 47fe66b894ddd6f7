# uasession/datatypes/__init__.py
"""
Custom data type support.

Modules:
- descriptors: Type dictionary parsing and structural decode/encode
- resolver: Node -> TypeDescriptor resolution against the live server
"""

from uasession.datatypes.descriptors import (
    FieldDescriptor,
    TypeDescriptor,
    build_descriptors,
    normalize_type_name,
)
from uasession.datatypes.resolver import TypeDescriptorResolver

__all__ = [
    "FieldDescriptor",
    "TypeDescriptor",
    "TypeDescriptorResolver",
    "build_descriptors",
    "normalize_type_name",
]
