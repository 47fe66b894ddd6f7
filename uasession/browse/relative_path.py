# uasession/browse/relative_path.py
"""
Relative paths from their text form.

    /2:Block.2:Temperature      hierarchical, then aggregated child
    <HasComponent>2:Motor       explicit reference type
    <#!HasChild>Parent          inverse reference without subtypes
    /2:Tank&.1                  '&' escapes a reserved character

Parsing is done by asyncua; browse names in namespace 0 are moved to
``default_namespace``.
"""

from asyncua import ua

from uasession.protocols.services import RelativePathElement

__all__ = ["parse_relative_path"]


def parse_relative_path(text: str, default_namespace: int = 0) -> list[RelativePathElement]:
    """
    Parse a relative path string into elements.

    Raises:
        ValueError: If the text is not a valid relative path
    """
    elements = []
    for element in ua.RelativePath.from_string(text).Elements:
        target = element.TargetName or ua.QualifiedName()
        if target.Name and target.NamespaceIndex == 0:
            target = ua.QualifiedName(Name=target.Name, NamespaceIndex=default_namespace)
        elements.append(
            RelativePathElement(
                target_name=target,
                reference_type_id=element.ReferenceTypeId,
                is_inverse=element.IsInverse,
                include_subtypes=element.IncludeSubtypes,
            )
        )
    return elements
