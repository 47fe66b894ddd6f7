# uasession/session/methods.py
"""
Method discovery and invocation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from asyncua import ua

from uasession.browse.paginator import to_local_node_id
from uasession.errors import BatchFailure, ServiceFault
from uasession.protocols.services import (
    CallMethodRequest,
    CallMethodResult,
    ExtensionObject,
    ReadValueId,
    check_status,
    is_bad,
    to_node_id,
)

if TYPE_CHECKING:
    from uasession.session.manager import SessionManager

__all__ = ["MethodArguments", "MethodCaller", "extract_arguments", "collect_outputs"]

_ARGUMENT_PROPERTIES = ("InputArguments", "OutputArguments")


@dataclass
class MethodArguments:
    """Declared input and output arguments of a method node."""

    input_arguments: list[ua.Argument] = field(default_factory=list)
    output_arguments: list[ua.Argument] = field(default_factory=list)

    @property
    def input_names(self) -> list[str]:
        return [argument.Name for argument in self.input_arguments]

    @property
    def output_names(self) -> list[str]:
        return [argument.Name for argument in self.output_arguments]


def extract_arguments(value: Any) -> list[ua.Argument]:
    """Arguments from an InputArguments/OutputArguments property value."""
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    arguments = []
    for item in items:
        if isinstance(item, ExtensionObject):
            item = item.body
        if item is not None:
            arguments.append(item)
    return arguments


def collect_outputs(results: Sequence[CallMethodResult]) -> list[list[Any]]:
    """
    Output arguments per call result, in request order.

    Raises:
        BatchFailure: If some calls returned a bad status
    """
    outputs: list[list[Any]] = []
    failures: list[tuple[int, Exception]] = []
    for index, result in enumerate(results):
        if is_bad(result.status_code):
            failures.append((index, ServiceFault(result.status_code, f"Method call {index}")))
            outputs.append([])
        else:
            outputs.append(list(result.output_arguments))
    if failures:
        raise BatchFailure(f"{len(failures)} of {len(results)} method calls failed", failures)
    return outputs


class MethodCaller:
    """Method services bound to a session manager."""

    def __init__(self, manager: "SessionManager"):
        self._manager = manager

    async def get_method_arguments(self, method: str | ua.NodeId) -> MethodArguments:
        """
        Read the argument declarations of a method.

        Raises:
            ServiceFault: BadNodeClassInvalid if the node is not a method
        """
        method_id = to_node_id(method)
        engine = self._manager.engine

        (node_class,) = await self._manager.execute(
            engine.read, [ReadValueId(method_id, ua.AttributeIds.NodeClass)]
        )
        check_status(node_class.status_code, f"Reading NodeClass of {method_id.to_string()}")
        if ua.NodeClass(node_class.value) != ua.NodeClass.Method:
            raise ServiceFault(ua.StatusCodes.BadNodeClassInvalid, f"{method_id.to_string()} is not a method")

        arguments = MethodArguments()
        properties = await self._manager.paginator.browse_node(
            method_id, reference_type=ua.ObjectIds.HasProperty
        )
        namespace_uris = self._manager.session.namespace_uris

        wanted = []
        for ref in properties:
            name = ref.browse_name.Name if ref.browse_name is not None else ref.display_name
            if ref.node_class != ua.NodeClass.Variable or name not in _ARGUMENT_PROPERTIES:
                continue
            node_id = to_local_node_id(ref.node_id, namespace_uris)
            if node_id is not None:
                wanted.append((name, node_id))
        if not wanted:
            return arguments

        values = await self._manager.execute(engine.read, [ReadValueId(node_id) for _, node_id in wanted])
        for (name, node_id), value in zip(wanted, values):
            check_status(value.status_code, f"Reading {name} of {method_id.to_string()}")
            if name == "InputArguments":
                arguments.input_arguments = extract_arguments(value.value)
            else:
                arguments.output_arguments = extract_arguments(value.value)
        return arguments

    async def call_method(
        self, object_id: str | ua.NodeId, method_id: str | ua.NodeId, *args: Any
    ) -> list[Any]:
        """
        Call one method and return its output arguments.

        Raises:
            ServiceFault: If the call returned a bad status
        """
        request = CallMethodRequest(to_node_id(object_id), to_node_id(method_id), list(args))
        (result,) = await self._manager.execute(
            self._manager.engine.call, [request], allow_reconnecting=True
        )
        await self._manager.audit(
            f"Called {request.method_id.to_string()}",
            action="call",
            result="FAILED" if is_bad(result.status_code) else "OK",
            object=request.object_id.to_string(),
        )
        check_status(result.status_code, f"Calling {request.method_id.to_string()}")
        return list(result.output_arguments)

    async def call_methods(self, requests: Sequence[CallMethodRequest]) -> list[list[Any]]:
        """Call several methods in one round trip; see collect_outputs()."""
        if not requests:
            return []
        results = await self._manager.execute(
            self._manager.engine.call, list(requests), allow_reconnecting=True
        )
        if len(results) != len(requests):
            raise ServiceFault(
                ua.StatusCodes.BadUnexpectedError,
                f"Expected {len(requests)} call results, got {len(results)}",
            )
        failed = [i for i, result in enumerate(results) if is_bad(result.status_code)]
        await self._manager.audit(
            f"Called {len(requests)} methods",
            action="call",
            result="FAILED" if failed else "OK",
            failed=failed,
        )
        return collect_outputs(results)
