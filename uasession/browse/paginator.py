# uasession/browse/paginator.py
"""
Browse and TranslateBrowsePaths with continuation point handling.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from asyncua import ua

from uasession.browse.relative_path import parse_relative_path
from uasession.errors import BatchFailure, ServiceFault
from uasession.protocols.services import (
    END_OF_PATH,
    BrowseDescription,
    BrowsePath,
    BrowsePathResult,
    BrowseResult,
    ExpandedNodeRef,
    ReferenceDescription,
    RelativePathElement,
    is_bad,
    to_node_id,
)
from uasession.security.logging_system import get_logger

if TYPE_CHECKING:
    from uasession.session.manager import SessionManager

__all__ = ["BrowsePaginator", "to_local_node_id"]

logger = get_logger(__name__)

RelativePathLike = str | Sequence[RelativePathElement]


def to_local_node_id(ref: ExpandedNodeRef, namespace_uris: Sequence[str]) -> ua.NodeId | None:
    """
    Convert an expanded node id to a NodeId of the connected server.

    Returns None for nodes on another server, or in a namespace the server
    does not list.
    """
    if ref.server_index:
        return None
    if not ref.namespace_uri:
        return ref.node_id
    try:
        index = list(namespace_uris).index(ref.namespace_uri)
    except ValueError:
        return None
    return ua.NodeId(ref.node_id.Identifier, index)


class BrowsePaginator:
    """
    Drains browse operations across continuation points.

    Example:
        >>> paginator = BrowsePaginator(manager)
        >>> [children] = await paginator.browse([BrowseDescription(ua.NodeId(85))])
    """

    # Fresh batches for requests answered BadNoContinuationPoints
    MAX_RETRY_PASSES = 10

    def __init__(self, manager: "SessionManager"):
        self._manager = manager

    async def _call(self, operation, *args):
        # Browsing stays available while a reconnect is in progress
        return await self._manager.execute(operation, *args, allow_reconnecting=True)

    async def browse(
        self,
        descriptions: Sequence[BrowseDescription],
        max_references_per_node: int = 0,
    ) -> list[list[ReferenceDescription]]:
        """
        Browse every description to completion.

        Returns one list of references per description, in input order.

        Raises:
            BatchFailure: If some descriptions came back with a bad status.
                Raised only after every other description was drained.
        """
        engine = self._manager.engine
        references: list[list[ReferenceDescription]] = [[] for _ in descriptions]
        failures: list[tuple[str, Exception]] = []
        pending = list(range(len(descriptions)))
        passes = 0

        while pending:
            passes += 1
            if passes > self.MAX_RETRY_PASSES:
                for index in pending:
                    failures.append(
                        (
                            descriptions[index].node_id.to_string(),
                            ServiceFault(ua.StatusCodes.BadNoContinuationPoints, "retry limit reached"),
                        )
                    )
                break

            results = await self._call(
                engine.browse, [descriptions[i] for i in pending], max_references_per_node
            )
            self._check_length(results, pending)

            retry: list[int] = []
            continuation: list[tuple[int, bytes]] = []
            for index, result in zip(pending, results):
                self._collect(descriptions, index, result, references, failures, retry, continuation)

            try:
                while continuation:
                    results = await self._call(engine.browse_next, [cp for _, cp in continuation])
                    self._check_length(results, continuation)
                    outstanding = continuation
                    continuation = []
                    for (index, _), result in zip(outstanding, results):
                        self._collect(
                            descriptions, index, result, references, failures, retry, continuation
                        )
            except BaseException:
                if continuation:
                    await self._release(continuation)
                raise

            pending = retry

        if failures:
            raise BatchFailure(f"Browse failed for {len(failures)} nodes", failures)
        return references

    @staticmethod
    def _check_length(results: list[BrowseResult], requests: list) -> None:
        if len(results) != len(requests):
            raise ServiceFault(
                ua.StatusCodes.BadUnexpectedError,
                f"Expected {len(requests)} browse results, got {len(results)}",
            )

    @staticmethod
    def _collect(
        descriptions: Sequence[BrowseDescription],
        index: int,
        result: BrowseResult,
        references: list[list[ReferenceDescription]],
        failures: list[tuple[str, Exception]],
        retry: list[int],
        continuation: list[tuple[int, bytes]],
    ) -> None:
        if result.status_code == ua.StatusCodes.BadNoContinuationPoints:
            # Server ran out of continuation points; browse this node again from scratch
            references[index] = []
            retry.append(index)
        elif is_bad(result.status_code):
            failures.append((descriptions[index].node_id.to_string(), ServiceFault(result.status_code)))
        else:
            references[index].extend(result.references)
            if result.continuation_point:
                continuation.append((index, result.continuation_point))

    async def _release(self, continuation: list[tuple[int, bytes]]) -> None:
        if self._manager.session is None:
            return
        try:
            await self._manager.engine.browse_next(
                self._manager.session.handle, [cp for _, cp in continuation], True
            )
        except Exception as e:
            logger.warning(f"Failed to release {len(continuation)} continuation points: {e}")

    async def browse_node(
        self,
        node: str | ua.NodeId,
        direction: ua.BrowseDirection = ua.BrowseDirection.Forward,
        reference_type: int | ua.NodeId = ua.ObjectIds.HierarchicalReferences,
        include_subtypes: bool = True,
        node_class_mask: int = 0,
    ) -> list[ReferenceDescription]:
        """Browse a single node."""
        if not isinstance(reference_type, ua.NodeId):
            reference_type = ua.NodeId(reference_type)
        (references,) = await self.browse(
            [
                BrowseDescription(
                    node_id=to_node_id(node),
                    direction=direction,
                    reference_type_id=reference_type,
                    include_subtypes=include_subtypes,
                    node_class_mask=node_class_mask,
                )
            ]
        )
        return references

    # ----------------------------------------------------------------
    # TranslateBrowsePaths
    # ----------------------------------------------------------------

    async def translate_browse_paths(
        self,
        start: str | ua.NodeId,
        paths: Sequence[RelativePathLike],
        default_namespace: int = 0,
    ) -> list[ua.NodeId | None]:
        """
        Resolve relative paths from ``start``.

        Returns one entry per path: the NodeId of the first fully resolved
        target, or None if the start node is bad, nothing matched, or the
        path only partially resolved on this server.
        """
        start_id = to_node_id(start)
        browse_paths = [
            BrowsePath(
                starting_node=start_id,
                elements=(
                    parse_relative_path(path, default_namespace)
                    if isinstance(path, str)
                    else list(path)
                ),
            )
            for path in paths
        ]
        if not browse_paths:
            return []

        results: list[BrowsePathResult] = await self._call(
            self._manager.engine.translate_browse_paths, browse_paths
        )
        if len(results) != len(browse_paths):
            raise ServiceFault(
                ua.StatusCodes.BadUnexpectedError,
                f"Expected {len(browse_paths)} translate results, got {len(results)}",
            )

        namespace_uris = self._manager.session.namespace_uris
        return [self._first_target(result, namespace_uris) for result in results]

    async def translate_browse_path(
        self, start: str | ua.NodeId, path: RelativePathLike, default_namespace: int = 0
    ) -> ua.NodeId | None:
        return (await self.translate_browse_paths(start, [path], default_namespace))[0]

    @staticmethod
    def _first_target(result: BrowsePathResult, namespace_uris: Sequence[str]) -> ua.NodeId | None:
        if is_bad(result.status_code):
            return None
        for target in result.targets:
            if target.remaining_path_index == END_OF_PATH:
                return to_local_node_id(target.target_id, namespace_uris)
        return None
