# uasession/state/node_registry.py
"""
Node identifier registration cache.

Registered handles are only valid for the server session that issued them.
The cache is therefore tagged with the session generation it was filled
under; a different generation sees an empty cache without any explicit
clear.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from asyncua import ua

from uasession.errors import BatchFailure, RegistrationFailure, ServiceFault
from uasession.protocols.services import GOOD, to_node_id
from uasession.security.logging_system import get_logger

if TYPE_CHECKING:
    from uasession.session.manager import SessionManager

__all__ = [
    "NodeEntry",
    "NodeEntryCollection",
    "NodeValueRecord",
    "NodeIdRegistry",
    "node_key",
]

logger = get_logger(__name__)

NodeIdentifier = str | ua.NodeId


def node_key(identifier: NodeIdentifier) -> str:
    """Canonical string form used as cache key."""
    return to_node_id(identifier).to_string()


# ----------------------------------------------------------------
# Node entries
# ----------------------------------------------------------------


@dataclass(eq=False)
class NodeEntry:
    """A node the application works with repeatedly.

    Attributes:
        node_id: The node as known in the address space
        is_udt: True if the value is a structure of a custom data type
        registered: Handle issued by the server, None until registered
        generation: Session generation the handle belongs to
    """

    node_id: ua.NodeId
    is_udt: bool = False
    registered: ua.NodeId | None = None
    generation: int | None = None

    def __post_init__(self):
        self.node_id = to_node_id(self.node_id)

    @property
    def service_node_id(self) -> ua.NodeId:
        """The id to put in service requests: registered handle if any."""
        return self.registered if self.registered is not None else self.node_id

    def session_disconnected(self, *_: Any) -> None:
        self.registered = None
        self.generation = None

    def create_record(self, value: Any, status_code: int = GOOD) -> "NodeValueRecord":
        return NodeValueRecord(self, value, status_code)


@dataclass(eq=False)
class NodeEntryCollection:
    """An ordered set of node entries registered together."""

    entries: list[NodeEntry] = field(default_factory=list)
    registered: list[ua.NodeId] = field(default_factory=list)
    generation: int | None = None

    def add(self, entry: NodeEntry | NodeIdentifier, is_udt: bool = False) -> NodeEntry:
        if not isinstance(entry, NodeEntry):
            entry = NodeEntry(to_node_id(entry), is_udt=is_udt)
        self.entries.append(entry)
        return entry

    @property
    def node_ids(self) -> list[ua.NodeId]:
        return [entry.node_id for entry in self.entries]

    @property
    def service_node_ids(self) -> list[ua.NodeId]:
        if len(self.registered) == len(self.entries):
            return list(self.registered)
        return self.node_ids

    def session_disconnected(self, *_: Any) -> None:
        self.registered.clear()
        self.generation = None
        for entry in self.entries:
            entry.session_disconnected()

    def create_records(self, values: Sequence[Any]) -> list["NodeValueRecord"]:
        """Pair each entry with a value, in order.

        Raises:
            ValueError: If the number of values differs from the number of entries
        """
        if len(values) != len(self.entries):
            raise ValueError(
                f"Value count mismatch: {len(values)} values for {len(self.entries)} entries"
            )
        return [entry.create_record(value) for entry, value in zip(self.entries, values)]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __getitem__(self, index: int) -> NodeEntry:
        return self.entries[index]


@dataclass
class NodeValueRecord:
    """A value read from, or to be written to, a node entry."""

    entry: NodeEntry
    value: Any
    status_code: int = GOOD
    source_timestamp: datetime | None = None

    @property
    def node_id(self) -> ua.NodeId:
        return self.entry.node_id


# ----------------------------------------------------------------
# Registry
# ----------------------------------------------------------------


class NodeIdRegistry:
    """
    Caches server-issued handles per node identifier.

    Example:
        >>> registry = NodeIdRegistry(manager)
        >>> handles = await registry.register(["ns=2;s=Temperature", "ns=2;s=Pressure"])
    """

    def __init__(self, manager: "SessionManager"):
        self._manager = manager
        self._lock = asyncio.Lock()
        self._cache: dict[str, ua.NodeId] = {}
        self._cache_generation: int | None = None

        # Identifier sets holding handles, and those replayed on a new session generation
        self._tracked: list[NodeEntry | NodeEntryCollection] = []
        self._replay: list[NodeEntry | NodeEntryCollection] = []

        manager.session_established.add(self.on_session_established)

    # ----------------------------------------------------------------
    # Cache
    # ----------------------------------------------------------------

    def _cache_for(self, generation: int) -> dict[str, ua.NodeId]:
        # Caller holds the lock
        if self._cache_generation != generation:
            self._cache = {}
            self._cache_generation = generation
        return self._cache

    @property
    def cached_count(self) -> int:
        if self._cache_generation != self._manager.generation:
            return 0
        return len(self._cache)

    def lookup(self, identifier: NodeIdentifier) -> ua.NodeId | None:
        """Cached handle for the current generation, or None."""
        if self._cache_generation != self._manager.generation:
            return None
        return self._cache.get(node_key(identifier))

    async def clear(self) -> None:
        async with self._lock:
            self._cache = {}
            self._cache_generation = None

    # ----------------------------------------------------------------
    # Registration
    # ----------------------------------------------------------------

    async def register(self, identifiers: Iterable[NodeIdentifier]) -> list[ua.NodeId]:
        """
        Register identifiers with the server.

        Returns one handle per identifier, in input order. Identifiers
        already cached for the current generation are not sent again; all
        others go to the server in a single call.

        Raises:
            NoActiveSession: If not connected, or a reconnect is in progress
            RegistrationFailure: If the server returned a null handle for
                some identifiers. The valid handles of the batch are cached.
        """
        node_ids = [to_node_id(identifier) for identifier in identifiers]
        keys = [node_id.to_string() for node_id in node_ids]
        if not keys:
            return []

        self._manager.require_session()
        generation = self._manager.generation

        async with self._lock:
            cache = self._cache_for(generation)
            handles: list[ua.NodeId | None] = [cache.get(key) for key in keys]

        missing: dict[str, ua.NodeId] = {}
        for key, node_id, handle in zip(keys, node_ids, handles):
            if handle is None and key not in missing:
                missing[key] = node_id

        if not missing:
            return handles

        issued = await self._manager.execute(
            self._manager.engine.register_nodes, list(missing.values())
        )
        if len(issued) != len(missing):
            raise ServiceFault(
                ua.StatusCodes.BadUnexpectedError,
                f"RegisterNodes returned {len(issued)} handles for {len(missing)} nodes",
            )

        accepted: dict[str, ua.NodeId] = {}
        failures: list[tuple[str, Exception]] = []
        for key, handle in zip(missing, issued):
            if handle is None or handle.is_null():
                logger.error(f"Failed to register node: {key}")
                failures.append(
                    (key, ServiceFault(ua.StatusCodes.BadNodeIdInvalid, "null handle returned"))
                )
            else:
                accepted[key] = handle

        async with self._lock:
            # A reconnect may have moved to a new session meanwhile
            if self._cache_generation == generation:
                self._cache.update(accepted)

        await self._manager.audit(
            f"Registered {len(accepted)} of {len(missing)} node ids",
            action="register",
            result="FAILED" if failures else "OK",
            generation=generation,
            failed=[key for key, _ in failures],
        )
        if failures:
            raise RegistrationFailure("Failed to register the following nodes", failures)

        return [handle if handle is not None else accepted[key] for key, handle in zip(keys, handles)]

    async def register_one(self, identifier: NodeIdentifier) -> ua.NodeId:
        return (await self.register([identifier]))[0]

    async def register_entry(self, entry: NodeEntry, auto_reregister: bool = True) -> ua.NodeId:
        """Register a single entry and track it across reconnects."""
        generation = self._manager.generation
        if entry.registered is not None and entry.generation == generation:
            await self.unregister([entry.registered])
        entry.session_disconnected()

        entry.registered = await self.register_one(entry.node_id)
        entry.generation = generation
        self._track(entry, auto_reregister)
        return entry.registered

    async def register_collection(
        self, collection: NodeEntryCollection, auto_reregister: bool = True
    ) -> list[ua.NodeId]:
        """Register every entry of a collection and track it across reconnects."""
        generation = self._manager.generation
        if collection.registered and collection.generation == generation:
            await self.unregister(collection.registered)
        collection.session_disconnected()

        handles = await self.register(collection.node_ids)
        collection.registered.extend(handles)
        collection.generation = generation
        for entry, handle in zip(collection.entries, handles):
            entry.registered = handle
            entry.generation = generation
        self._track(collection, auto_reregister)
        return handles

    async def unregister(self, handles: Sequence[ua.NodeId]) -> None:
        """Release server handles and drop them from the cache."""
        if not handles:
            return
        released = {handle.to_string() for handle in handles}
        await self._manager.execute(self._manager.engine.unregister_nodes, list(handles))
        async with self._lock:
            for key in [k for k, v in self._cache.items() if v.to_string() in released]:
                del self._cache[key]

    def _track(self, target: NodeEntry | NodeEntryCollection, auto_reregister: bool) -> None:
        self._manager.clear_node_entries.add(target.session_disconnected)
        if not any(t is target for t in self._tracked):
            self._tracked.append(target)
        if auto_reregister and not any(t is target for t in self._replay):
            self._replay.append(target)

    def untrack(self, target: NodeEntry | NodeEntryCollection) -> None:
        self._manager.clear_node_entries.remove(target.session_disconnected)
        self._tracked = [t for t in self._tracked if t is not target]
        self._replay = [t for t in self._replay if t is not target]

    # ----------------------------------------------------------------
    # Session events
    # ----------------------------------------------------------------

    async def on_session_established(self, manager: "SessionManager") -> None:
        """Re-register tracked identifier sets under the new generation."""
        generation = manager.generation
        failures: list[tuple[Any, Exception]] = []

        for target in self._tracked:
            # Handles of a previous session are meaningless now
            if target.generation is not None and target.generation != generation:
                if not any(t is target for t in self._replay):
                    target.session_disconnected()

        for target in list(self._replay):
            if target.generation == generation:
                continue
            try:
                if isinstance(target, NodeEntryCollection):
                    await self.register_collection(target)
                else:
                    await self.register_entry(target)
            except (RegistrationFailure, ServiceFault) as e:
                failures.append((target, e))

        if failures:
            logger.warning(f"Re-registration failed for {len(failures)} identifier sets")
            raise BatchFailure("Re-registration after reconnect failed", failures)
