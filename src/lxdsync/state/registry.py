"""In-memory registry of remote instances.

The registry is the single source of truth for "what exists right now". It
keeps the raw records fetched from the remote API in snapshot order, plus the
derived status overrides contributed by operations that are still in flight.
Readers only ever receive immutable :class:`~lxdsync.models.InstanceRecord`
objects with the newest override already applied.

Every mutating helper gathers its remote fetches first and commits the result
in one synchronous step, so a reader never observes half of a batch.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass

from ..client import RemoteClient, RemoteNotFoundError, as_instance
from ..models import InstanceRecord, OperationRecord, StatusCode
from ..status import resolve_status

LOGGER = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when registry operations fail."""


class RegistryClosedError(RegistryError):
    """Raised when a mutation is attempted after :meth:`InstanceRegistry.close`."""


class InstanceNotFoundError(RegistryError):
    """Raised when an instance is not present in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Instance '{name}' not found in registry")
        self.name = name


@dataclass(frozen=True)
class RegistryChanges:
    """Names affected by a registry mutation, in detection order."""

    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()

    @property
    def membership_changed(self) -> bool:
        """True when the key set grew or shrank."""
        return bool(self.added or self.removed)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.updated)


class InstanceRegistry:
    """Ordered mapping of instance name to record."""

    def __init__(self, client: RemoteClient) -> None:
        self._client = client
        self._records: dict[str, InstanceRecord] = {}
        # name -> {operation id: derived status}; the last entry wins.
        self._overrides: dict[str, dict[str, StatusCode]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def names(self) -> tuple[str, ...]:
        """Return the current instance names in registry order."""
        return tuple(self._records)

    def get(self, name: str) -> InstanceRecord:
        """Return the record for *name* with any derived status applied."""
        try:
            record = self._records[name]
        except KeyError:
            raise InstanceNotFoundError(name) from None
        overrides = self._overrides.get(name)
        if overrides:
            return record.with_status(next(reversed(overrides.values())))
        return record

    def overrides_for(self, name: str) -> Mapping[str, StatusCode]:
        """Return the active derived statuses for *name*, keyed by operation id."""
        return dict(self._overrides.get(name, {}))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def replace_all(self, names: Iterable[str]) -> RegistryChanges:
        """Make the registry mirror *names*, fetching only unknown instances."""
        self._ensure_open()
        ordered = _unique(names)
        missing = [name for name in ordered if name not in self._records]
        fetched = await self._fetch_many(missing)
        self._ensure_open()

        records: dict[str, InstanceRecord] = {}
        for name in ordered:
            if name in self._records:
                records[name] = self._records[name]
                continue
            record = fetched.get(name)
            if record is None:
                LOGGER.debug("Instance %s vanished while loading the snapshot", name)
                continue
            records[name] = record

        added = tuple(name for name in records if name not in self._records)
        removed = tuple(name for name in self._records if name not in records)
        self._records = records
        for name in removed:
            self._overrides.pop(name, None)
        return RegistryChanges(added=added, removed=removed)

    async def apply_operation(self, operation: OperationRecord) -> RegistryChanges:
        """Reflect *operation* on every instance it references.

        In-flight operations add a derived status override; settled ones clear
        their override and re-fetch the instance for ground truth. An instance
        the remote API no longer knows is removed. Any other fetch error is
        raised and leaves the registry untouched.
        """
        self._ensure_open()
        derived = resolve_status(operation)
        if derived is None:
            to_fetch = list(operation.instances)
        else:
            to_fetch = [name for name in operation.instances if name not in self._records]
        fetched = await self._fetch_many(to_fetch)
        self._ensure_open()

        added: list[str] = []
        removed: list[str] = []
        updated: list[str] = []
        for name in operation.instances:
            if name in fetched:
                record = fetched[name]
                if record is None:
                    self._overrides.pop(name, None)
                    if self._records.pop(name, None) is not None:
                        removed.append(name)
                    continue
                (updated if name in self._records else added).append(name)
                self._records[name] = record
            else:
                updated.append(name)

            if derived is None:
                self._clear_override(name, operation.id)
            else:
                overrides = self._overrides.setdefault(name, {})
                overrides.pop(operation.id, None)
                overrides[operation.id] = derived

        return RegistryChanges(added=tuple(added), removed=tuple(removed), updated=tuple(updated))

    def clear(self) -> None:
        """Forget every record and override."""
        self._records.clear()
        self._overrides.clear()

    def close(self) -> None:
        """Empty the registry and reject every later mutation.

        A mutation whose fetches are still in flight commits nothing.
        """
        self._closed = True
        self.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("Instance registry is closed.")

    def _clear_override(self, name: str, op_id: str) -> None:
        overrides = self._overrides.get(name)
        if overrides is None:
            return
        overrides.pop(op_id, None)
        if not overrides:
            del self._overrides[name]

    async def _fetch_many(self, names: list[str]) -> dict[str, InstanceRecord | None]:
        """Fetch *names* concurrently; ``None`` marks a confirmed not-found."""
        if not names:
            return {}
        results = await asyncio.gather(
            *(self._fetch(name) for name in names),
            return_exceptions=True,
        )
        fetched: dict[str, InstanceRecord | None] = {}
        for name, result in zip(names, results):
            if isinstance(result, RemoteNotFoundError):
                fetched[name] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                fetched[name] = result
        return fetched

    async def _fetch(self, name: str) -> InstanceRecord:
        return as_instance(await self._client.get_instance(name))


def _unique(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        seen.setdefault(name, None)
    return list(seen)


__all__ = [
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RegistryChanges",
    "RegistryClosedError",
    "RegistryError",
]
