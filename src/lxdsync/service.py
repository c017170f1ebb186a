"""Lifecycle controller tying the client, registry and event feed together.

Typical use::

    service = InstanceService(client)
    await service.init()
    async for name in service.instance_added:
        ...
    await service.dispose()

``init`` subscribes to the event feed before taking the snapshot, so an
operation that completes between the two is still delivered. Events that
arrive during initialisation wait in the feed and are reconciled once the
baseline is in place.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from types import TracebackType
from typing import Any

from .channels import Channel, InstanceChannels, StateChannel
from .client import RemoteClient, RemoteError, RemoteNotFoundError, as_operation
from .models import InstanceRecord, OperationEvent, OperationRecord
from .reconciler import DEFAULT_SETTLED_HISTORY, OPERATION_EVENT, EventReconciler
from .state import InstanceRegistry, RegistryChanges

LOGGER = logging.getLogger(__name__)

_DISPOSED_DURING_INIT = "Instance service was disposed during initialisation."


class InitializationError(RuntimeError):
    """Raised when the service cannot establish its initial state."""


class InstanceService:
    """Keeps a live, local view of remote instances."""

    def __init__(
        self,
        client: RemoteClient,
        *,
        event_types: Collection[str] = (OPERATION_EVENT,),
        settled_history: int = DEFAULT_SETTLED_HISTORY,
    ) -> None:
        self._client = client
        self._event_types = tuple(event_types)
        self._registry = InstanceRegistry(client)
        self._channels = InstanceChannels()
        self._reconciler = EventReconciler(
            self._registry,
            self._channels,
            settled_history=settled_history,
        )
        self._events: AsyncIterator[OperationEvent | Mapping[str, Any]] | None = None
        self._task: asyncio.Task[None] | None = None
        self._started = False
        self._ready = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Observation points
    # ------------------------------------------------------------------
    @property
    def instance_stream(self) -> StateChannel[tuple[str, ...]]:
        """Full ordered name list, re-published whenever membership changes."""
        return self._channels.stream

    @property
    def instance_added(self) -> Channel[str]:
        return self._channels.added

    @property
    def instance_removed(self) -> Channel[str]:
        return self._channels.removed

    @property
    def instance_updated(self) -> Channel[str]:
        return self._channels.updated

    @property
    def ready(self) -> bool:
        """True between a successful :meth:`init` and :meth:`dispose`."""
        return self._ready and not self._disposed

    @property
    def disposed(self) -> bool:
        return self._disposed

    def current_instances(self) -> tuple[str, ...]:
        """Return the known instance names in snapshot order."""
        return self._registry.names()

    def get_instance(self, name: str) -> InstanceRecord:
        """Return the record for *name*; raises ``InstanceNotFoundError`` if unknown."""
        return self._registry.get(name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> None:
        """Subscribe to events, load the snapshot and fold in running operations."""
        if self._disposed:
            raise InitializationError("Instance service has been disposed.")
        if self._started:
            raise InitializationError("Instance service is already initialised.")
        self._started = True

        # dispose() may run while any of the awaits below is pending.
        try:
            self._events = await self._client.get_events(self._event_types)
            self._raise_if_disposed()
            names = await self._client.get_instances()
            self._raise_if_disposed()
            await self._reconciler.refresh(names, notify=False)
            operations = await self._load_operations()
            for operation in operations:
                self._raise_if_disposed()
                await self._reconciler.apply(operation, notify=False)
            self._raise_if_disposed()
        except InitializationError:
            await self._abandon_init()
            raise
        except Exception as exc:
            await self._abandon_init()
            if self._disposed:
                raise InitializationError(_DISPOSED_DURING_INIT) from exc
            raise InitializationError(f"Failed to initialise instance state: {exc}") from exc

        self._channels.seed(self._registry.names())
        self._task = asyncio.create_task(
            self._reconciler.run(self._events),
            name="lxdsync-events",
        )
        self._task.add_done_callback(_log_feed_exit)
        self._ready = True
        LOGGER.info(
            "Tracking %d instance(s), %d operation(s) in flight",
            len(self._registry),
            len(self._reconciler.active_operations),
        )

    async def refresh(self) -> RegistryChanges:
        """Re-list instances and publish whatever was added or removed."""
        if not self.ready:
            raise InitializationError("Instance service is not running.")
        names = await self._client.get_instances()
        return await self._reconciler.refresh(names)

    async def dispose(self) -> None:
        """Stop the event feed and close every channel. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True
        self._ready = False

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_events()
        self._registry.close()
        self._channels.close()

    async def __aenter__(self) -> InstanceService:
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _load_operations(self) -> list[OperationRecord]:
        buckets = await self._client.get_operations()
        op_ids = _operation_ids(buckets)
        results = await asyncio.gather(
            *(self._client.get_operation(op_id) for op_id in op_ids),
            return_exceptions=True,
        )
        operations: list[OperationRecord] = []
        for op_id, result in zip(op_ids, results):
            if isinstance(result, RemoteNotFoundError):
                LOGGER.debug("Operation %s finished before it could be loaded", op_id)
                continue
            if isinstance(result, BaseException):
                raise result
            operations.append(as_operation(result))
        return operations

    def _raise_if_disposed(self) -> None:
        if self._disposed:
            raise InitializationError(_DISPOSED_DURING_INIT)

    async def _abandon_init(self) -> None:
        await self._close_events()
        if self._disposed:
            self._registry.close()
        else:
            self._registry.clear()

    async def _close_events(self) -> None:
        events, self._events = self._events, None
        aclose = getattr(events, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except RemoteError as exc:
            LOGGER.warning("Failed to close event feed cleanly: %s", exc)


def _operation_ids(buckets: Mapping[str, Sequence[str]] | None) -> list[str]:
    """Flatten the per-bucket listing into unique ids, bucket order preserved."""
    seen: dict[str, None] = {}
    for ids in (buckets or {}).values():
        for op_id in ids or ():
            if isinstance(op_id, str):
                seen.setdefault(op_id.rsplit("/", 1)[-1], None)
    return list(seen)


def _log_feed_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Event feed terminated: %s", exc, exc_info=exc)


__all__ = ["InitializationError", "InstanceService"]
