"""Apply the live operation-event feed to the instance registry.

Events are handled strictly one at a time. Each event carries a full snapshot
of an operation, so the registry re-derives everything from the latest event
content and replaying an event is harmless. The only history kept is a
bounded list of operation ids that already settled, which lets a late
"running" event for a finished operation be dropped instead of resurrecting a
stale transitional status.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterable, Iterable, Mapping
from typing import Any

from .channels import InstanceChannels
from .client import RemoteError
from .models import ModelError, OperationEvent, OperationRecord, StatusCode
from .state import InstanceRegistry, RegistryChanges

LOGGER = logging.getLogger(__name__)

OPERATION_EVENT = "operation"
DEFAULT_SETTLED_HISTORY = 1024


class EventReconciler:
    """Single writer that keeps the registry in step with remote operations."""

    def __init__(
        self,
        registry: InstanceRegistry,
        channels: InstanceChannels,
        *,
        settled_history: int = DEFAULT_SETTLED_HISTORY,
    ) -> None:
        if settled_history < 1:
            raise ValueError("settled_history must be at least 1.")
        self._registry = registry
        self._channels = channels
        self._lock = asyncio.Lock()
        self._active: dict[str, StatusCode] = {}
        self._settled: deque[str] = deque(maxlen=settled_history)

    @property
    def active_operations(self) -> Mapping[str, StatusCode]:
        """Operations currently believed to be pending or running."""
        return dict(self._active)

    def is_settled(self, op_id: str) -> bool:
        """True if *op_id* is in the settled history."""
        return op_id in self._settled

    async def process(self, payload: OperationEvent | Mapping[str, Any]) -> RegistryChanges:
        """Decode one event and apply it, publishing the resulting changes."""
        event = payload if isinstance(payload, OperationEvent) else OperationEvent.from_dict(payload)
        if event.type != OPERATION_EVENT or event.operation is None:
            LOGGER.debug("Ignoring %s event", event.type or "untyped")
            return RegistryChanges()
        return await self.apply(event.operation)

    async def apply(self, operation: OperationRecord, *, notify: bool = True) -> RegistryChanges:
        """Apply *operation* to the registry.

        With ``notify=False`` the registry is updated silently, which is how
        the operations already in flight at start-up are folded into the
        baseline.
        """
        async with self._lock:
            if operation.is_active and operation.id in self._settled:
                LOGGER.debug(
                    "Dropping late %s event for settled operation %s",
                    operation.status_code.label,
                    operation.id,
                )
                return RegistryChanges()

            changes = await self._registry.apply_operation(operation)
            self._track(operation)
            if notify:
                self._channels.publish(changes, self._registry.names())
            return changes

    async def refresh(self, names: Iterable[str], *, notify: bool = True) -> RegistryChanges:
        """Replace the registry contents with *names* and publish the difference."""
        async with self._lock:
            changes = await self._registry.replace_all(names)
            if notify:
                self._channels.publish(changes, self._registry.names())
            return changes

    async def run(self, events: AsyncIterable[OperationEvent | Mapping[str, Any]]) -> None:
        """Consume *events* until the feed ends.

        A failure while reconciling one event is logged and the loop moves on
        to the next event; the registry keeps its previous, consistent state.
        """
        async for payload in events:
            try:
                await self.process(payload)
            except ModelError as exc:
                LOGGER.warning("Discarding undecodable event: %s", exc)
            except RemoteError as exc:
                LOGGER.warning("Failed to reconcile event: %s", exc)
            except Exception:  # pragma: no cover - keep the feed alive
                LOGGER.exception("Unexpected error while reconciling event")
        LOGGER.info("Event feed ended")

    def _track(self, operation: OperationRecord) -> None:
        if operation.is_active:
            self._active[operation.id] = operation.status_code
            return
        self._active.pop(operation.id, None)
        if operation.is_settled and operation.id not in self._settled:
            self._settled.append(operation.id)


__all__ = ["DEFAULT_SETTLED_HISTORY", "EventReconciler", "OPERATION_EVENT"]
