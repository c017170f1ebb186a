"""Interface expected from the hypervisor API client.

lxdsync does not talk HTTP itself. Any object implementing
:class:`RemoteClient` can back an :class:`~lxdsync.service.InstanceService`;
the CLI locates one through the ``client.factory`` configuration key, an
import path of the form ``package.module:callable``.
"""
from __future__ import annotations

import importlib
from collections.abc import AsyncIterator, Callable, Collection, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from .models import InstanceRecord, ModelError, OperationEvent, OperationRecord


class RemoteError(RuntimeError):
    """Raised by clients for any failed remote call."""


class RemoteNotFoundError(RemoteError):
    """Raised when the remote API definitively reports a missing resource."""


@runtime_checkable
class RemoteClient(Protocol):
    """Async calls lxdsync relies on.

    Payloads may be decoded records or the raw JSON mappings returned by the
    API; :func:`as_instance` and friends normalise either form.
    """

    async def get_instances(self) -> Sequence[str]:
        """Return the names of all instances."""
        ...

    async def get_instance(self, name: str) -> InstanceRecord | Mapping[str, Any]:
        """Return the full record for *name* or raise :class:`RemoteNotFoundError`."""
        ...

    async def get_operations(self) -> Mapping[str, Sequence[str]]:
        """Return operation ids grouped by status bucket (``pending``, ``running``...)."""
        ...

    async def get_operation(self, op_id: str) -> OperationRecord | Mapping[str, Any]:
        """Return the operation identified by *op_id*."""
        ...

    async def get_events(
        self,
        types: Collection[str],
    ) -> AsyncIterator[OperationEvent | Mapping[str, Any]]:
        """Open the event feed for *types*; returns once the subscription is live."""
        ...


def as_instance(payload: InstanceRecord | Mapping[str, Any]) -> InstanceRecord:
    """Return *payload* as an :class:`InstanceRecord`."""
    if isinstance(payload, InstanceRecord):
        return payload
    try:
        return InstanceRecord.from_dict(payload)
    except ModelError as exc:
        raise RemoteError(f"Malformed instance payload: {exc}") from exc


def as_operation(payload: OperationRecord | Mapping[str, Any]) -> OperationRecord:
    """Return *payload* as an :class:`OperationRecord`."""
    if isinstance(payload, OperationRecord):
        return payload
    try:
        return OperationRecord.from_dict(payload)
    except ModelError as exc:
        raise RemoteError(f"Malformed operation payload: {exc}") from exc


def load_client_factory(spec: str) -> Callable[..., RemoteClient]:
    """Resolve ``module:attribute`` into a callable that builds a client."""
    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name.strip() or not attribute.strip():
        raise RemoteError(
            f"Client factory must be formatted as 'module:callable'; got {spec!r}."
        )
    try:
        module = importlib.import_module(module_name.strip())
    except ImportError as exc:
        raise RemoteError(f"Unable to import client module '{module_name}': {exc}") from exc

    target: Any = module
    for part in attribute.strip().split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise RemoteError(f"Client factory '{spec}' does not exist.") from exc
    if not callable(target):
        raise RemoteError(f"Client factory '{spec}' is not callable.")
    return target


__all__ = [
    "RemoteClient",
    "RemoteError",
    "RemoteNotFoundError",
    "as_instance",
    "as_operation",
    "load_client_factory",
]
