"""Record types exchanged with the remote hypervisor API.

The remote client decodes JSON into plain mappings; the helpers here turn
those mappings into immutable records the rest of the package works with.
Only the fields the reconciliation logic needs are lifted out. Everything else
an instance carries (architecture, config, devices, timestamps) is kept in an
opaque, read-only ``attributes`` mapping.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from types import MappingProxyType
from typing import Any

INSTANCE_URL_PREFIX = "/1.0/instances/"
_FRACTION_RE = re.compile(r"(\.\d+)")


class ModelError(RuntimeError):
    """Raised when a remote payload cannot be decoded."""


class StatusCode(IntEnum):
    """Status codes shared by instances and operations."""

    UNKNOWN = 0
    CREATED = 100
    STARTED = 101
    STOPPED = 102
    RUNNING = 103
    CANCELLING = 104
    PENDING = 105
    STARTING = 106
    STOPPING = 107
    ABORTING = 108
    FREEZING = 109
    FROZEN = 110
    THAWED = 111
    ERROR = 112
    READY = 113
    # No wire value exists for these two; they only appear as derived statuses.
    RESTARTING = 190
    UNFREEZING = 191
    SUCCESS = 200
    FAILURE = 400
    CANCELLED = 401

    @classmethod
    def parse(cls, value: object) -> StatusCode:
        """Return the member for *value*, or ``UNKNOWN`` if it is unrecognised."""
        if isinstance(value, StatusCode):
            return value
        if isinstance(value, bool):
            return cls.UNKNOWN
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                value = int(text)
            else:
                try:
                    return cls[text.upper()]
                except KeyError:
                    return cls.UNKNOWN
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def is_active(self) -> bool:
        """True while an operation is still pending or running."""
        return self in (StatusCode.PENDING, StatusCode.RUNNING)

    @property
    def is_settled(self) -> bool:
        """True once an operation has reached a terminal state."""
        return self in (StatusCode.SUCCESS, StatusCode.FAILURE, StatusCode.CANCELLED)

    @property
    def label(self) -> str:
        """Lower-case display name (``"starting"``, ``"stopped"``...)."""
        return self.name.lower()


def _readonly(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class InstanceRecord:
    """A container or virtual machine as last fetched from the remote API."""

    name: str
    status_code: StatusCode = StatusCode.UNKNOWN
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Freeze ``attributes`` and coerce the status code."""
        object.__setattr__(self, "status_code", StatusCode.parse(self.status_code))
        object.__setattr__(self, "attributes", _readonly(self.attributes))

    @property
    def status(self) -> str:
        return self.status_code.label

    def with_status(self, status_code: StatusCode) -> InstanceRecord:
        """Return a copy of the record carrying *status_code*."""
        if status_code == self.status_code:
            return self
        return replace(self, status_code=status_code)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> InstanceRecord:
        """Decode an instance payload as returned by ``GET /1.0/instances/<name>``."""
        if not isinstance(payload, Mapping):
            raise ModelError(f"Instance payload must be a mapping, got {type(payload).__name__}.")
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ModelError("Instance payload is missing 'name'.")
        attributes = {
            key: value
            for key, value in payload.items()
            if key not in {"name", "status_code"}
        }
        return cls(
            name=name.strip(),
            status_code=StatusCode.parse(payload.get("status_code")),
            attributes=attributes,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        data = dict(self.attributes)
        data["name"] = self.name
        data["status"] = self.status
        data["status_code"] = int(self.status_code)
        return data


@dataclass(frozen=True)
class OperationRecord:
    """An asynchronous remote action and the instances it touches."""

    id: str
    status_code: StatusCode
    description: str = ""
    instances: tuple[str, ...] = ()
    type: str = ""
    error: str = ""
    may_cancel: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Coerce the status code and de-duplicate instance names."""
        object.__setattr__(self, "status_code", StatusCode.parse(self.status_code))
        object.__setattr__(self, "instances", _unique(self.instances))

    @property
    def is_active(self) -> bool:
        return self.status_code.is_active

    @property
    def is_settled(self) -> bool:
        return self.status_code.is_settled

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OperationRecord:
        """Decode an operation payload (``GET /1.0/operations/<id>``)."""
        if not isinstance(payload, Mapping):
            raise ModelError(f"Operation payload must be a mapping, got {type(payload).__name__}.")
        op_id = payload.get("id")
        if not isinstance(op_id, str):
            raise ModelError("Operation payload is missing 'id'.")
        resources = payload.get("resources")
        instances: list[str] = []
        if isinstance(resources, Mapping):
            raw_instances = resources.get("instances")
            if isinstance(raw_instances, Iterable) and not isinstance(raw_instances, (str, bytes)):
                for item in raw_instances:
                    name = instance_name_from_resource(item)
                    if name:
                        instances.append(name)
        description = payload.get("description")
        return cls(
            id=op_id,
            status_code=StatusCode.parse(payload.get("status_code")),
            description=description if isinstance(description, str) else "",
            instances=tuple(instances),
            type=str(payload.get("class") or payload.get("type") or ""),
            error=str(payload.get("err") or payload.get("error") or ""),
            may_cancel=bool(payload.get("may_cancel", False)),
            created_at=_parse_timestamp(payload.get("created_at")),
            updated_at=_parse_timestamp(payload.get("updated_at")),
        )


@dataclass(frozen=True)
class OperationEvent:
    """A notification from the live event feed."""

    type: str
    operation: OperationRecord | None
    timestamp: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OperationEvent:
        """Decode an event payload; only ``operation`` events embed a record."""
        if not isinstance(payload, Mapping):
            raise ModelError(f"Event payload must be a mapping, got {type(payload).__name__}.")
        event_type = str(payload.get("type") or "")
        metadata = payload.get("metadata")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, Mapping):
            raise ModelError("Event 'metadata' must be a mapping.")
        operation = None
        if event_type == "operation":
            operation = OperationRecord.from_dict(metadata)
        return cls(
            type=event_type,
            operation=operation,
            timestamp=_parse_timestamp(payload.get("timestamp")),
            metadata=_readonly(metadata),
        )


def instance_name_from_resource(value: object) -> str | None:
    """Return the instance name for a resource entry.

    Entries are either bare names or URLs such as
    ``/1.0/instances/foo?project=default``.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.startswith(INSTANCE_URL_PREFIX):
        text = text[len(INSTANCE_URL_PREFIX) :]
        text = text.split("?", 1)[0].split("/", 1)[0]
    return text or None


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # The remote API reports nanoseconds; datetime stops at microseconds.
    text = _FRACTION_RE.sub(lambda match: match.group(1)[:7], text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


__all__ = [
    "INSTANCE_URL_PREFIX",
    "InstanceRecord",
    "ModelError",
    "OperationEvent",
    "OperationRecord",
    "StatusCode",
    "instance_name_from_resource",
]
