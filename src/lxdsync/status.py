"""Derive transitional instance statuses from in-flight operations.

The remote API never reports "starting" or "stopping" on the instance itself;
the only hint is the free-text description of the operation acting on it.
The rules live in :data:`DESCRIPTION_PREFIXES` and are checked in order.
"""
from __future__ import annotations

from .models import OperationRecord, StatusCode

# Remote descriptions are English and unversioned; see DESIGN.md.
DESCRIPTION_PREFIXES: tuple[tuple[str, StatusCode], ...] = (
    ("starting", StatusCode.STARTING),
    ("stopping", StatusCode.STOPPING),
    ("restarting", StatusCode.RESTARTING),
    ("freezing", StatusCode.FREEZING),
    ("unfreezing", StatusCode.UNFREEZING),
)


def resolve_status(operation: OperationRecord) -> StatusCode | None:
    """Return the derived status for instances touched by *operation*.

    ``None`` means "no override": the operation has settled (or never reported
    a pending/running code) and the instance's own status applies.
    """
    if not operation.status_code.is_active:
        return None
    description = operation.description.lstrip().lower()
    for prefix, status in DESCRIPTION_PREFIXES:
        if description.startswith(prefix):
            return status
    return operation.status_code


__all__ = ["DESCRIPTION_PREFIXES", "resolve_status"]
