"""lxdsync package bootstrap.

Exposes package metadata plus the handful of names most consumers need: the
:class:`~lxdsync.service.InstanceService` lifecycle controller and the
record types it hands out.
"""
from __future__ import annotations

from .models import InstanceRecord, OperationEvent, OperationRecord, StatusCode
from .service import InitializationError, InstanceService

__all__ = [
    "InitializationError",
    "InstanceRecord",
    "InstanceService",
    "OperationEvent",
    "OperationRecord",
    "StatusCode",
    "__version__",
    "get_version",
]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0a0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
