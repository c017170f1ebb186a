"""Instance state held by lxdsync."""
from __future__ import annotations

from .registry import (
    InstanceNotFoundError,
    InstanceRegistry,
    RegistryChanges,
    RegistryClosedError,
    RegistryError,
)

__all__ = [
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RegistryChanges",
    "RegistryClosedError",
    "RegistryError",
]
