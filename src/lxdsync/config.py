"""Configuration loader for lxdsync.

Values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/lxdsync/config.yml`` (or an override path).
3. Environment variables prefixed with ``LXDSYNC_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LXDSYNC_CLIENT__FACTORY=mypkg.lxd:connect
    export LXDSYNC_EVENTS__SETTLED_HISTORY=4096

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load lxdsync configuration. Install with "
        "`pip install lxdsync` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "LXDSYNC_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ClientConfig:
    """How to build the remote API client."""

    factory: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"factory": self.factory, "options": dict(self.options)}


@dataclass(frozen=True)
class EventsConfig:
    """Event feed subscription settings."""

    types: tuple[str, ...] = ("operation",)
    settled_history: int = 1024

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"types": list(self.types), "settled_history": self.settled_history}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for lxdsync."""

    config_file: Path
    logs_dir: Path
    log_level: str
    client: ClientConfig
    events: EventsConfig

    @property
    def log_level_number(self) -> int:
        return cast(int, logging.getLevelName(self.log_level))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "log_level": self.log_level,
            "client": self.client.to_dict(),
            "events": self.events.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/lxdsync/config.yml",
    "logs_dir": "/var/log/lxdsync",
    "log_level": "WARNING",
    "client": {
        "factory": None,
        "options": {},
    },
    "events": {
        "types": ["operation"],
        "settled_history": 1024,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    level = raw.get("log_level")
    if level is not None and str(level).upper() not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported log_level '{level}'. Allowed: {allowed}.")

    client = _as_dict(raw.get("client"), "client")
    unknown = set(client.keys()) - {"factory", "options"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown client configuration keys: {joined}.")
    factory = client.get("factory")
    if factory is not None:
        if not isinstance(factory, str) or ":" not in factory:
            raise ConfigError("client.factory must be formatted as 'module:callable'.")
    _as_dict(client.get("options"), "client.options")

    events = _as_dict(raw.get("events"), "events")
    unknown = set(events.keys()) - {"types", "settled_history"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown events configuration keys: {joined}.")
    history = events.get("settled_history")
    if history is not None:
        if _expect_int(history, "events.settled_history", default=1024) < 1:
            raise ConfigError("events.settled_history must be at least 1.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    client_map = _as_dict(raw.get("client"), "client")
    factory = client_map.get("factory")
    client = ClientConfig(
        factory=str(factory).strip() if factory else None,
        options=_as_dict(client_map.get("options"), "client.options"),
    )

    events_map = _as_dict(raw.get("events"), "events")
    types_raw = events_map.get("types", ["operation"])
    if isinstance(types_raw, str):
        types_raw = types_raw.split(",")
    types = tuple(
        str(item).strip()
        for item in _as_sequence(types_raw, "events.types")
        if str(item).strip()
    )
    if not types:
        raise ConfigError("events.types must name at least one event type.")
    events = EventsConfig(
        types=types,
        settled_history=_expect_int(
            events_map.get("settled_history"),
            "events.settled_history",
            default=1024,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        log_level=str(raw.get("log_level", "WARNING")).upper(),
        client=client,
        events=events,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ClientConfig",
    "ConfigError",
    "EventsConfig",
    "load_config",
]
