"""Typer-powered command line for ``lxdsync``.

The CLI is a thin consumer of :class:`~lxdsync.service.InstanceService`:
``list`` prints a one-off snapshot and ``watch`` follows the notification
channels until interrupted. The remote client is built from the
``client.factory`` configuration key.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import textwrap
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .channels import Channel, Subscription
from .client import RemoteClient, RemoteError, load_client_factory
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import StructuredLogger
from .models import InstanceRecord
from .service import InitializationError, InstanceService
from .state import InstanceNotFoundError

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to lxdsync's YAML config file.",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Live view of containers and virtual machines on a hypervisor.

        Instances are loaded once and then kept current from the remote
        operation event feed; nothing is polled.
        """
    ).strip(),
)

STATUS_STYLES = {
    "running": "green",
    "stopped": "red",
    "frozen": "cyan",
    "error": "bold red",
}


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger

    def client_factory(self) -> Callable[..., RemoteClient]:
        factory = self.config.client.factory
        if not factory:
            raise ConfigError(
                "No client factory configured. Set client.factory in the config file "
                "or LXDSYNC_CLIENT__FACTORY."
            )
        try:
            return load_client_factory(factory)
        except RemoteError as exc:
            raise ConfigError(str(exc)) from exc

    def create_service(self, client: RemoteClient) -> InstanceService:
        return InstanceService(
            client,
            event_types=self.config.events.types,
            settled_history=self.config.events.settled_history,
        )


def _configure_logging(config: AppConfig) -> None:
    package_logger = logging.getLogger("lxdsync")
    package_logger.setLevel(config.log_level_number)
    if not any(isinstance(handler, RichHandler) for handler in package_logger.handlers):
        package_logger.addHandler(RichHandler(console=err_console, show_path=False))


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    _configure_logging(config)
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the lxdsync version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"lxdsync {__version__}")
        raise typer.Exit(code=int(ExitCode.OK))

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.OK))


def _build_client(runtime: RuntimeContext) -> RemoteClient:
    factory = runtime.client_factory()
    try:
        return factory(**dict(runtime.config.client.options))
    except (ConfigError, RemoteError):
        raise
    except Exception as exc:
        raise ConfigError(
            f"Client factory '{runtime.config.client.factory}' failed: {exc}"
        ) from exc


async def _close_client(client: object) -> None:
    for name in ("aclose", "close"):
        closer = getattr(client, name, None)
        if closer is None:
            continue
        result = closer()
        if inspect.isawaitable(result):
            await result
        return


def _describe(record: InstanceRecord) -> dict[str, Any]:
    attributes = record.attributes
    return {
        "name": record.name,
        "status": record.status,
        "type": attributes.get("type", ""),
        "architecture": attributes.get("architecture", ""),
        "location": attributes.get("location", ""),
    }


async def _snapshot(runtime: RuntimeContext) -> list[dict[str, Any]]:
    client = _build_client(runtime)
    try:
        async with runtime.create_service(client) as service:
            return [_describe(service.get_instance(name)) for name in service.current_instances()]
    finally:
        await _close_client(client)


def _render_table(rows: list[dict[str, Any]]) -> Table:
    table = Table(title="Instances")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Architecture")
    for row in rows:
        style = STATUS_STYLES.get(row["status"], "yellow")
        table.add_row(
            row["name"],
            f"[{style}]{row['status']}[/{style}]",
            str(row["type"]),
            str(row["architecture"]),
        )
    return table


@app.command("list")
def list_instances(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print every instance with its current (derived) status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instances"},
    ) as op:
        try:
            rows = asyncio.run(_snapshot(runtime))
        except ConfigError as exc:
            op.error(str(exc), rc=int(ExitCode.VALIDATION))
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
        except (InitializationError, RemoteError) as exc:
            op.error(str(exc), rc=int(ExitCode.REMOTE))
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=int(ExitCode.REMOTE)) from exc

        if json_output:
            console.print_json(json.dumps({"instances": rows}))
        elif rows:
            console.print(_render_table(rows))
        else:
            console.print("No instances found.")
        op.success(f"Listed {len(rows)} instance(s).", context={"count": len(rows)})


def _format_notification(kind: str, name: str, service: InstanceService) -> dict[str, Any]:
    entry: dict[str, Any] = {"event": kind, "name": name}
    if kind != "removed":
        try:
            entry["status"] = service.get_instance(name).status
        except InstanceNotFoundError:
            entry["status"] = None
    return entry


async def _forward(
    kind: str,
    subscription: Subscription[str],
    sink: asyncio.Queue[tuple[str, str]],
) -> None:
    async with subscription:
        async for name in subscription:
            await sink.put((kind, name))


async def _watch(
    runtime: RuntimeContext,
    emit: Callable[[Mapping[str, Any]], None],
    *,
    max_events: int,
) -> int:
    client = _build_client(runtime)
    try:
        async with runtime.create_service(client) as service:
            sink: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
            channels: dict[str, Channel[str]] = {
                "added": service.instance_added,
                "removed": service.instance_removed,
                "updated": service.instance_updated,
            }
            forwarders = [
                asyncio.create_task(_forward(kind, channel.subscribe(), sink))
                for kind, channel in channels.items()
            ]
            for name in service.current_instances():
                emit(_format_notification("present", name, service))
            seen = 0
            try:
                while not max_events or seen < max_events:
                    kind, name = await sink.get()
                    emit(_format_notification(kind, name, service))
                    seen += 1
            finally:
                for task in forwarders:
                    task.cancel()
                await asyncio.gather(*forwarders, return_exceptions=True)
            return seen
    finally:
        await _close_client(client)


@app.command("watch")
def watch_instances(
    ctx: typer.Context,
    max_events: int = typer.Option(
        0,
        "--max-events",
        min=0,
        help="Stop after this many notifications (0 = run until interrupted).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Follow instance additions, removals and status changes."""
    runtime = _get_runtime(ctx)

    def emit(entry: Mapping[str, Any]) -> None:
        if json_output:
            console.print(json.dumps(dict(entry)), soft_wrap=True, markup=False, highlight=False)
            return
        marker = {"present": " ", "added": "+", "removed": "-", "updated": "~"}[entry["event"]]
        status = entry.get("status")
        suffix = f" ({status})" if status else ""
        console.print(f"{marker} {entry['name']}{suffix}")

    with runtime.logger.operation(
        "watch",
        args={"max_events": max_events, "json": json_output},
        target={"kind": "instances"},
    ) as op:
        try:
            seen = asyncio.run(_watch(runtime, emit, max_events=max_events))
        except KeyboardInterrupt:
            op.success("Watch interrupted.")
            return
        except ConfigError as exc:
            op.error(str(exc), rc=int(ExitCode.VALIDATION))
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
        except (InitializationError, RemoteError) as exc:
            op.error(str(exc), rc=int(ExitCode.REMOTE))
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=int(ExitCode.REMOTE)) from exc
        op.success(f"Observed {seen} notification(s).", context={"notifications": seen})


def main() -> None:  # pragma: no cover - console script entry point
    app()


__all__ = ["app", "main"]
