"""Typer-powered command line for ``neotestdb``.

Commands operate on a bundled Neo4j community server found under the
configured ``install_root``. ``run`` keeps the server in the foreground until
interrupted; the remaining commands inspect or prepare the installation
without launching anything.
"""
from __future__ import annotations

import logging
import textwrap
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .instance import (
    ConnectionInfo,
    InstanceConfigError,
    InstanceError,
    InstanceState,
    NeoTestDB,
)
from .layout import LayoutError, ServerLayout
from .logging import OperationScope, StructuredLogger
from .properties import PropertiesError

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to neotestdb's YAML config file.",
)
PORT_OPTION = typer.Option(
    None,
    "--port",
    "-p",
    min=0,
    max=65535,
    help="HTTP port for the server (defaults to ports.http).",
)
BOLT_PORT_OPTION = typer.Option(
    None,
    "--bolt-port",
    min=0,
    max=65535,
    help="Bolt port for 3.x servers (defaults to ports.bolt).",
)
SERVER_VERSION_OPTION = typer.Option(
    None,
    "--server-version",
    "-s",
    help="Bundled server version, e.g. 3.5.35 (defaults to default_version).",
)
TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    min=0.1,
    help="Seconds to wait for the server to become ready.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

POLL_INTERVAL = 0.5

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Throwaway Neo4j servers for integration tests.

        Patches the bundled server configuration (ports, database location,
        HTTPS and authentication disabled) and runs the server in console mode.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective neotestdb configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the neotestdb version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log server output and lifecycle events to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"neotestdb {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _configure_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _build_instance(
    runtime: RuntimeContext,
    op: OperationScope,
    port: int | None,
    bolt_port: int | None,
    server_version: str | None,
) -> NeoTestDB:
    """Construct (and thereby configure) an instance or exit with an error."""
    try:
        instance = NeoTestDB(
            port if port is not None else runtime.config.ports.http,
            server_version,
            bolt_port,
            config=runtime.config,
        )
    except InstanceConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except PropertiesError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    op.add_step("properties.patch", status="success", detail=instance.properties.path)
    return instance


def _resolve_layout(
    runtime: RuntimeContext,
    op: OperationScope,
    server_version: str | None,
) -> ServerLayout:
    try:
        return ServerLayout(
            server_version or runtime.config.default_version,
            runtime.config.install_root,
        )
    except LayoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _render_info(info: ConnectionInfo, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=info.to_dict())
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in info.to_dict().items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


def _wait_while_running(instance: NeoTestDB) -> None:
    while instance.state is InstanceState.RUNNING:
        time.sleep(POLL_INTERVAL)


@app.command()
def run(
    ctx: typer.Context,
    port: int | None = PORT_OPTION,
    bolt_port: int | None = BOLT_PORT_OPTION,
    server_version: str | None = SERVER_VERSION_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start a server and keep it running until interrupted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "run",
        args={
            "port": port,
            "bolt_port": bolt_port,
            "server_version": server_version,
            "timeout": timeout,
        },
        target={"kind": "instance"},
    ) as op:
        instance = _build_instance(runtime, op, port, bolt_port, server_version)
        try:
            connection = instance.start(timeout=timeout)
        except InstanceError as exc:
            op.add_step("server.start", status="error", detail=str(exc))
            _command_error(op, f"Start failed: {exc}", rc=ExitCode.SERVER)
        op.add_step("server.start", status="success", detail=f"pid={connection.pid}")

        _render_info(connection, json_output=json_output)
        if not json_output:
            console.print("[green]Neo4j is running.[/green] Press Ctrl+C to stop.")

        try:
            _wait_while_running(instance)
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted; stopping Neo4j...[/yellow]")

        failure = instance.failure
        try:
            instance.stop()
        except InstanceError as exc:
            op.add_step("server.stop", status="error", detail=str(exc))
            _command_error(op, f"Stop failed: {exc}", rc=ExitCode.SERVER)
        op.add_step("server.stop", status="success")

        if failure is not None:
            _command_error(op, f"Server failed: {failure}", rc=ExitCode.SERVER)
        if not json_output:
            console.print("[green]Neo4j stopped.[/green]")
        op.success("Server stopped.", changed=1, context=connection.to_dict())


@app.command()
def configure(
    ctx: typer.Context,
    port: int | None = PORT_OPTION,
    bolt_port: int | None = BOLT_PORT_OPTION,
    server_version: str | None = SERVER_VERSION_OPTION,
) -> None:
    """Patch the server configuration without starting it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure",
        args={"port": port, "bolt_port": bolt_port, "server_version": server_version},
        target={"kind": "properties"},
    ) as op:
        instance = _build_instance(runtime, op, port, bolt_port, server_version)
        console.print(
            f"[green]Configured[/green] {instance.properties.path} "
            f"for {instance.get_url()}"
            + (f" and {instance.get_bolt_url()}" if instance.bolt_port else "")
        )
        op.success("Server configuration patched.", changed=1)


@app.command()
def info(
    ctx: typer.Context,
    port: int | None = PORT_OPTION,
    bolt_port: int | None = BOLT_PORT_OPTION,
    server_version: str | None = SERVER_VERSION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show paths and endpoints for a server without modifying anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "info",
        args={
            "port": port,
            "bolt_port": bolt_port,
            "server_version": server_version,
            "json": json_output,
        },
        target={"kind": "layout"},
    ) as op:
        layout = _resolve_layout(runtime, op, server_version)
        http_port = port or runtime.config.ports.http
        data: dict[str, object] = {
            "version": layout.version,
            "server_dir": str(layout.server_dir),
            "binary": str(layout.binary),
            "properties": str(layout.properties_path),
            "database": str(layout.database_dir(http_port)),
            "installed": layout.binary.exists(),
            "url": f"http://localhost:{http_port}",
        }
        if layout.is_v3:
            data["bolt_url"] = f"bolt://localhost:{bolt_port or runtime.config.ports.bolt}"

        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in data.items():
                table.add_row(key, str(value))
            console.print(table)
        op.success("Reported server layout.", changed=0)


@app.command()
def cleanup(
    ctx: typer.Context,
    port: int | None = PORT_OPTION,
    server_version: str | None = SERVER_VERSION_OPTION,
) -> None:
    """Delete the database directory used for a port."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cleanup",
        args={"port": port, "server_version": server_version},
        target={"kind": "database"},
    ) as op:
        layout = _resolve_layout(runtime, op, server_version)
        http_port = port or runtime.config.ports.http
        target = layout.database_dir(http_port)
        try:
            removed = layout.remove_database(http_port)
        except LayoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except OSError as exc:
            _command_error(op, f"Failed to remove {target}: {exc}", rc=ExitCode.ENVIRONMENT)

        if removed:
            console.print(f"[green]Removed[/green] {target}")
            op.success("Database removed.", changed=1, context={"path": target})
        else:
            console.print(f"Nothing to remove at {target}")
            op.success("Database already absent.", changed=0, context={"path": target})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    table.add_row(f"{key}.{sub_key}", str(sub_value))
            else:
                table.add_row(key, "" if value is None else str(value))
        console.print(table)
        op.success("Rendered configuration.", changed=0)


def main() -> None:  # pragma: no cover - console script entry point
    """Run the CLI application."""
    app()


__all__ = ["app", "main"]
