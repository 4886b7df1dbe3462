"""Typer-powered command line interface for ``serman``.

Each command is a thin dispatcher onto :class:`serman.registry.AppRegistry`:
it validates user input, calls exactly one engine operation, renders the
outcome with Rich and records the operation in the structured log. Every
failure surfaced by the engine is printed in red and exits with status 1.
"""
from __future__ import annotations

import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .config import AppConfig, load_config
from .errors import NotFoundError, SermanError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import PORT_STOPPED, PORT_UNSET, AppRecord, parse_domains, sanitize_name
from .providers import NginxProvider, SystemdProvider
from .registry import AppRegistry
from .runner import CommandRunner
from .state import StateRegistry
from .templates import TemplateEngine

console = Console()

DEFAULT_START_COMMAND = "npm start"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to serman's YAML config file.",
)

NAME_ARGUMENT = typer.Argument(..., help="Name of the app.")

app = typer.Typer(
    add_completion=False,
    no_args_is_help=False,
    help=textwrap.dedent(
        """
        A CLI app for managing servers (services).

        Apps are long-running processes registered with systemd and published
        through a managed region of the nginx configuration.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    state: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    runner: CommandRunner
    systemd: SystemdProvider
    nginx: NginxProvider
    _apps: AppRegistry | None = field(default=None, repr=False)

    @property
    def apps(self) -> AppRegistry:
        """Return the app registry, loading it from disk on first use."""
        if self._apps is None:
            self._apps = AppRegistry(
                state=self.state,
                systemd=self.systemd,
                nginx=self.nginx,
                locks=self.locks,
            )
        return self._apps


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except SermanError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    state = StateRegistry(config.registry_file)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runner = CommandRunner(timeout=config.command_timeout, sudo_bin=config.sudo_bin)
    systemd_provider = SystemdProvider(
        templates=templates,
        runner=runner,
        systemd_dir=config.systemd.unit_dir,
        apps_root=config.apps_root,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
        elevate=config.elevate,
        reload_retries=config.reload_retries,
        reload_backoff=config.reload_backoff,
    )
    nginx_provider = NginxProvider(
        templates=templates,
        runner=runner,
        config_file=config.nginx.config_file,
        staging_file=config.nginx.staging_file,
        reload_command=config.nginx.reload_command,
        elevate=config.elevate,
        reload_retries=config.reload_retries,
        reload_backoff=config.reload_backoff,
    )
    runtime = RuntimeContext(
        config=config,
        state=state,
        locks=locks,
        logger=logger,
        templates=templates,
        runner=runner,
        systemd=systemd_provider,
        nginx=nginx_provider,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the serman version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"serman {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _require_root(runtime: RuntimeContext, op: OperationScope) -> None:
    """Abort unless running as root or the root requirement is disabled."""
    if not runtime.config.require_root:
        return
    if os.geteuid() != 0:
        _command_error(op, "Serman needs to be run as root!")


def _format_port(port: int) -> str:
    if port == PORT_UNSET:
        return "unset"
    if port == PORT_STOPPED:
        return "stopped"
    return str(port)


def _check_exit(op: OperationScope, value: str) -> str:
    if value.strip().lower() == "exit":
        console.print("Exiting initialization process.")
        op.warning("Initialization cancelled by user.", changed=0)
        raise typer.Exit(code=ExitCode.OK)
    return value


def _prompt(op: OperationScope, message: str, *, default: str | None = None) -> str:
    """Prompt for a value, re-asking until it is non-empty."""
    while True:
        value = _check_exit(
            op,
            typer.prompt(
                typer.style(message, fg=typer.colors.GREEN),
                default=default,
                show_default=default is not None,
            ),
        )
        if value.strip():
            return value.strip()


@app.command()
def init(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    domains: list[str] | None = typer.Option(
        None,
        "--domain",
        "-d",
        help="Domain served by the app (repeat for several).",
    ),
    description: str | None = typer.Option(
        None,
        "--description",
        help="Human readable description embedded in the unit file.",
    ),
    start_command: str | None = typer.Option(
        None,
        "--start",
        help="Command run by the launcher script inside the server directory.",
    ),
    nginx_config: str | None = typer.Option(
        None,
        "--config",
        help="Raw nginx server block used instead of the generated one.",
    ),
) -> None:
    """Add a new app: create its directories, launcher script and service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "init",
        args={"name": name, "domains": domains, "description": description},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        try:
            app_name = sanitize_name(name)
            if runtime.apps.exists(app_name):
                _command_error(op, "App already exists, please choose another name.")
        except SermanError as exc:
            _command_error(op, str(exc))

        interactive = not domains or description is None or start_command is None
        if interactive:
            console.print(
                "Welcome to the app initialization process.\n"
                "Enter the following details (type 'exit' to leave):\n"
            )

        domain_list = parse_domains(domains)
        if not domain_list:
            domain_list = parse_domains(_prompt(op, f"App domains (*.{app_name.lower()}.com)"))
        if description is None:
            description = _prompt(op, "App description")
        if start_command is None:
            start_command = _prompt(op, "App start", default=DEFAULT_START_COMMAND)
        if nginx_config is None:
            nginx_config = ""
            if interactive:
                nginx_config = _check_exit(
                    op,
                    typer.prompt(
                        typer.style("NGINX config (optional)", fg=typer.colors.GREEN),
                        default="",
                        show_default=False,
                    ),
                )

        app_dir = runtime.config.apps_root / app_name
        server_dir = app_dir / "server"
        try:
            server_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _command_error(op, f"Failed to create directory for app: {exc}")
        console.print(f"Directory ({app_dir}) created successfully.")
        console.print(f"Directory ({server_dir}) created successfully.")
        op.add_step("directories.create", detail=str(server_dir))

        script_path = app_dir / "start.sh"
        try:
            runtime.templates.render_to_path(
                "scripts/start.sh.j2",
                script_path,
                {"name": app_name, "server_dir": str(server_dir), "command": start_command},
                mode=0o755,
            )
        except OSError as exc:
            _command_error(op, f"Failed to write launcher script {script_path}: {exc}")
        op.add_step("launcher.write", detail=str(script_path))

        record = AppRecord(
            name=app_name,
            description=description,
            start=str(script_path),
            port=PORT_UNSET,
            domains=domain_list,
            config=nginx_config,
        )
        try:
            message = runtime.apps.add(record)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("systemd.create", detail=runtime.systemd.unit_name(app_name))
        op.add_step("registry.update", detail="appended")

        if message.strip():
            console.print(message.strip())
        console.print(f"[grey50]\nPlease run {script_path}[/grey50]")
        console.print("[green]App Created Successfully![/green]")
        op.success("App created.", changed=4, context={"start": str(script_path)})


@app.command()
def stop(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Stop an app and disable it from starting on boot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"Stopping {name}...")
        try:
            runtime.apps.stop(name)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("systemd.stop")
        op.add_step("registry.update", detail="port=0")
        console.print(f"[green]App {name} stopped.[/green]")
        op.success("App stopped.", changed=2)


@app.command()
def start(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Start an app and enable it on boot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"name": name},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"Starting {name}...")
        try:
            message = runtime.apps.start(name)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("systemd.start")
        op.add_step("systemd.enable")
        if message.strip():
            console.print(message.strip())
        console.print(f"[green]App {name} started.[/green]")
        op.success("App started.", changed=1)


@app.command()
def restart(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Reload systemd and restart an app."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"Restarting {name}...")
        try:
            message = runtime.apps.restart(name)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("systemd.restart")
        if message.strip():
            console.print(message.strip())
        console.print(f"[green]App {name} restarted.[/green]")
        op.success("App restarted.", changed=1)


@app.command()
def change(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    key: str = typer.Argument(..., help="Field to set (name, description, start, port, ...)."),
    value: str = typer.Argument(..., help="New value for the field."),
) -> None:
    """Set a field on an app and regenerate what depends on it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "change",
        args={"name": name, "key": key, "value": value},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        try:
            updated = runtime.apps.change(name, key, value)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("registry.update", detail=f"{key}={value}")
        console.print(f"[green]Set {key} for {updated.name}.[/green]")
        op.success("App changed.", changed=1, context={"app": updated.to_dict()})


@app.command()
def domain(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    domains: list[str] | None = typer.Argument(
        None,
        help="New domains; prompted for when omitted.",
    ),
) -> None:
    """Replace the domains served by an app."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "domain",
        args={"name": name, "domains": domains},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"[grey50]Changing domains for {name}...[/grey50]")
        try:
            if runtime.apps.get(name) is None:
                raise NotFoundError(sanitize_name(name))
        except SermanError as exc:
            _command_error(op, str(exc))

        raw = " ".join(domains) if domains else typer.prompt(
            typer.style("Enter new domains (space-separated)", fg=typer.colors.GREEN),
            default="",
            show_default=False,
        )
        new_domains = parse_domains(raw)
        if not new_domains:
            _command_error(op, "Invalid domains provided.")

        try:
            runtime.apps.change(name, "domains", new_domains)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("registry.update", detail=" ".join(new_domains))
        console.print(f"[green]Domains for {name} updated successfully.[/green]")
        op.success("Domains updated.", changed=1, context={"domains": new_domains})


@app.command()
def point(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    port: str = typer.Argument(..., help="Port the app listens on (1024-65535)."),
) -> None:
    """Point an app's domains at a local port."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "point",
        args={"name": name, "port": port},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"Pointing {name} to {port}...")
        try:
            result = runtime.apps.point(name, port)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("registry.update", detail=f"port={port}")
        op.add_step("nginx.apply", detail=result.layout)
        console.print(f"[green]App {name} now points to port {port}.[/green]")
        op.success("App pointed.", changed=2, context={"layout": result.layout})


@app.command()
def remove(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Remove an app's service and unregister it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"name": name},
        target={"kind": "app", "name": name},
    ) as op:
        _require_root(runtime, op)
        console.print(f"[grey50]Removing {name}...[/grey50]")
        try:
            runtime.apps.remove(name)
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step("systemd.remove")
        op.add_step("registry.update", detail="removed")
        console.print(f"[green]App {name} removed.[/green]")
        op.success("App removed.", changed=3)


@app.command()
def log(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    lines: int | None = typer.Option(
        None,
        "--lines",
        "-n",
        min=1,
        help="Show the last N journal lines instead of the service status.",
    ),
    since: str | None = typer.Option(
        None,
        "--since",
        help="Show journal entries since this time (journalctl syntax).",
    ),
) -> None:
    """Show the service status, or journal lines, for an app."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "log",
        args={"name": name, "lines": lines, "since": since},
        target={"kind": "app", "name": name},
    ) as op:
        console.print(f"[grey50]Fetching logs for {name}...[/grey50]")
        try:
            if not runtime.apps.exists(name):
                raise NotFoundError(sanitize_name(name))
            if lines is None and since is None:
                output = runtime.systemd.status(name)
            else:
                output = runtime.systemd.logs(name, lines=lines, since=since)
        except SermanError as exc:
            _command_error(op, f"Failed to fetch logs for {name}:\n{exc}")
        console.print(output, markup=False, highlight=False)
        op.success("Displayed app logs.", changed=0)


@app.command("list")
def list_apps(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit apps as JSON instead of a table.",
    ),
) -> None:
    """List all registered apps."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "app", "scope": "registry"},
    ) as op:
        try:
            records = list(runtime.apps.apps)
        except SermanError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"apps": [record.to_dict() for record in records]})
            op.success("Reported app list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Description")
        table.add_column("Port")
        table.add_column("Domains")
        table.add_column("Start")

        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                record.name,
                record.description,
                _format_port(record.port),
                " ".join(record.domains),
                record.start,
            )

        console.print(table)
        op.success("Reported app list.", changed=0, context={"count": len(records)})


@app.command()
def sync(ctx: typer.Context) -> None:
    """Regenerate every unit file and the nginx region from the registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sync",
        target={"kind": "app", "scope": "registry"},
    ) as op:
        _require_root(runtime, op)
        try:
            report = runtime.apps.sync()
        except SermanError as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.apps.lock_wait_ms)
        op.add_step(
            "systemd.write_units",
            detail=", ".join(report.units_changed) or "unchanged",
        )
        op.add_step("nginx.apply", detail=report.nginx.layout)

        if report.units_changed:
            console.print(f"Rewrote units: {', '.join(report.units_changed)}")
        else:
            console.print("All unit files up to date.")
        console.print(f"nginx configuration applied ({report.nginx.layout}).")
        console.print("[green]Sync complete.[/green]")
        op.success(
            "Sync complete.",
            changed=len(report.units_changed) + int(report.nginx.changed),
            context={"units": report.units_changed, "layout": report.nginx.layout},
        )


# Short aliases kept out of ``--help``.
app.command("create", hidden=True)(init)
app.command("add", hidden=True)(init)
app.command("set", hidden=True)(change)
app.command("dom", hidden=True)(domain)
app.command("p", hidden=True)(point)
app.command("rm", hidden=True)(remove)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
