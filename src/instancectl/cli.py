"""Typer-powered command line interface for ``instancectl``.

Each command resolves its target instance, runs inside a structured logging
operation and delegates the actual work to :class:`InstanceManager` or
:class:`InstanceRegistry`. Errors derived from :class:`InstanceCtlError` are
reported as a single ``ERROR:`` line and mapped to their exit status.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import ConfigurationError, InstanceCtlError, PreconditionError
from .exit_codes import ExitCode
from .lifecycle import CreateOptions, InstanceManager
from .logging import OperationScope, StructuredLogger
from .models import Instance, validate_instance_name
from .ports import PortAllocator
from .providers.certificates import CertificateManager
from .providers.containers import ContainerRuntime, runtime_for
from .providers.database import PostgresProvider
from .providers.dns import DomainResolver
from .providers.haproxy import ProxyRegistrar
from .providers.health import HealthProber, Status
from .state.registry import InstanceReport, InstanceRegistry, ListFilter

console = Console()
err_console = Console(stderr=True)

CONFIRMATION_WORD = "YES"

_STATUS_STYLE = {
    Status.UP: "[green]●[/green]",
    Status.DEGRADED: "[yellow]●[/yellow]",
    Status.DOWN: "[red]●[/red]",
}

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to instancectl's YAML config file.",
)

PROJECT_DIR_OPTION = typer.Option(
    None,
    "--project-dir",
    "-d",
    help="Target an instance by directory instead of by name ('.' for the current one).",
)

INSTANCE_ARGUMENT = typer.Argument(None, help="Instance name (a domain name).")

FORCE_OPTION = typer.Option(
    False,
    "--force",
    help="Skip safety checks (domain verification, managed-marker check).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage a fleet of containerised application instances.

        Instances live in one directory each under the fleet root and are
        published through a shared HAProxy configuration.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect instancectl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    registry: InstanceRegistry
    ports: PortAllocator
    runtime: ContainerRuntime
    proxy: ProxyRegistrar
    certificates: CertificateManager
    database: PostgresProvider
    resolver: DomainResolver
    prober: HealthProber
    manager: InstanceManager


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire every provider from *config*."""
    services = config.services
    probe = config.probe
    certificates = CertificateManager(
        tool=config.certificates.tool,
        live_dir=config.certificates.live_dir,
        command_timeout=config.command_timeout,
    )
    prober = HealthProber(
        connect_timeout=probe.connect_timeout,
        http_timeout=probe.http_timeout,
        version_path=probe.version_path,
        version_field=probe.version_field,
        image_info_path=probe.image_info_path,
    )
    registry = InstanceRegistry(
        fleet_root=config.fleet_root,
        config_filename=config.config_filename,
        marker_filename=config.marker_file,
        metadata_filename=config.metadata_file,
        prober=prober,
        certificates=certificates,
        proxy_service=services.proxy,
        proxy_port=services.proxy_port,
        application=services.application,
        admin_file=config.secrets.admin_file,
        user_file=config.secrets.user_file,
    )
    ports = PortAllocator(
        fleet_root=config.fleet_root,
        config_filename=config.config_filename,
        proxy_service=services.proxy,
        proxy_port=services.proxy_port,
        base=config.ports.base,
        ceiling=config.ports.ceiling,
        max_attempts=config.ports.max_attempts,
    )
    runtime = runtime_for(
        config.deployment_mode,
        docker_command=config.docker_command,
        compose_command=config.compose_command,
        command_timeout=config.command_timeout,
    )
    proxy_config = config.proxy
    proxy = ProxyRegistrar(
        config_file=proxy_config.config_file,
        backup_suffix=proxy_config.backup_suffix,
        begin_marker=proxy_config.begin_marker,
        end_marker=proxy_config.end_marker,
        reload_command=proxy_config.reload_command,
        backend_host=proxy_config.backend_host,
        command_timeout=config.command_timeout,
    )
    db = config.database
    database = PostgresProvider(
        runtime=runtime,
        user=db.user,
        owner=db.owner,
        system_user=db.system_user,
        source_host=db.source_host,
        target_host=db.target_host,
        databases=db.databases,
        ready_timeout=db.ready_timeout,
        poll_interval=db.poll_interval,
        max_poll_interval=db.max_poll_interval,
    )
    resolver = DomainResolver()
    manager = InstanceManager(
        config=config,
        registry=registry,
        ports=ports,
        runtime=runtime,
        proxy=proxy,
        certificates=certificates,
        database=database,
        resolver=resolver,
    )
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        registry=registry,
        ports=ports,
        runtime=runtime,
        proxy=proxy,
        certificates=certificates,
        database=database,
        resolver=resolver,
        prober=prober,
        manager=manager,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    mode: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if mode is not None:
        overrides["deployment_mode"] = mode

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigurationError as exc:
        err_console.print(f"[red]ERROR: {escape(str(exc))}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_console(color: str) -> None:
    global console, err_console
    if color == "always":
        console = Console(force_terminal=True)
        err_console = Console(stderr=True, force_terminal=True)
    elif color == "never":
        console = Console(no_color=True, highlight=False)
        err_console = Console(stderr=True, no_color=True, highlight=False)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the instancectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    mode: str | None = typer.Option(
        None,
        "--mode",
        help="Deployment mode: 'compose' or 'stack' (overrides the config file).",
    ),
    color: str = typer.Option(
        "auto",
        "--color",
        help="Colorize output: auto, always or never.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if color not in {"auto", "always", "never"}:
        err_console.print("[red]ERROR: --color must be one of auto, always, never.[/red]")
        raise typer.Exit(code=int(ExitCode.CONFIGURATION))
    _configure_console(color)

    if version:
        console.print(f"instancectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, mode)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _prompt_required(label: str) -> str:
    while True:
        value = typer.prompt(label).strip()
        if value:
            return value


def _command_error(op: OperationScope, exc: InstanceCtlError) -> NoReturn:
    """Emit a labelled error and terminate the command."""
    message = str(exc)
    rc = int(exc.exit_code)
    err_console.print(f"[red]{exc.label}: {escape(message)}[/red]")
    op.error(message, rc=rc)
    raise typer.Exit(code=rc)


def _resolve_instance(
    runtime: RuntimeContext,
    name: str | None,
    project_dir: str | None,
) -> Instance:
    """Turn a positional name or ``--project-dir`` into an :class:`Instance`."""
    if name and project_dir:
        raise PreconditionError("Mutually exclusive options: an instance name and --project-dir.")
    if project_dir:
        directory = Path.cwd() if project_dir == "." else Path(project_dir).expanduser()
        return runtime.registry.at(directory.resolve())
    if not name:
        raise PreconditionError("Please specify an instance name or --project-dir.")
    return runtime.registry.instance(validate_instance_name(name))


def _warn(messages: Sequence[str]) -> None:
    for message in messages:
        err_console.print(f"[yellow]WARN: {escape(message)}[/yellow]")


def _render_summary(reports: Sequence[InstanceReport]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Port")
    table.add_column("Metadata")
    if not reports:
        table.add_row("", "(none)", "", "", "")
    for report in reports:
        version = report.probe.version or report.probe.status.value
        table.add_row(
            _STATUS_STYLE[report.probe.status],
            escape(report.name),
            escape(version),
            "" if report.port is None else str(report.port),
            escape(report.summary or ""),
        )
    console.print(table)


def _render_details(report: InstanceReport, *, long: bool, metadata: bool) -> None:
    table = Table(show_header=False, title=f"{_STATUS_STYLE[report.probe.status]} {escape(report.name)}")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    if long:
        table.add_row("Directory", escape(str(report.instance.directory)))
        table.add_row("Stack name", escape(report.instance.stack_name))
        table.add_row("Version", escape(report.probe.version or report.probe.status.value))
        if report.image is not None:
            table.add_row("Image", escape(str(report.image)))
        table.add_row("Local port", "" if report.port is None else str(report.port))
        if report.admin_password:
            table.add_row("Login", f"admin : {escape(report.admin_password)}")
        if report.user_account is not None:
            account = report.user_account
            table.add_row("User", f'"{escape(account.display_name)}" : {escape(account.password or "")}')
        if report.certificate_expiry is not None:
            table.add_row("Cert expiry", report.certificate_expiry.strftime("%Y-%m-%d %H:%M UTC"))
    if report.image_info:
        table.add_row("Image info", escape(report.image_info))
    if metadata:
        for line in report.metadata:
            table.add_row("Metadata", escape(line))
    console.print(table)


def _confirm_destruction(op: OperationScope, prompt: str) -> None:
    """Require the operator to type the confirmation word; exit 0 otherwise."""
    answer = typer.prompt(
        f"{prompt} (uppercase {CONFIRMATION_WORD} to confirm)",
        default="",
        show_default=False,
    )
    if answer != CONFIRMATION_WORD:
        console.print("Aborted.")
        op.success("Operator declined confirmation.", changed=0)
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Display the effective configuration as JSON."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", target={"kind": "config"}) as op:
        console.print_json(data=runtime.config.to_dict())
        op.success("Rendered configuration as JSON.", changed=0)


@app.command("ls")
def list_instances(
    ctx: typer.Context,
    pattern: str | None = typer.Argument(None, help="Regular expression matched against names."),
    show_all: bool = typer.Option(
        False, "--all", "-a", help="Equivalent to --long --metadata --image-info."
    ),
    long: bool = typer.Option(False, "--long", "-l", help="Show details for every instance."),
    metadata: bool = typer.Option(False, "--metadata", "-m", help="Show all metadata lines."),
    image_info: bool = typer.Option(False, "--image-info", "-i", help="Query image build info."),
    online: bool = typer.Option(False, "--online", "-n", help="Only list running instances."),
    offline: bool = typer.Option(False, "--offline", "-f", help="Only list stopped instances."),
    search_metadata: bool = typer.Option(
        False, "--search-metadata", "-M", help="Match the pattern against metadata too."
    ),
    fast: bool = typer.Option(False, "--fast", help="Only check TCP reachability."),
    json_output: bool = typer.Option(False, "--json", help="Emit the listing as JSON."),
    no_parallel: bool = typer.Option(False, "--no-parallel", help="Probe instances one by one."),
) -> None:
    """List instances with their status."""
    runtime = _get_runtime(ctx)
    options = ListFilter(
        pattern=pattern,
        search_metadata=search_metadata,
        online=online,
        offline=offline,
        fast=fast,
        long=long or show_all,
        metadata=metadata or show_all,
        image_info=image_info or show_all,
        parallel=not no_parallel,
    )
    with runtime.logger.operation(
        "ls",
        args={"pattern": pattern, "fast": fast, "online": online, "offline": offline},
        target={"kind": "fleet", "root": runtime.config.fleet_root},
    ) as op:
        try:
            reports = runtime.registry.list(options)
        except InstanceCtlError as exc:
            _command_error(op, exc)

        if json_output:
            console.print_json(data={"instances": [report.to_dict() for report in reports]})
        elif options.long or options.metadata or options.image_info:
            for report in reports:
                _render_details(report, long=options.long, metadata=options.metadata)
        else:
            _render_summary(reports)
        op.success(f"Listed {len(reports)} instance(s).", context={"count": len(reports)})


@app.command("add")
def add_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Domain name of the new instance."),
    image: str | None = typer.Option(None, "--image", "-I", help="Application image name."),
    tag: str | None = typer.Option(None, "--tag", "-t", help="Application image tag."),
    repository: str | None = typer.Option(
        None, "--default-repo", "-r", help="Replace the default image namespace with this repository."
    ),
    clone_from: str | None = typer.Option(None, "--clone-from", help="Clone an existing instance."),
    local_only: bool = typer.Option(
        False, "--local-only", help="Skip certificates and proxy registration."
    ),
    www: bool = typer.Option(False, "--www", help="Also request a certificate for www.<name>."),
    mailserver: str | None = typer.Option(None, "--mailserver", help="Mail relay host."),
    no_add_account: bool = typer.Option(
        False, "--no-add-account", help="Do not create a secondary user account."
    ),
    first_name: str | None = typer.Option(None, "--first-name", help="Secondary account first name."),
    last_name: str | None = typer.Option(None, "--last-name", help="Secondary account last name."),
    start: bool | None = typer.Option(
        None, "--start/--no-start", help="Start containers without asking."
    ),
    force: bool = FORCE_OPTION,
) -> None:
    """Create a new instance (or clone one with --clone-from)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "add",
        args={
            "image": image,
            "tag": tag,
            "clone_from": clone_from,
            "local_only": local_only,
            "www": www,
            "force": force,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        account: tuple[str, str] | None = None
        if not no_add_account and not clone_from:
            first = first_name.strip() if first_name is not None else _prompt_required("First name")
            last = last_name.strip() if last_name is not None else _prompt_required("Last name")
            if not first or not last:
                _command_error(
                    op, PreconditionError("The secondary account needs a first and a last name.")
                )
            account = (first, last)

        options = CreateOptions(
            name=name,
            image=image,
            tag=tag,
            local_only=local_only,
            www=www,
            relay_host=mailserver,
            repository=repository,
            user_account=account,
            force=force,
            clone_from=clone_from,
        )
        try:
            result = runtime.manager.create(options, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)

        instance = result.instance
        console.print(
            f"[green]Created[/green] {escape(instance.name)} on port {result.port} "
            f"in {escape(str(instance.directory))}"
        )
        if result.admin_password:
            console.print(f"Login: admin : {escape(result.admin_password)}")
        if result.user_account is not None:
            console.print(
                f'User: "{escape(result.user_account.display_name)}" : '
                f"{escape(result.user_account.password or '')}"
            )
        _warn(result.warnings)

        should_start = start
        if should_start is None:
            should_start = typer.confirm("Start containers?", default=True)
        if should_start:
            try:
                runtime.manager.start(instance, op=op)
            except InstanceCtlError as exc:
                _command_error(op, exc)
        else:
            console.print("Not starting containers.")

        op.success(
            f"Created instance {instance.name}.",
            changed=1,
            context={"port": result.port, "started": bool(should_start)},
        )


@app.command("rm")
def remove_instance(
    ctx: typer.Context,
    name: str | None = INSTANCE_ARGUMENT,
    project_dir: str | None = PROJECT_DIR_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Erase an instance, delete its directory and drop its registrations."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rm",
        args={"force": force, "project_dir": project_dir},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = _resolve_instance(runtime, name, project_dir)
            runtime.manager.require_instance(instance)
            runtime.manager.check_marker(instance, force=force)
            report = runtime.registry.report(instance, ListFilter(long=True, metadata=True))
        except InstanceCtlError as exc:
            _command_error(op, exc)

        console.print("Delete the following instance including all of its data and configuration?")
        _render_details(report, long=True, metadata=True)
        _confirm_destruction(op, "Really delete?")

        try:
            result = runtime.manager.remove(instance, force=force, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)
        _warn(result.warnings)
        console.print(f"[green]Removed[/green] {escape(instance.name)}.")
        op.success(f"Removed instance {instance.name}.", changed=1)


@app.command("start")
def start_instance(
    ctx: typer.Context,
    name: str | None = INSTANCE_ARGUMENT,
    project_dir: str | None = PROJECT_DIR_OPTION,
) -> None:
    """Start an instance's containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"project_dir": project_dir},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = _resolve_instance(runtime, name, project_dir)
            runtime.manager.start(instance, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)
        console.print(f"[green]Started[/green] {escape(instance.name)}.")
        op.success(f"Started instance {instance.name}.", changed=1)


@app.command("stop")
def stop_instance(
    ctx: typer.Context,
    name: str | None = INSTANCE_ARGUMENT,
    project_dir: str | None = PROJECT_DIR_OPTION,
) -> None:
    """Stop an instance's containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"project_dir": project_dir},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = _resolve_instance(runtime, name, project_dir)
            runtime.manager.stop(instance, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)
        console.print(f"[green]Stopped[/green] {escape(instance.name)}.")
        op.success(f"Stopped instance {instance.name}.", changed=1)


@app.command("update")
def update_instance(
    ctx: typer.Context,
    name: str | None = INSTANCE_ARGUMENT,
    project_dir: str | None = PROJECT_DIR_OPTION,
    image: str | None = typer.Option(None, "--image", "-I", help="New application image name."),
    tag: str | None = typer.Option(None, "--tag", "-t", help="New application image tag."),
    force: bool = typer.Option(False, "--force", help="Force a service update in stack mode."),
) -> None:
    """Switch an instance to another image or tag."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"image": image, "tag": tag, "force": force, "project_dir": project_dir},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = _resolve_instance(runtime, name, project_dir)
            result = runtime.manager.update(instance, image=image, tag=tag, force=force, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)
        _warn(result.warnings)
        console.print(f"[green]Updated[/green] {escape(instance.name)} to {escape(result.image or '')}.")
        op.success(f"Updated instance {instance.name}.", changed=1, context={"image": result.image})


@app.command("erase")
def erase_instance(
    ctx: typer.Context,
    name: str | None = INSTANCE_ARGUMENT,
    project_dir: str | None = PROJECT_DIR_OPTION,
) -> None:
    """Stop an instance and remove its containers and volumes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "erase",
        args={"project_dir": project_dir},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = _resolve_instance(runtime, name, project_dir)
            runtime.manager.require_instance(instance)
            report = runtime.registry.report(instance, ListFilter(long=True, metadata=True))
        except InstanceCtlError as exc:
            _command_error(op, exc)

        console.print("Stop the following instance, and remove its containers and volumes?")
        _render_details(report, long=True, metadata=True)
        _confirm_destruction(op, "Really delete?")

        try:
            warnings = runtime.manager.erase(instance, op=op)
        except InstanceCtlError as exc:
            _command_error(op, exc)
        _warn(warnings)
        console.print(f"[green]Erased[/green] {escape(instance.name)}.")
        op.success(f"Erased instance {instance.name}.", changed=1)


app.command("list", hidden=True)(list_instances)
app.command("create", hidden=True)(add_instance)
app.command("remove", hidden=True)(remove_instance)
app.command("up", hidden=True)(start_instance)
app.command("down", hidden=True)(stop_instance)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
