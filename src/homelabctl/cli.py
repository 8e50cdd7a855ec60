"""Typer-powered command line for ``homelabctl``.

Every command opens a structured operation scope, prints human output with
rich and maps module errors onto the shared :class:`ExitCode` values.
"""
from __future__ import annotations

import json
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import NoReturn

import requests
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupManager, format_size
from .bootstrap import SetupError, SetupOptions, SetupResult, SetupRunner, stack_compose_file
from .config import AppConfig, ConfigError, load_config
from .dns import (
    CloudflareClient,
    DNSError,
    detect_public_ip,
    setup_public_dns,
    validate_dns,
)
from .doctor import (
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    ProbeExecutorOptions,
    ProbeStatus,
    access_urls,
    collect_probes,
    collect_validation_probes,
    create_probe_context,
    select_probes,
)
from .envfile import read_env, truthy
from .exit_codes import ExitCode
from .instances import BatchResult, InstanceError, InstanceManager
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import ComposeError, ComposeProvider, DockerError, DockerProvider
from .roles import DEFAULT_INSTANCE, RoleError, available_roles
from .templates import TemplateEngine, TemplateRenderError
from .traefik import TraefikConfigError, render_dashboard

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate homelabctl configuration file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON output.")
YES_OPTION = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation.")
ROLE_ARGUMENT = typer.Argument(..., help="Role name (a directory under the roles dir).")
INSTANCE_ARGUMENT = typer.Argument(DEFAULT_INSTANCE, help="Instance name.")
HEALTH_CHECK_ARGUMENT = typer.Argument(
    "all",
    help="all|docker|services|network|certs|resources|logs|config|env|summary",
)
MAX_CONCURRENCY_OPTION = typer.Option(
    None,
    "--max-concurrency",
    min=1,
    help="Maximum number of probes to run in parallel.",
)
RETENTION_DAYS_OPTION = typer.Option(
    None,
    "--retention-days",
    min=0,
    help="Override the configured backup retention window.",
)

app = typer.Typer(
    add_completion=False,
    help="Manage a Docker Compose homelab: setup, roles, DNS, backups and health.",
)
role_app = typer.Typer(help="Install and operate role instances.")
backup_app = typer.Typer(help="Create, list, restore and prune backups.")
dns_app = typer.Typer(help="Cloudflare DNS records and public IP helpers.")
traefik_app = typer.Typer(help="Generate Traefik dynamic configuration.")
config_app = typer.Typer(help="Inspect homelabctl configuration.")

app.add_typer(role_app, name="role")
app.add_typer(backup_app, name="backup")
app.add_typer(dns_app, name="dns")
app.add_typer(traefik_app, name="traefik")
app.add_typer(config_app, name="config")

_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]GREEN[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]RED[/red]",
}
_HEALTH_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Health check completed successfully.",
    DoctorImpact.VALIDATION: "Health check detected configuration errors.",
    DoctorImpact.ENVIRONMENT: "Health check detected missing host dependencies.",
    DoctorImpact.PROVIDER: "Health check detected service failures.",
}
_NOTIFY_STYLE = {
    "success": "[green]✓[/green]",
    "info": "[blue]ℹ[/blue]",
    "warning": "[yellow]⚠[/yellow]",
    "error": "[red]✗[/red]",
}
_DNS_SETTLE_SECONDS = 5.0
_DNS_CHECK_SUBDOMAINS = ("whoami", "portainer")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    docker: DockerProvider
    compose: ComposeProvider
    instances: InstanceManager
    backups: BackupManager


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    docker = DockerProvider(config.compose.docker_bin)
    compose = ComposeProvider(config.compose.docker_bin)
    instances = InstanceManager(
        roles_dir=config.roles_dir,
        instance_root=config.instance_root,
        project_env_file=config.env_file,
        compose=compose,
        default_project=config.compose.default_project,
        editor=config.editor,
        locks=locks,
    )
    backups = BackupManager(
        project_root=config.project_root,
        root=config.backups.root,
        docker=docker,
        compose=compose,
        prefix=config.backups.prefix,
        retention_days=config.backups.retention_days,
        helper_image=config.backups.helper_image,
        include=config.backups.include,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        docker=docker,
        compose=compose,
        instances=instances,
        backups=backups,
    )
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
        help="Show the homelabctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"homelabctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: Exception) -> ExitCode:
    """Map a module error onto the CLI exit code it should produce."""
    if isinstance(exc, (ComposeError, DockerError, DNSError, requests.RequestException)):
        return ExitCode.PROVIDER
    if isinstance(exc, LockTimeoutError):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, BackupError):
        return ExitCode.FAILURE
    return ExitCode.VALIDATION


def _notify(level: str, message: str) -> None:
    marker = _NOTIFY_STYLE.get(level, "")
    console.print(f"{marker} {message}".strip())


def _project_env(runtime: RuntimeContext) -> dict[str, str]:
    return read_env(runtime.config.env_file)


def _render_probe_report(report: DoctorReport, *, title: str) -> None:
    """Render a health or validation report in a human-friendly format."""
    summary = report.summary
    totals = summary.totals
    console.print(
        f"{title}: {_SUMMARY_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    if not report.results:
        console.print("No probes were executed.")
        return
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} [{result.category}] "
            f"{result.id}: {result.message}"
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")


def _print_access_urls(env: dict[str, str]) -> None:
    urls = access_urls(env)
    if not urls:
        return
    console.print("[bold]Access your services:[/bold]")
    for label, url in urls.items():
        console.print(f"  {label}: {url}")


def _run_validation(runtime: RuntimeContext, op: OperationScope) -> int:
    """Run the post-setup validation probes; return the exit code they imply."""
    context = create_probe_context(runtime)
    report = DoctorEngine(context).run(collect_validation_probes(context))
    _render_probe_report(report, title="Validation")
    issues = report.issues()
    op.add_step(
        "validate",
        status="success" if not issues else "warning",
        detail={"issues": len(issues), "exit_code": report.summary.exit_code},
    )
    if not issues:
        console.print("[green]All checks passed. Your homelab is ready.[/green]")
        _print_access_urls(dict(context.env))
    else:
        console.print(f"[yellow]Found {len(issues)} issue(s).[/yellow]")
    return report.summary.exit_code


def _render_batch(result: BatchResult, verb: str) -> None:
    for item in result.items:
        marker = _NOTIFY_STYLE["success"] if item.ok else _NOTIFY_STYLE["error"]
        console.print(f"{marker} {result.role}/{item.instance}")
        if item.detail and (result.action == "status" or not item.ok):
            console.print(item.detail)
    colour = "green" if result.ok else "yellow"
    console.print(
        f"[{colour}]{verb} {result.success_count}/{result.total} instances "
        f"of {result.role}.[/{colour}]"
    )


def _finish_batch(op: OperationScope, result: BatchResult, verb: str) -> None:
    _render_batch(result, verb)
    context = {
        "role": result.role,
        "items": [asdict(item) for item in result.items],
    }
    message = f"{verb} {result.success_count}/{result.total} instances."
    if result.ok:
        op.success(message, changed=result.success_count, context=context)
        return
    failed = [item.instance for item in result.items if not item.ok]
    op.error(message, errors=failed, rc=ExitCode.FAILURE, context=context)
    raise typer.Exit(code=ExitCode.FAILURE)


# ---------------------------------------------------------------------------
# setup / validate / health
# ---------------------------------------------------------------------------


@app.command()
def setup(
    ctx: typer.Context,
    assume_yes: bool = YES_OPTION,
    install_docker: bool = typer.Option(
        False,
        "--install-docker",
        help="Install Docker and the Compose plugin when they are missing.",
    ),
    no_validate: bool = typer.Option(
        False,
        "--no-validate",
        help="Skip the validation run after the stack starts.",
    ),
) -> None:
    """Check the host, configure .env and start the core stack."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "setup",
        args={"yes": assume_yes, "install_docker": install_docker, "validate": not no_validate},
        target={"kind": "system", "scope": "stack", "path": str(config.project_root)},
    ) as op:
        runner = SetupRunner(
            project_root=config.project_root,
            docker=runtime.docker,
            compose=runtime.compose,
            health=config.health,
            dns=config.dns,
            confirm=lambda prompt: typer.confirm(prompt, default=False),
            notify=_notify,
        )
        options = SetupOptions(assume_yes=assume_yes, install_docker=install_docker)
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runner.run(options)
        except SetupError as exc:
            _command_error(op, str(exc), rc=exc.rc)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        _render_setup_result(result)
        context = result.to_dict()

        rc = 0
        if not no_validate:
            rc = _run_validation(runtime, op)
        else:
            _print_access_urls(_project_env(runtime))

        if rc:
            op.error("Setup completed but validation failed.", rc=rc, context=context)
            raise typer.Exit(code=rc)
        if result.warnings:
            op.warning(
                "Setup completed with warnings.",
                warnings=result.warnings,
                changed=1,
                context=context,
            )
            return
        op.success("Setup completed.", changed=1, context=context)


def _render_setup_result(result: SetupResult) -> None:
    for warning in result.warnings:
        console.print(f"{_NOTIFY_STYLE['warning']} {warning}")
    if result.status_table:
        console.print(result.status_table, markup=False, highlight=False)
    console.print(
        f"[green]Setup complete[/green] ({result.deployment.value}, {result.selection.describe()})."
    )


@app.command()
def validate(ctx: typer.Context) -> None:
    """Verify that the running stack is healthy after setup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        target={"kind": "system", "scope": "stack"},
    ) as op:
        rc = _run_validation(runtime, op)
        if rc:
            op.error("Validation detected failures.", rc=rc)
            raise typer.Exit(code=rc)
        op.success("Validation completed.", changed=0)


@app.command()
def health(
    ctx: typer.Context,
    check: str = HEALTH_CHECK_ARGUMENT,
    json_output: bool = JSON_OPTION,
    max_concurrency: int | None = MAX_CONCURRENCY_OPTION,
) -> None:
    """Run read-only health probes against the host and the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health",
        args={"check": check, "json": json_output, "max_concurrency": max_concurrency},
        target={"kind": "system", "scope": "health"},
    ) as op:
        defaults = ProbeExecutorOptions()
        options = ProbeExecutorOptions(
            max_concurrency=(
                max_concurrency if max_concurrency is not None else defaults.max_concurrency
            ),
        )
        context = create_probe_context(runtime, options)
        discovered = list(collect_probes(context))
        try:
            matched = select_probes(discovered, check)
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        metadata = {
            "check": check,
            "discovered_probes": len(discovered),
            "matched_probes": len(matched),
            "options": asdict(options),
        }
        report = DoctorEngine(context).run(matched, metadata=metadata)
        payload = report.to_dict()

        if json_output:
            console.print_json(data=payload)
        else:
            _render_probe_report(report, title="Health summary")

        summary = report.summary
        impact_message = _HEALTH_IMPACT_MESSAGES.get(
            summary.impact, "Health check detected issues."
        )
        warning_ids = [r.id for r in report.results if r.status is ProbeStatus.YELLOW]
        error_ids = [r.id for r in report.results if r.status is ProbeStatus.RED]
        log_context = {"report": payload}

        if summary.exit_code == 0:
            if summary.status is ProbeStatus.YELLOW:
                if not json_output:
                    console.print("[yellow]Health check completed with warnings.[/yellow]")
                op.warning(
                    "Health check completed with warnings.",
                    warnings=warning_ids or None,
                    context=log_context,
                )
            else:
                op.success(_HEALTH_IMPACT_MESSAGES[DoctorImpact.OK], context=log_context)
            return

        if not json_output:
            console.print(f"[red]{impact_message}[/red]")
        op.error(
            impact_message,
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context=log_context,
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# role commands
# ---------------------------------------------------------------------------


@role_app.command("list")
def role_list(ctx: typer.Context) -> None:
    """List the roles available under the roles directory."""
    runtime = _get_runtime(ctx)
    roles_dir = runtime.config.roles_dir
    with runtime.logger.operation(
        "role list",
        target={"kind": "role", "scope": "catalog", "path": str(roles_dir)},
    ) as op:
        roles = available_roles(roles_dir)
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Role", style="bold")
        table.add_column("Path")
        if not roles:
            table.add_row("(none)", str(roles_dir))
        for name in roles:
            table.add_row(name, str(roles_dir / name))
        console.print(table)
        op.success("Reported available roles.", changed=0, context={"roles": roles})


@role_app.command("install")
def role_install(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
) -> None:
    """Install an instance of a role and start it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role install",
        args={"role": role, "instance": instance},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            result = runtime.instances.install(role, instance)
        except (RoleError, InstanceError, ComposeError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        ref = result.ref
        for hook in result.hooks:
            op.add_step(hook)
        console.print(
            f"[green]Installed {ref.role}/{ref.instance}[/green] "
            f"(project {ref.project}, {ref.directory})."
        )
        if result.access_info:
            console.print(result.access_info, markup=False, highlight=False)
        op.success(
            f"Installed {ref.role}/{ref.instance}.",
            changed=1,
            context={
                "directory": str(ref.directory),
                "project": ref.project,
                "hooks": result.hooks,
                "directories": [str(path) for path in result.directories],
            },
        )


@role_app.command("uninstall")
def role_uninstall(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
    remove_data: bool | None = typer.Option(
        None,
        "--remove-data/--keep-data",
        help="Delete the instance directory after stopping it (prompted when omitted).",
    ),
) -> None:
    """Stop an instance, remove its volumes and optionally its directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role uninstall",
        args={"role": role, "instance": instance, "remove_data": remove_data},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            ref = runtime.instances.require(role, instance)
        except (RoleError, InstanceError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        if remove_data is None:
            remove_data = typer.confirm(
                f"Remove instance directory {ref.directory}?", default=False
            )

        try:
            result = runtime.instances.uninstall(role, instance, remove_data=remove_data)
        except (RoleError, InstanceError, ComposeError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        suffix = " and removed its data" if result.data_removed else ""
        console.print(f"[green]Uninstalled {ref.role}/{ref.instance}{suffix}.[/green]")
        op.success(
            f"Uninstalled {ref.role}/{ref.instance}.",
            changed=1,
            context={"data_removed": result.data_removed, "hooks": result.hooks},
        )


@role_app.command("status")
def role_status(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
) -> None:
    """Show ``docker compose ps`` for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role status",
        args={"role": role, "instance": instance},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            output = runtime.instances.status(role, instance)
        except (RoleError, InstanceError, ComposeError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        console.print(output or "(no containers)", markup=False, highlight=False)
        op.success("Reported instance status.", changed=0)


@role_app.command("logs")
def role_logs(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
    follow: bool = typer.Option(True, "--follow/--no-follow", help="Stream new log lines."),
    tail: int | None = typer.Option(None, "--tail", min=0, help="Show only the last N lines."),
) -> None:
    """Show the logs of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role logs",
        args={"role": role, "instance": instance, "follow": follow, "tail": tail},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            runtime.instances.logs(role, instance, follow=follow, tail=tail)
        except (RoleError, InstanceError, ComposeError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        op.success("Streamed instance logs.", changed=0)


@role_app.command("update")
def role_update(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
) -> None:
    """Pull newer images and recreate an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role update",
        args={"role": role, "instance": instance},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            ref = runtime.instances.update(role, instance)
        except (RoleError, InstanceError, ComposeError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        console.print(f"[green]Updated {ref.role}/{ref.instance}.[/green]")
        op.success(f"Updated {ref.role}/{ref.instance}.", changed=1)


@role_app.command("config")
def role_config(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    instance: str = INSTANCE_ARGUMENT,
    edit: bool = typer.Option(True, "--edit/--no-edit", help="Open the file in the editor."),
) -> None:
    """Create the instance .env if needed and open it in the editor."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role config",
        args={"role": role, "instance": instance, "edit": edit},
        target={"kind": "instance", "role": role, "instance": instance},
    ) as op:
        try:
            if edit:
                path = runtime.instances.edit_config(role, instance)
            else:
                path = runtime.instances.prepare_config(role, instance)
        except (RoleError, InstanceError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        console.print(f"Configuration file: {path}")
        op.success("Prepared instance configuration.", changed=0, context={"path": str(path)})


@role_app.command("instances")
def role_instances(ctx: typer.Context, role: str = ROLE_ARGUMENT) -> None:
    """List installed instances of a role and their state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role instances",
        args={"role": role},
        target={"kind": "role", "role": role},
    ) as op:
        try:
            listings = runtime.instances.list_instances(role)
        except RoleError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("State")
        table.add_column("Project")
        table.add_column("Directory")
        if not listings:
            table.add_row("(none)", "", "", "")
        for listing in listings:
            table.add_row(listing.name, listing.state, listing.project, str(listing.directory))
        console.print(table)
        op.success(
            "Reported role instances.",
            changed=0,
            context={"instances": {item.name: item.state for item in listings}},
        )


@role_app.command("install-all")
def role_install_all(ctx: typer.Context, role: str = ROLE_ARGUMENT) -> None:
    """Install every instance the role declares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role install-all",
        args={"role": role},
        target={"kind": "role", "role": role},
    ) as op:
        try:
            result = runtime.instances.install_all(role)
        except RoleError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, result, "Installed")


@role_app.command("status-all")
def role_status_all(ctx: typer.Context, role: str = ROLE_ARGUMENT) -> None:
    """Show the status of every instance the role declares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role status-all",
        args={"role": role},
        target={"kind": "role", "role": role},
    ) as op:
        try:
            result = runtime.instances.status_all(role)
        except RoleError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, result, "Checked")


@role_app.command("uninstall-all")
def role_uninstall_all(
    ctx: typer.Context,
    role: str = ROLE_ARGUMENT,
    remove_data: bool = typer.Option(
        False,
        "--remove-data",
        help="Delete each instance directory after stopping it.",
    ),
    assume_yes: bool = YES_OPTION,
) -> None:
    """Uninstall every instance the role declares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "role uninstall-all",
        args={"role": role, "remove_data": remove_data, "yes": assume_yes},
        target={"kind": "role", "role": role},
    ) as op:
        if not assume_yes and not typer.confirm(
            f"Uninstall all instances of {role}?", default=False
        ):
            console.print("Cancelled.")
            op.warning("Uninstall cancelled by user.", changed=0)
            raise typer.Exit(code=ExitCode.FAILURE)
        try:
            result = runtime.instances.uninstall_all(role, remove_data=remove_data)
        except RoleError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, result, "Uninstalled")


# ---------------------------------------------------------------------------
# backup commands
# ---------------------------------------------------------------------------


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    skip_volumes: bool = typer.Option(
        False,
        "--skip-volumes",
        help="Archive configuration only, without Docker volumes.",
    ),
) -> None:
    """Archive configuration and volumes, then prune old archives."""
    runtime = _get_runtime(ctx)
    backups = runtime.backups
    with runtime.logger.operation(
        "backup create",
        args={"skip_volumes": skip_volumes},
        target={"kind": "backup", "path": str(backups.root)},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = backups.create(include_volumes=not skip_volumes)
                cleanup = backups.cleanup()
        except (BackupError, DockerError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        for warning in result.warnings:
            console.print(f"{_NOTIFY_STYLE['warning']} {warning}")
        console.print(
            f"[green]Backup created:[/green] {result.archive} "
            f"({format_size(result.size_bytes)})"
        )
        if cleanup.removed:
            console.print(f"Removed {len(cleanup.removed)} backup(s) past retention.")

        context = {
            "archive": str(result.archive),
            "checksum": result.checksum,
            "size_bytes": result.size_bytes,
            "files": result.files,
            "volumes": result.volumes,
            "pruned": [str(path) for path in cleanup.removed],
        }
        if result.warnings:
            op.warning(
                "Backup created with warnings.",
                warnings=result.warnings,
                changed=1,
                backups=[str(result.archive)],
                context=context,
            )
            return
        op.success(
            "Backup created.",
            changed=1,
            backups=[str(result.archive)],
            context=context,
        )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backup archives, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "path": str(runtime.backups.root)},
    ) as op:
        archives = runtime.backups.list_archives()

        if json_output:
            console.print_json(data={"backups": [item.to_dict() for item in archives]})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Size")
        table.add_column("Modified")
        if not archives:
            table.add_row("(none)", "", "")
        for archive in archives:
            table.add_row(
                archive.name,
                format_size(archive.size_bytes),
                archive.modified.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Backup archive path or name."),
    assume_yes: bool = YES_OPTION,
) -> None:
    """Restore configuration and volumes from a backup archive."""
    runtime = _get_runtime(ctx)
    backups = runtime.backups
    with runtime.logger.operation(
        "backup restore",
        args={"archive": archive, "yes": assume_yes},
        target={"kind": "backup", "archive": archive},
    ) as op:
        try:
            path = backups.resolve_archive(archive)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        console.print(
            "[yellow]This will overwrite the current configuration and volume data.[/yellow]"
        )
        if not assume_yes:
            answer = typer.prompt("Type 'yes' to continue", default="", show_default=False)
            if answer.strip() != "yes":
                console.print("Restore cancelled.")
                op.warning("Restore cancelled by user.", changed=0)
                raise typer.Exit(code=ExitCode.FAILURE)

        compose_file = stack_compose_file(runtime.config.project_root, _project_env(runtime))
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = backups.restore(path, compose_file=compose_file)
        except (BackupError, DockerError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        for warning in result.warnings:
            console.print(f"{_NOTIFY_STYLE['warning']} {warning}")
        if result.checksum_verified is None:
            console.print(f"{_NOTIFY_STYLE['warning']} No checksum file; integrity not verified.")
        console.print(
            f"[green]Restore completed[/green]: {len(result.files)} path(s), "
            f"{len(result.volumes)} volume(s)."
        )
        console.print("Run 'homelabctl setup' or 'docker compose up -d' to start services.")
        op.success(
            "Restore completed.",
            changed=1,
            context={
                "archive": str(path),
                "checksum_verified": result.checksum_verified,
                "files": result.files,
                "volumes": result.volumes,
            },
        )


@backup_app.command("cleanup")
def backup_cleanup(
    ctx: typer.Context,
    retention_days: int | None = RETENTION_DAYS_OPTION,
) -> None:
    """Delete archives older than the retention window."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup cleanup",
        args={"retention_days": retention_days},
        target={"kind": "backup", "path": str(runtime.backups.root)},
    ) as op:
        try:
            result = runtime.backups.cleanup(retention_days=retention_days)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        for path in result.removed:
            console.print(f"Removed {path.name}")
        console.print(
            f"[green]Cleanup complete:[/green] removed {len(result.removed)}, "
            f"kept {result.remaining}."
        )
        op.success(
            "Pruned old backups.",
            changed=len(result.removed),
            context={"removed": [str(path) for path in result.removed]},
        )


# ---------------------------------------------------------------------------
# dns commands
# ---------------------------------------------------------------------------


def _resolve_public_ip(runtime: RuntimeContext, env: dict[str, str]) -> str:
    configured = env.get("PUBLIC_IP", "").strip()
    if configured and configured != "auto":
        return configured
    dns = runtime.config.dns
    return detect_public_ip(dns.ip_services, timeout=dns.ip_timeout)


def _check_records(
    runtime: RuntimeContext,
    domain: str,
    expected: str | None,
    proxied: bool,
) -> list[str]:
    failures: list[str] = []
    for subdomain in _DNS_CHECK_SUBDOMAINS:
        try:
            outcome = validate_dns(
                subdomain,
                domain,
                expected,
                proxied=proxied,
                resolver=runtime.config.dns.resolver,
            )
        except DNSError as exc:
            failures.append(str(exc))
            console.print(f"{_NOTIFY_STYLE['warning']} {exc}")
            continue
        if outcome.ok:
            console.print(f"{_NOTIFY_STYLE['success']} {outcome.message}")
        else:
            failures.append(outcome.message)
            console.print(f"{_NOTIFY_STYLE['warning']} {outcome.message}")
    return failures


@dns_app.command("setup-public")
def dns_setup_public(ctx: typer.Context) -> None:
    """Point the wildcard and core service records at this host."""
    runtime = _get_runtime(ctx)
    env = _project_env(runtime)
    domain = env.get("DOMAIN", "").strip()
    with runtime.logger.operation(
        "dns setup-public",
        target={"kind": "dns", "domain": domain},
    ) as op:
        token = env.get("CF_DNS_API_TOKEN", "").strip()
        if not token or not domain:
            _command_error(op, "CF_DNS_API_TOKEN and DOMAIN must be set in .env.")

        proxied = truthy(env.get("CLOUDFLARE_PROXY"))
        dns = runtime.config.dns
        try:
            public_ip = _resolve_public_ip(runtime, env)
            client = CloudflareClient(token=token, api_base=dns.api_base, timeout=dns.timeout)
            changes = setup_public_dns(
                client,
                domain,
                public_ip,
                proxied=proxied,
                records=dns.records,
            )
        except DNSError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        for change in changes:
            console.print(
                f"{_NOTIFY_STYLE['success']} {change.action} {change.name} -> {change.content}"
            )
        time.sleep(_DNS_SETTLE_SECONDS)
        failures = _check_records(runtime, domain, public_ip, proxied)

        context = {
            "public_ip": public_ip,
            "proxied": proxied,
            "records": [asdict(change) for change in changes],
        }
        if failures:
            op.warning(
                "DNS records configured; validation pending.",
                warnings=failures,
                changed=len(changes),
                context=context,
            )
            return
        op.success("DNS records configured.", changed=len(changes), context=context)


@dns_app.command("validate")
def dns_validate(ctx: typer.Context) -> None:
    """Check that core service names resolve to this host."""
    runtime = _get_runtime(ctx)
    env = _project_env(runtime)
    domain = env.get("DOMAIN", "").strip()
    with runtime.logger.operation(
        "dns validate",
        target={"kind": "dns", "domain": domain},
    ) as op:
        if not domain:
            _command_error(op, "DOMAIN must be set in .env.")
        proxied = truthy(env.get("CLOUDFLARE_PROXY"))
        expected: str | None = None
        if not proxied:
            try:
                expected = _resolve_public_ip(runtime, env)
            except DNSError as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        failures = _check_records(runtime, domain, expected, proxied)
        if failures:
            op.warning("DNS validation found issues.", warnings=failures)
            return
        op.success("DNS validated.", changed=0)


@dns_app.command("get-ip")
def dns_get_ip(ctx: typer.Context) -> None:
    """Print this host's public IPv4 address."""
    runtime = _get_runtime(ctx)
    dns = runtime.config.dns
    with runtime.logger.operation("dns get-ip", target={"kind": "dns"}) as op:
        try:
            address = detect_public_ip(dns.ip_services, timeout=dns.ip_timeout)
        except DNSError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        console.print(address)
        op.success("Detected public IP.", changed=0, context={"ip": address})


# ---------------------------------------------------------------------------
# traefik / config
# ---------------------------------------------------------------------------


@traefik_app.command("dashboard")
def traefik_dashboard(ctx: typer.Context) -> None:
    """Write the dashboard router for ``traefik.<DOMAIN>``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "traefik dashboard",
        target={"kind": "traefik", "scope": "dashboard"},
    ) as op:
        try:
            result = render_dashboard(
                runtime.templates,
                runtime.config.project_root,
                _project_env(runtime),
            )
        except (TraefikConfigError, TemplateRenderError) as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        state = "written" if result.changed else "unchanged"
        console.print(f"[green]Dashboard configuration {state}:[/green] {result.path}")
        if not result.auth_enabled:
            console.print(
                f"{_NOTIFY_STYLE['warning']} TRAEFIK_DASHBOARD_AUTH is not set; "
                "the dashboard has no basic auth."
            )
        op.success(
            f"Dashboard configuration {state}.",
            changed=int(result.changed),
            context={"path": str(result.path), "auth": result.auth_enabled},
        )


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
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
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
