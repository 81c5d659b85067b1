"""Typer-powered command line interface for ``webappctl``.

``webappctl`` with no subcommand asks whether to install or uninstall, the way
an operator would expect from a one-shot setup script. Every command runs
inside a structured :class:`~webappctl.logging.OperationScope` so the audit
log records what happened even when the command fails.
"""
from __future__ import annotations

import os
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
from .errors import (
    ApplicationNotFoundError,
    ConfigError,
    ExternalCommandError,
    LockTimeoutError,
    PreflightError,
    ProvisioningInterrupted,
    RootRequiredError,
    ValidationError,
    WebappctlError,
)
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .processes import collect_nice_values
from .prompts import InputCollector, collect_from_answers, load_answers
from .providers import NginxProvider, SystemdProvider
from .render import render_reverse_proxy_site, render_service_unit
from .runner import CommandRunner
from .teardown import Teardown, TeardownReport
from .templates import TemplateEngine
from .validators import validate_code_name
from .workflow import ProvisioningWorkflow

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to webappctl's YAML config file.",
)

ANSWERS_OPTION = typer.Option(
    None,
    "--answers",
    exists=True,
    dir_okay=False,
    readable=True,
    help="YAML file with preset answers; prompts are skipped for every key it sets.",
)

RUNTIME_OPTION = typer.Option(
    None,
    "--runtime",
    help="Application runtime: node or fastapi.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision a Node.js or FastAPI application behind nginx on this host.

        Creates a dedicated system user, clones the repository, installs its
        dependencies and wires up a hardened systemd unit plus an nginx
        reverse-proxy site. Any failure rolls back what was already created.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    runner: CommandRunner
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    nginx_provider: NginxProvider


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
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runner = CommandRunner(timeout=config.command_timeout)
    runtime = RuntimeContext(
        config=config,
        runner=runner,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        systemd_provider=SystemdProvider(
            runner=runner,
            unit_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
        ),
        nginx_provider=NginxProvider(
            runner=runner,
            sites_available=config.nginx.sites_available,
            sites_enabled=config.nginx.sites_enabled,
            nginx_bin=config.nginx.nginx_bin,
            systemctl_bin=config.systemd.systemctl_bin,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _effective_uid() -> int:
    return os.geteuid()


def _info(message: str) -> None:
    console.print(f"[yellow]{escape('[INFO]')} {escape(message)}[/yellow]")


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _check_root() -> None:
    if _effective_uid() != 0:
        raise RootRequiredError(
            "This command modifies system users, services and nginx; run it as root."
        )


def _require_root(op: OperationScope) -> None:
    try:
        _check_root()
    except RootRequiredError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _print_teardown(report: TeardownReport | None) -> None:
    if report is None:
        return
    if report.undone:
        console.print(f"[yellow]Rolled back {len(report.undone)} provisioning step(s).[/yellow]")
    for message in report.messages():
        console.print(f"[yellow]Cleanup incomplete:[/yellow] {escape(message)}")


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the webappctl version and exit.",
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
        console.print(f"webappctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is not None:
        return

    while True:
        choice = typer.prompt("Choose mode (Install/Uninstall)").strip().lower()
        if choice in {"install", "uninstall"}:
            break
        console.print("Invalid input. Please enter 'Install' or 'Uninstall'.")

    if choice == "install":
        _run_install(ctx, runtime_name=None, mode=None, answers=None, skip_updates=False)
    else:
        code_name = typer.prompt("Enter the app code name to uninstall")
        _run_uninstall(ctx, code_name, yes=False, force=False)
    raise typer.Exit(code=0)


@app.command()
def install(
    ctx: typer.Context,
    runtime_name: str | None = RUNTIME_OPTION,
    mode: str | None = typer.Option(
        None,
        "--mode",
        help="Installation mode: easy accepts every default, advanced asks about each one.",
    ),
    answers: Path | None = ANSWERS_OPTION,
    skip_preflight_updates: bool = typer.Option(
        False,
        "--skip-preflight-updates",
        help="Do not refresh or upgrade system packages before provisioning.",
    ),
) -> None:
    """Provision a new application on this host."""
    _run_install(
        ctx,
        runtime_name=runtime_name,
        mode=mode,
        answers=answers,
        skip_updates=skip_preflight_updates,
    )


def _run_install(
    ctx: typer.Context,
    *,
    runtime_name: str | None,
    mode: str | None,
    answers: Path | None,
    skip_updates: bool,
) -> None:
    runtime = _get_runtime(ctx)
    args = {
        "runtime": runtime_name,
        "mode": mode,
        "answers": str(answers) if answers else None,
        "skip_preflight_updates": skip_updates,
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "application"},
    ) as op:
        _require_root(op)

        presets: dict[str, object] = {}
        try:
            if answers is not None:
                presets.update(load_answers(answers))
            if runtime_name is not None:
                presets["runtime"] = runtime_name
            if mode is not None:
                presets["mode"] = mode
            collector = InputCollector(
                presets=presets,
                defaults=runtime.config.defaults,
                www_root=runtime.config.www_root,
                nvm_dir=runtime.config.node.nvm_dir,
            )
            config = collector.collect()
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        op.target.update({"code_name": config.code_name, "domain": config.domain})
        op.add_step("collect", status="success", detail=config.runtime.value)
        _info(f"Installing {config.display_name} ({config.code_name}) for {config.domain}...")

        workflow = ProvisioningWorkflow(
            app_config=runtime.config,
            runner=runtime.runner,
            locks=runtime.locks,
            skip_updates=skip_updates,
            engine=runtime.templates,
        )
        try:
            result = workflow.install(config, op=op)
        except ProvisioningInterrupted as exc:
            _print_teardown(workflow.last_report)
            _command_error(op, str(exc), rc=int(ExitCode.INTERRUPTED))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except PreflightError as exc:
            _print_teardown(workflow.last_report)
            _command_error(op, f"Preflight failed: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except ValidationError as exc:
            _print_teardown(workflow.last_report)
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        except ExternalCommandError as exc:
            _print_teardown(workflow.last_report)
            _command_error(
                op,
                f"Installation failed: {exc}",
                rc=int(ExitCode.PROVIDER),
                errors=[str(exc)],
            )
        except WebappctlError as exc:
            _print_teardown(workflow.last_report)
            _command_error(op, f"Installation failed: {exc}", rc=int(ExitCode.PROVIDER))

        console.print(
            f"[green]Installation complete. Your {config.runtime.value} app "
            f"'{escape(config.display_name)}' is now running on {config.domain}[/green]"
        )
        _info("Nice values of other installed apps by the user:")
        try:
            _print_nice_table(runtime)
        except ExternalCommandError as exc:
            op.add_step("nice-report", status="warning", detail=str(exc))
        op.success(
            "Application installed.",
            changed=len(result.resources),
            context={
                "code_name": config.code_name,
                "service_state": result.service_state.name,
                "site_state": result.site_state.name,
                "config": config.describe(),
            },
        )


@app.command()
def uninstall(
    ctx: typer.Context,
    code_name: str = typer.Argument(..., help="Code name of the application to remove."),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Do not ask for confirmation.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Run the full cleanup sweep even when no trace of the application is found.",
    ),
) -> None:
    """Remove an application and everything webappctl created for it."""
    _run_uninstall(ctx, code_name, yes=yes, force=force)


def _run_uninstall(ctx: typer.Context, code_name: str, *, yes: bool, force: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall",
        args={"yes": yes, "force": force},
        target={"kind": "application", "code_name": code_name},
    ) as op:
        _require_root(op)
        try:
            code_name = validate_code_name(code_name)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        if not yes and not typer.confirm(
            f"Are you sure you want to uninstall {code_name}?", default=False
        ):
            console.print("Uninstallation cancelled.")
            op.success("Uninstall cancelled by operator.", changed=0)
            return

        teardown = _build_teardown(runtime)
        console.print(f"[red]Starting cleanup for {code_name}...[/red]")
        try:
            with runtime.locks.instance_lock(code_name) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                report = teardown.uninstall(code_name, force=force)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except ApplicationNotFoundError as exc:
            _command_error(
                op,
                f"{exc} Use --force to run the cleanup sweep anyway.",
                rc=int(ExitCode.VALIDATION),
            )

        for step in report.steps:
            op.add_step(step)
        if not report.clean:
            _print_teardown(report)
            op.warning(
                f"Uninstall of '{code_name}' left items behind.",
                warnings=report.messages(),
                changed=len(report.steps),
            )
            raise typer.Exit(code=int(ExitCode.PROVIDER))

        console.print(f"[green]Uninstallation complete for '{code_name}'[/green]")
        op.success(f"Uninstalled '{code_name}'.", changed=len(report.steps))


def _build_teardown(runtime: RuntimeContext) -> Teardown:
    config = runtime.config
    return Teardown(
        runner=runtime.runner,
        systemd=runtime.systemd_provider,
        nginx=runtime.nginx_provider,
        www_root=config.www_root,
        environment_dir=config.environment_dir,
        app_log_dir=config.app_log_dir,
        journal_root=config.journal_dir,
    )


@app.command()
def render(
    ctx: typer.Context,
    answers: Path = typer.Option(
        ...,
        "--answers",
        exists=True,
        dir_okay=False,
        readable=True,
        help="YAML file with the application's answers.",
    ),
    runtime_name: str | None = RUNTIME_OPTION,
) -> None:
    """Print the systemd unit and nginx site for an answers file without touching the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"answers": str(answers), "runtime": runtime_name},
        target={"kind": "application"},
    ) as op:
        try:
            presets: dict[str, object] = dict(load_answers(answers))
            if runtime_name is not None:
                presets["runtime"] = runtime_name
            config = collect_from_answers(
                presets,
                defaults=runtime.config.defaults,
                www_root=runtime.config.www_root,
                nvm_dir=runtime.config.node.nvm_dir,
            )
            service_text = render_service_unit(config, engine=runtime.templates)
            site_text = render_reverse_proxy_site(config, engine=runtime.templates)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        unit_path = runtime.config.systemd.unit_dir / config.unit_name
        site_path = runtime.config.nginx.sites_available / config.site_name
        _print_rendered(unit_path, service_text)
        _print_rendered(site_path, site_text)
        op.success(
            "Rendered unit and site.",
            changed=0,
            context={"code_name": config.code_name, "runtime": config.runtime.value},
        )


def _print_rendered(path: Path, text: str) -> None:
    console.rule(escape(str(path)))
    console.print(text, markup=False, highlight=False, soft_wrap=True, end="")


@app.command("nice-report")
def nice_report(ctx: typer.Context) -> None:
    """List the nice values of processes owned by non-root users."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("nice-report", target={"kind": "processes"}) as op:
        try:
            count = _print_nice_table(runtime)
        except ExternalCommandError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))
        op.success("Reported process nice values.", changed=0, context={"rows": count})


def _print_nice_table(runtime: RuntimeContext) -> int:
    entries = collect_nice_values(runtime.runner)
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Nice", justify="right")
    table.add_column("Command", style="bold")
    table.add_column("User")
    if not entries:
        table.add_row("", "(none)", "")
    for entry in entries:
        table.add_row(str(entry.nice), entry.command, entry.user)
    console.print(table)
    return len(entries)


__all__ = ["app"]
