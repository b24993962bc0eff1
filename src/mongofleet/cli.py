"""Typer-powered command line interface for ``mongofleet``.

Each operation command builds an :class:`OperationRequest`, hands it to the
:class:`Orchestrator` and renders the :class:`OperationResult`. Exit codes
follow :class:`ExitCode`: precondition failures (missing confirmation,
invalid artifact) exit ``2``, environment/config problems ``3``, any failed
node ``4`` and cancellation ``130``.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupStoreError
from .config import AppConfig, ConfigError, load_config
from .errors import (
    ArtifactInvalidError,
    CancelledError,
    ConfirmationRequiredError,
    FleetError,
    NotFoundError,
    PreconditionFailedError,
)
from .exit_codes import ExitCode
from .inventory import InventoryError
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .models import (
    DeployOptions,
    NodeStatus,
    OperationKind,
    OperationRequest,
    OperationResult,
    RestoreOptions,
)
from .orchestrator import Orchestrator
from .providers import SecretsError
from .workers import CancelToken

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate config file (defaults to /etc/mongofleet/config.yml).",
)
ENVIRONMENT_OPTION = typer.Option(
    ...,
    "--environment",
    "-e",
    help="Environment name (directory under the inventory root).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the operation result as JSON.",
)

_STATUS_STYLES = {
    NodeStatus.OK: "green",
    NodeStatus.CHANGED: "yellow",
    NodeStatus.SKIPPED: "cyan",
    NodeStatus.FAILED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        MongoDB fleet operations: deploy, backup, restore and status.

        Every command targets one environment from the inventory directory and
        reports a per-node outcome.
        """
    ).strip(),
)
backups_app = typer.Typer(help="Inspect stored backup artifacts.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(backups_app, name="backups")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    orchestrator: Orchestrator


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        orchestrator=Orchestrator.from_config(config),
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
        help="Show the mongofleet version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log remote commands, retries and barrier waits to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"mongofleet {__version__}")
        raise typer.Exit(code=0)

    configure_console_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: ExitCode,
    kind: str | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, rc=int(rc), context={"error": kind} if kind else None)
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, (ConfirmationRequiredError, ArtifactInvalidError, PreconditionFailedError)):
        return ExitCode.VALIDATION
    if isinstance(exc, CancelledError):
        return ExitCode.CANCELLED
    if isinstance(exc, (NotFoundError, InventoryError, ConfigError, LockTimeoutError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


@contextmanager
def _interrupts_cancel(token: CancelToken) -> Iterator[None]:
    """Turn SIGINT into a cancellation request for the duration of the block."""

    def _handler(_signum: int, _frame: object) -> None:
        console.print("[yellow]Cancelling: no new node work will be dispatched.[/yellow]")
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread (e.g. embedded runners); leave SIGINT alone.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _render_result(result: OperationResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Node", style="bold")
    table.add_column("Status")
    table.add_column("Message")
    for node in result.nodes:
        style = _STATUS_STYLES[node.status]
        table.add_row(node.node, f"[{style}]{node.status.value}[/{style}]", node.message)
    console.print(table)
    if result.artifact is not None:
        console.print(
            f"Artifact: {result.artifact.name} "
            f"(sha256 {result.artifact.checksum}, {result.artifact.size_bytes} bytes)"
        )
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    style = _STATUS_STYLES[result.status]
    console.print(
        f"Overall: [{style}]{result.status.value}[/{style}] "
        f"({result.environment} {result.kind.value})"
    )


def _run_operation(
    runtime: RuntimeContext,
    op: OperationScope,
    request: OperationRequest,
    *,
    json_output: bool,
) -> None:
    token = CancelToken()
    try:
        with _interrupts_cancel(token):
            result = runtime.orchestrator.run(request, cancel=token)
    except (FleetError, InventoryError, LockTimeoutError, BackupStoreError, SecretsError) as exc:
        kind = getattr(exc, "kind", None)
        _command_error(op, str(exc), rc=_exit_code_for(exc), kind=kind)

    for node in result.nodes:
        op.add_step(f"node:{node.node}", status=node.status.value, detail=node.message)
    payload = result.to_dict()
    if json_output:
        console.print_json(data=payload)
    else:
        _render_result(result)

    log_context: Mapping[str, object] = {"result": payload}
    changed = result.totals()[NodeStatus.CHANGED.value]
    backups = [result.artifact.name] if result.artifact is not None else None
    if token.cancelled:
        op.error("Operation cancelled.", rc=int(ExitCode.CANCELLED), context=log_context)
        raise typer.Exit(code=int(ExitCode.CANCELLED))
    if result.failed:
        failed = [node.node for node in result.nodes if node.is_failure]
        op.error(
            f"{request.kind.value} failed on {len(failed)} node(s).",
            errors=[f"{name} failed" for name in failed],
            rc=int(ExitCode.PROVIDER),
            context=log_context,
        )
        raise typer.Exit(code=int(ExitCode.PROVIDER))
    if result.warnings:
        op.warning(
            f"{request.kind.value} completed with warnings.",
            warnings=result.warnings,
            changed=changed,
            backups=backups,
            context=log_context,
        )
        return
    op.success(
        f"{request.kind.value} completed ({result.status.value}).",
        changed=changed,
        backups=backups,
        context=log_context,
    )


# ---------------------------------------------------------------------------
# Operation commands
# ---------------------------------------------------------------------------


@app.command()
def deploy(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    check: bool = typer.Option(
        False,
        "--check",
        help="Dry run: report planned actions without applying them.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge the environment to its declared configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "deploy",
        args={"check": check, "json": json_output},
        target={"kind": "environment", "name": environment},
    ) as op:
        request = OperationRequest(
            environment=environment,
            kind=OperationKind.DEPLOY,
            options=DeployOptions(dry_run=check),
        )
        _run_operation(runtime, op, request, json_output=json_output)


@app.command()
def backup(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Dump, compress and store a backup artifact, then apply retention."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={"json": json_output},
        target={"kind": "environment", "name": environment},
    ) as op:
        request = OperationRequest(environment=environment, kind=OperationKind.BACKUP)
        _run_operation(runtime, op, request, json_output=json_output)


@app.command()
def restore(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    file: str = typer.Option(
        ...,
        "--file",
        "-f",
        help="Artifact name in the environment's backup directory, or a path to an archive.",
    ),
    database: str | None = typer.Option(
        None,
        "--database",
        "-d",
        help="Restore only this database.",
    ),
    drop_existing: bool = typer.Option(
        False,
        "--drop-existing",
        help="Drop the target database(s) before restoring (requires --confirm).",
    ),
    confirm: str | None = typer.Option(
        None,
        "--confirm",
        help="Confirmation token for destructive restores: the environment name.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a validated backup artifact onto the environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={
            "file": file,
            "database": database,
            "drop_existing": drop_existing,
            "confirm_token": confirm,
            "json": json_output,
        },
        target={"kind": "environment", "name": environment},
    ) as op:
        if not json_output:
            console.print("[bold yellow]Restore summary[/bold yellow]")
            console.print(f"  Environment:   {environment}")
            console.print(f"  Artifact:      {file}")
            console.print(f"  Database:      {database or 'all databases'}")
            console.print(f"  Drop existing: {'yes' if drop_existing else 'no'}")
            console.print("  [yellow]There is no automatic rollback if the restore fails.[/yellow]")
        request = OperationRequest(
            environment=environment,
            kind=OperationKind.RESTORE,
            options=RestoreOptions(
                artifact=file,
                database_filter=database,
                drop_existing=drop_existing,
                confirmation_token=confirm,
            ),
        )
        _run_operation(runtime, op, request, json_output=json_output)


def _maintenance(ctx: typer.Context, command: str, environment: str, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"json": json_output},
        target={"kind": "environment", "name": environment},
    ) as op:
        request = OperationRequest(environment=environment, kind=OperationKind.MAINTENANCE)
        _run_operation(runtime, op, request, json_output=json_output)


@app.command()
def maintenance(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run read-only health checks on every node."""
    _maintenance(ctx, "maintenance", environment, json_output)


@app.command()
def status(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Alias of ``maintenance``."""
    _maintenance(ctx, "status", environment, json_output)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    environment: str = ENVIRONMENT_OPTION,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit artifacts as JSON instead of a table.",
    ),
) -> None:
    """List stored artifacts for an environment, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups list",
        args={"json": json_output},
        target={"kind": "environment", "name": environment},
    ) as op:
        try:
            artifacts = runtime.orchestrator.store.list_artifacts(environment)
        except (BackupStoreError, OSError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data=[artifact.to_dict() for artifact in artifacts])
            op.success("Listed backups as JSON.", changed=0)
            return

        now = datetime.now(tz=UTC)
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Artifact", style="bold")
        table.add_column("Age (days)")
        table.add_column("Size (bytes)")
        table.add_column("Nodes")
        if not artifacts:
            table.add_row("(none)", "", "", "")
        for artifact in artifacts:
            table.add_row(
                artifact.name,
                f"{artifact.age_days(now):.1f}",
                str(artifact.size_bytes),
                ", ".join(artifact.nodes),
            )
        console.print(table)
        op.success("Listed backups.", changed=0)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
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
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
