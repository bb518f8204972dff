"""CLI module for the asset migration tool.

Commands:
- run: Discover, then migrate assets into the target location
- resume: Continue an interrupted migration from its checkpoint
- rollback: Reverse a migration from its change log (or snapshot)
- checkpoints list/cleanup: Inspect and prune checkpoint files
- changelog list: List migrations that have change logs
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable
from typing import Annotated, Any, cast

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from asset_migrate.changelog import ChangeLog
from asset_migrate.checkpoint import CheckpointError, CheckpointStore, new_migration_id
from asset_migrate.config import Settings, get_settings
from asset_migrate.database import close_db, get_engine, get_session_factory, init_db
from asset_migrate.inventory import DiscoveryAnalysis
from asset_migrate.lock import LockManager
from asset_migrate.models import ReferenceField
from asset_migrate.orchestrator import (
    MigrationError,
    MigrationInterruptedError,
    MigrationOrchestrator,
    MigrationResult,
)
from asset_migrate.progress import create_progress_reporter
from asset_migrate.recovery import ErrorRecovery, RecoveryError
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.rollback import (
    RollbackEngine,
    RollbackError,
    RollbackMode,
    RollbackPlan,
    RollbackStats,
)
from asset_migrate.storage import StorageError, build_providers

# Create Typer app
app = typer.Typer(
    name="asset-migrate",
    help="Resumable asset migration tool",
    no_args_is_help=True,
)
checkpoints_app = typer.Typer(help="Inspect and prune checkpoints", no_args_is_help=True)
changelog_app = typer.Typer(help="Inspect change logs", no_args_is_help=True)
app.add_typer(checkpoints_app, name="checkpoints")
app.add_typer(changelog_app, name="changelog")

# Rich console for output
console = Console()
error_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(name)s - %(levelname)s - %(message)s",
    )


def _load_settings() -> Settings:
    """Load settings, exiting with a readable message when they are invalid."""
    try:
        return get_settings()
    except ValidationError as e:
        error_console.print(f"[red]Error:[/red] Invalid configuration: {e}")
        raise typer.Exit(1) from None


def _build_recovery(settings: Settings) -> ErrorRecovery:
    return ErrorRecovery(
        max_retries=settings.max_retries,
        base_delay=settings.retry_delay_seconds,
        error_threshold=settings.error_threshold,
        critical_threshold=settings.critical_error_threshold,
    )


async def _open_repository(settings: Settings) -> tuple[SqlAssetRepository, Any]:
    engine = get_engine(settings)
    await init_db(engine)
    factory = get_session_factory(settings)
    fields = [ReferenceField(table, column) for table, column in settings.reference_field_specs]
    return SqlAssetRepository(factory, fields), factory


async def _execute_migration(
    settings: Settings,
    reporter: Any,
    dry_run: bool,
    resume: bool,
    migration_id: str | None,
    confirm: Callable[[str], bool] | None,
) -> MigrationResult:
    """Wire up collaborators and run the orchestrator.

    SIGINT/SIGTERM request a cooperative stop, so an interrupted run leaves a
    resumable checkpoint behind.
    """
    try:
        repository, factory = await _open_repository(settings)
        providers = build_providers(settings)
        lock = LockManager(
            factory,
            migration_id or new_migration_id(),
            lock_name=settings.lock_name,
            ttl_seconds=settings.lock_ttl_seconds,
        )
        orchestrator = MigrationOrchestrator(
            settings=settings,
            repository=repository,
            providers=providers,
            lock=lock,
            checkpoints=CheckpointStore(settings.checkpoint_dir),
            changelog_factory=lambda mid: ChangeLog(
                settings.changelog_dir, mid, settings.changelog_flush_threshold
            ),
            recovery=_build_recovery(settings),
            reporter=reporter,
            confirm=confirm,
            migration_id=migration_id,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.request_cancel)
        try:
            return await orchestrator.run(dry_run=dry_run, resume=resume)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
    finally:
        await close_db()


def _display_analysis(analysis: DiscoveryAnalysis) -> None:
    """Print discovery counts and planned operations."""
    table = Table(title="Discovery", show_header=True, header_style="bold")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    for name, count in analysis.counts().items():
        table.add_row(name.replace("_", " ").capitalize(), str(count))
    console.print(table)

    planned = Table(title="Planned Operations", show_header=True, header_style="bold")
    planned.add_column("Operation", style="cyan")
    planned.add_column("Count", justify="right")
    for name, count in analysis.planned_operations().items():
        planned.add_row(name.replace("_", " ").capitalize(), str(count))
    console.print(planned)


def _run_migration(
    dry_run: bool,
    resume: bool,
    migration_id: str | None,
    yes: bool,
    verbose: bool,
) -> None:
    _configure_logging(verbose)
    settings = _load_settings()

    reporter = create_progress_reporter(
        console=console,
        log_file=settings.storage_dir / "migration.log" if not dry_run else None,
        verbose=verbose,
        simple=not console.is_terminal,  # Live progress for interactive, simple for pipes
    )

    def confirm(prompt: str) -> bool:
        reporter.stop()
        try:
            return typer.confirm(prompt, default=False)
        finally:
            reporter.start()

    try:
        with reporter:
            result = asyncio.run(
                _execute_migration(
                    settings,
                    reporter,
                    dry_run=dry_run,
                    resume=resume,
                    migration_id=migration_id,
                    confirm=None if yes else confirm,
                )
            )
    except MigrationInterruptedError as e:
        reporter.print_final_summary()
        error_console.print(f"[red]Error:[/red] {e}")
        error_console.print(f"  Resume with:   [bold]{e.resume_command}[/bold]")
        error_console.print(f"  Roll back with: [bold]{e.rollback_command}[/bold]")
        raise typer.Exit(1) from None
    except (MigrationError, StorageError, CheckpointError, SQLAlchemyError) as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    reporter.print_final_summary()
    console.print()

    if result.analysis is not None:
        _display_analysis(result.analysis)

    if result.dry_run:
        console.print(
            Panel(
                "[green]Dry run complete![/green]\n\n"
                "No changes were made. Run without --dry-run to execute the migration.",
                title="Done",
                border_style="green",
            )
        )
    elif result.status == "cancelled":
        console.print(
            Panel(
                f"[yellow]Migration {result.migration_id} cancelled before any changes.[/yellow]",
                title="Cancelled",
                border_style="yellow",
            )
        )
    else:
        message = (
            f"[green]Migration {result.migration_id} complete![/green]\n\n"
            f"{result.change_count} changes logged."
        )
        if result.issues:
            message += f"\n[yellow]{len(result.issues)} verification issues reported.[/yellow]"
        console.print(Panel(message, title="Done", border_style="green"))


@app.command()
def run(
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Analyze only, without making changes"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
    migration_id: Annotated[
        str | None,
        typer.Option("--migration-id", "-m", help="Id for this migration (default: timestamp)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show detailed progress"),
    ] = False,
) -> None:
    """Run a migration.

    Discovery always runs first and writes a report. With --dry-run the
    command stops there; otherwise it asks before migrating and again before
    quarantining unused files.
    """
    console.print(Panel("Asset Migration - Run", style="bold blue"))
    _run_migration(dry_run, False, migration_id, yes, verbose)


@app.command()
def resume(
    migration_id: Annotated[
        str | None,
        typer.Argument(help="Migration to resume (default: most recent)"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show detailed progress"),
    ] = False,
) -> None:
    """Resume an interrupted migration from its last checkpoint."""
    console.print(Panel("Asset Migration - Resume", style="bold blue"))
    _run_migration(False, True, migration_id, yes, verbose)


async def _execute_rollback(
    settings: Settings,
    migration_id: str,
    phases: list[str] | None,
    mode: str,
    dry_run: bool,
    snapshot: bool,
    confirm: Callable[[dict[str, Any]], bool] | None,
) -> RollbackStats | RollbackPlan | int | None:
    try:
        repository, factory = await _open_repository(settings)
        engine = RollbackEngine(
            repository,
            build_providers(settings),
            settings.changelog_dir,
            settings.quarantine_volume,
            recovery=_build_recovery(settings),
            snapshot_dir=settings.report_dir,
        )
        rollback_mode = cast(RollbackMode, mode)
        if dry_run:
            return await engine.rollback(migration_id, phases, rollback_mode, dry_run=True)
        if confirm is not None:
            summary = {} if snapshot else engine.phases_summary(migration_id)
            if not confirm(summary):
                return None

        lock = LockManager(
            factory, migration_id, lock_name=settings.lock_name, ttl_seconds=settings.lock_ttl_seconds
        )
        if not await lock.acquire(settings.lock_timeout_seconds, resume_migration_id=migration_id):
            raise MigrationError("Another migration is in progress (lock is held)")
        try:
            if snapshot:
                return await engine.rollback_via_snapshot(migration_id)
            return await engine.rollback(migration_id, phases, rollback_mode)
        finally:
            await lock.release()
    finally:
        await close_db()


def _confirm_rollback(migration_id: str, snapshot: bool) -> Callable[[dict[str, Any]], bool]:
    def confirm(summary: dict[str, Any]) -> bool:
        if snapshot:
            return typer.confirm(
                f"Restore every asset record of {migration_id} from its snapshot?", default=False
            )
        table = Table(title=f"Changes in {migration_id}", show_header=True, header_style="bold")
        table.add_column("Phase", style="cyan")
        table.add_column("Changes", justify="right")
        table.add_column("Types")
        for phase, info in summary.items():
            types = ", ".join(f"{t} ({n})" for t, n in info["types"].items())
            table.add_row(phase, str(info["count"]), types)
        console.print(table)
        return typer.confirm("Roll back these changes?", default=False)

    return confirm


@app.command()
def rollback(
    migration_id: Annotated[str, typer.Argument(help="Migration to roll back")],
    phase: Annotated[
        list[str] | None,
        typer.Option("--phase", "-p", help="Phase to roll back (repeatable)"),
    ] = None,
    mode: Annotated[
        str,
        typer.Option("--mode", help="'from': the phase and everything after; 'only': just the phases"),
    ] = "from",
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be reversed"),
    ] = False,
    snapshot: Annotated[
        bool,
        typer.Option("--snapshot", help="Restore asset records from the preparation snapshot"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show detailed progress"),
    ] = False,
) -> None:
    """Reverse a migration using its change log."""
    _configure_logging(verbose)
    settings = _load_settings()
    console.print(Panel("Asset Migration - Rollback", style="bold blue"))

    try:
        outcome = asyncio.run(
            _execute_rollback(
                settings,
                migration_id,
                phase or None,
                mode,
                dry_run,
                snapshot,
                None if yes else _confirm_rollback(migration_id, snapshot),
            )
        )
    except (RollbackError, MigrationError, RecoveryError, StorageError, SQLAlchemyError) as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if outcome is None:
        console.print("[yellow]Rollback cancelled.[/yellow]")
        return

    if isinstance(outcome, RollbackPlan):
        table = Table(title="Rollback Plan", show_header=True, header_style="bold")
        table.add_column("Change type", style="cyan")
        table.add_column("Count", justify="right")
        for change_type, count in outcome.by_type.items():
            table.add_row(change_type, str(count))
        table.add_section()
        table.add_row("[bold]Total[/bold]", f"[bold]{outcome.total_operations}[/bold]")
        console.print(table)
        console.print(f"Estimated time: {outcome.estimated_time}")
        return

    if isinstance(outcome, int):
        console.print(
            Panel(f"[green]Restored {outcome} asset records from snapshot.[/green]", title="Done")
        )
        return

    style = "green" if outcome.errors == 0 else "yellow"
    console.print(
        Panel(
            f"[{style}]Reversed {outcome.reversed} changes, {outcome.errors} errors, "
            f"{outcome.skipped} skipped.[/{style}]",
            title="Done",
            border_style=style,
        )
    )
    for message in outcome.error_messages:
        error_console.print(f"  [red]-[/red] {message}")
    if outcome.errors:
        raise typer.Exit(1)


@checkpoints_app.command("list")
def checkpoints_list() -> None:
    """List stored checkpoints, newest first."""
    settings = _load_settings()
    summaries = CheckpointStore(settings.checkpoint_dir).list()
    if not summaries:
        console.print("No checkpoints found.")
        return

    table = Table(title="Checkpoints", show_header=True, header_style="bold")
    table.add_column("Migration", style="cyan")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Updated", style="dim")
    for summary in summaries:
        table.add_row(
            summary.migration_id,
            summary.phase,
            summary.status,
            str(summary.processed_count),
            summary.timestamp,
        )
    console.print(table)


@checkpoints_app.command("cleanup")
def checkpoints_cleanup(
    older_than: Annotated[
        float,
        typer.Option("--older-than", help="Remove checkpoint files older than this many hours"),
    ] = 72,
) -> None:
    """Delete old checkpoint files."""
    settings = _load_settings()
    removed = CheckpointStore(settings.checkpoint_dir).cleanup(older_than)
    console.print(f"Removed {removed} checkpoint files older than {older_than:g}h.")


@changelog_app.command("list")
def changelog_list() -> None:
    """List migrations with change logs, most recent first."""
    settings = _load_settings()
    summaries = ChangeLog.list_migrations(settings.changelog_dir)
    if not summaries:
        console.print("No change logs found.")
        return

    table = Table(title="Change Logs", show_header=True, header_style="bold")
    table.add_column("Migration", style="cyan")
    table.add_column("Changes", justify="right")
    table.add_column("Last change", style="dim")
    for summary in summaries:
        table.add_row(summary.migration_id, str(summary.change_count), summary.timestamp or "-")
    console.print(table)


if __name__ == "__main__":
    app()
