"""Progress reporting and logging for asset migration.

Provides rich console output with phase tracking, batch progress,
warnings/errors display, and optional file logging.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from types import TracebackType


class Phase(Enum):
    """Migration phases in execution order.

    Values are the phase tags written to checkpoints and change log entries.
    """

    PREPARATION = "preparation"
    OPTIMISED_ROOT = "optimised_root"
    DISCOVERY = "discovery"
    LINK_INLINE = "link_inline"
    RESOLVE_DUPLICATES = "resolve_duplicates"
    FIX_LINKS = "fix_links"
    CONSOLIDATE = "consolidate"
    QUARANTINE = "quarantine"
    CLEANUP = "cleanup"
    COMPLETE = "complete"

    @property
    def label(self) -> str:
        """Human-readable phase name."""
        return PHASE_LABELS[self]


PHASE_LABELS: dict[Phase, str] = {
    Phase.PREPARATION: "Preparation",
    Phase.OPTIMISED_ROOT: "Optimised Root",
    Phase.DISCOVERY: "Discovery",
    Phase.LINK_INLINE: "Inline Linking",
    Phase.RESOLVE_DUPLICATES: "Resolve Duplicates",
    Phase.FIX_LINKS: "Fix Broken Links",
    Phase.CONSOLIDATE: "Consolidate",
    Phase.QUARANTINE: "Quarantine",
    Phase.CLEANUP: "Cleanup",
    Phase.COMPLETE: "Complete",
}

PHASE_ORDER: list[Phase] = list(Phase)

# Warnings or errors printed in the final summary before truncating
MAX_LISTED_MESSAGES = 20


@dataclass
class PhaseResult:
    """Counts and timing for one finished phase."""

    phase: Phase
    total: int
    succeeded: int
    failed: int
    skipped: int
    duration_seconds: float

    @property
    def success_rate(self) -> float:
        """Succeeded items as a percentage of the phase total."""
        if not self.total:
            return 100.0
        return 100.0 * self.succeeded / self.total


@dataclass
class MigrationSummary:
    """Phase results and messages collected over one run."""

    phases: list[PhaseResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None

    @property
    def total_duration_seconds(self) -> float:
        return ((self.end_time or datetime.now()) - self.start_time).total_seconds()

    @property
    def total_items(self) -> int:
        return sum(p.total for p in self.phases)

    @property
    def total_succeeded(self) -> int:
        return sum(p.succeeded for p in self.phases)

    @property
    def total_failed(self) -> int:
        return sum(p.failed for p in self.phases)

    @property
    def total_skipped(self) -> int:
        return sum(p.skipped for p in self.phases)


def format_duration(seconds: float) -> str:
    """Format seconds as "4.2s", "3m 10s" or "2h 5m"."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _file_logger(name: str, log_path: Path) -> logging.Logger:
    """Create a logger that writes to a migration log file."""
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_logger = logging.getLogger(name)
    file_logger.setLevel(logging.DEBUG)

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    file_logger.addHandler(handler)
    return file_logger


class _ReporterBase:
    """Phase bookkeeping shared by both reporters."""

    def __init__(
        self,
        console: Console | None = None,
        log_file: Path | str | None = None,
        verbose: bool = False,
    ) -> None:
        self.console = console or Console()
        self.verbose = verbose
        self._logger: logging.Logger | None = None

        self._summary = MigrationSummary()
        self._current_phase: Phase | None = None
        self._current_total: int = 0
        self._current_succeeded: int = 0
        self._current_failed: int = 0
        self._current_skipped: int = 0
        self._phase_start_time: float = 0.0
        self._current_item: str = ""

        if log_file:
            self._logger = _file_logger(f"asset_migrate.run.{id(self)}", Path(log_file))

    def _log(self, message: str, level: str = "INFO") -> None:
        """Write to log file if configured."""
        if self._logger:
            log_method = getattr(self._logger, level.lower(), self._logger.info)
            log_method(message)

    def _refresh(self) -> None:
        pass

    def start_phase(self, phase: Phase, total: int) -> None:
        """Start a new migration phase.

        Args:
            phase: The phase to start.
            total: Total number of items to process in this phase.
        """
        self._current_phase = phase
        self._current_total = total
        self._current_succeeded = 0
        self._current_failed = 0
        self._current_skipped = 0
        self._phase_start_time = time.monotonic()
        self._current_item = ""

        self._log(f"Starting phase: {phase.label} ({total} items)")
        self._refresh()

    def update_progress(
        self,
        succeeded: int = 0,
        failed: int = 0,
        skipped: int = 0,
        current_item: str = "",
    ) -> None:
        """Update progress within the current phase.

        Args:
            succeeded: Number of newly succeeded items.
            failed: Number of newly failed items.
            skipped: Number of newly skipped items.
            current_item: Description of current item being processed.
        """
        self._current_succeeded += succeeded
        self._current_failed += failed
        self._current_skipped += skipped

        if current_item:
            self._current_item = current_item

        if self.verbose and current_item:
            self._log(f"Processing: {current_item}")

        self._refresh()

    def complete_phase(self) -> PhaseResult:
        """Complete the current phase and return its result.

        Returns:
            PhaseResult with statistics for the completed phase.
        """
        if not self._current_phase:
            raise RuntimeError("No phase in progress")

        duration = time.monotonic() - self._phase_start_time

        result = PhaseResult(
            phase=self._current_phase,
            total=self._current_total,
            succeeded=self._current_succeeded,
            failed=self._current_failed,
            skipped=self._current_skipped,
            duration_seconds=duration,
        )

        self._summary.phases.append(result)
        self._current_item = ""

        self._log(
            f"Completed phase: {self._current_phase.label} - "
            f"{result.succeeded}/{result.total} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped "
            f"({format_duration(duration)})"
        )

        self._current_phase = None
        return result

    def warning(self, message: str) -> None:
        """Record a warning."""
        self._summary.warnings.append(message)
        self._log(f"Warning: {message}", level="WARNING")
        self._refresh()

    def error(self, message: str) -> None:
        """Record an error."""
        self._summary.errors.append(message)
        self._log(f"Error: {message}", level="ERROR")
        self._refresh()

    def info(self, message: str) -> None:
        """Record an informational message."""
        self._log(message, level="INFO")
        self._refresh()

    def get_summary(self) -> MigrationSummary:
        """Get the migration summary."""
        return self._summary

    def print_final_summary(self) -> None:
        """Print a final summary after migration completes."""
        summary = self._summary

        table = Table(title="Migration Summary", show_header=True, header_style="bold")
        table.add_column("Phase", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Succeeded", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Skipped", justify="right", style="yellow")
        table.add_column("Rate", justify="right")
        table.add_column("Duration", justify="right", style="dim")

        for result in summary.phases:
            table.add_row(
                result.phase.label,
                str(result.total),
                str(result.succeeded),
                str(result.failed),
                str(result.skipped),
                f"{result.success_rate:.0f}%",
                format_duration(result.duration_seconds),
            )

        table.add_section()
        table.add_row(
            "[bold]Total[/bold]",
            str(summary.total_items),
            str(summary.total_succeeded),
            str(summary.total_failed),
            str(summary.total_skipped),
            "",
            format_duration(summary.total_duration_seconds),
            style="bold",
        )

        self.console.print()
        self.console.print(table)

        for title, messages, style in (
            ("Warnings", summary.warnings, "yellow"),
            ("Errors", summary.errors, "red"),
        ):
            if not messages:
                continue
            self.console.print()
            self.console.print(f"[{style} bold]{title} ({len(messages)}):[/{style} bold]")
            for message in messages[:MAX_LISTED_MESSAGES]:
                self.console.print(f"  [{style}]-[/{style}] {message}")
            if len(messages) > MAX_LISTED_MESSAGES:
                self.console.print(
                    f"  [dim]... {len(messages) - MAX_LISTED_MESSAGES} more in the migration log[/dim]"
                )


class ProgressReporter(_ReporterBase):
    """Rich-based progress reporter for migration operations.

    Displays phase progress, warnings/errors, and elapsed time in a
    live-updating panel.
    """

    def __init__(
        self,
        console: Console | None = None,
        log_file: Path | str | None = None,
        verbose: bool = False,
    ) -> None:
        """Initialize the progress reporter.

        Args:
            console: Rich console instance (creates new if None).
            log_file: Optional path to log file.
            verbose: If True, show detailed operation logs.
        """
        super().__init__(console=console, log_file=log_file, verbose=verbose)
        self._live: Live | None = None

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        """Build the live display panel."""
        grid = Table.grid(padding=(0, 1))
        grid.add_column(justify="right", style="cyan", no_wrap=True)
        grid.add_column(justify="left")
        grid.add_column(justify="right", no_wrap=True)

        done = {result.phase: result for result in self._summary.phases}
        for number, phase in enumerate(PHASE_ORDER, start=1):
            if phase in done:
                result = done[phase]
                mark = "[green]OK[/green]"
                if result.failed:
                    mark = f"[yellow]{result.failed} failed[/yellow]"
                grid.add_row(f"{number}.", Text(phase.label, style="dim"), Text.from_markup(mark))
            elif phase is self._current_phase:
                processed = self._current_succeeded + self._current_failed + self._current_skipped
                bar = ProgressBar(total=self._current_total or None, completed=processed, width=30)
                counts = f"{processed}/{self._current_total}"
                if self._current_failed:
                    counts += f" [red]({self._current_failed} failed)[/red]"
                grid.add_row(
                    f"[bold]{number}.[/bold]",
                    Group(Text(phase.label, style="bold"), bar),
                    Text.from_markup(counts),
                )

        if self._current_item:
            grid.add_row("", Text(f"item {self._current_item}", style="italic dim"), "")

        notices = [(m, "yellow") for m in self._summary.warnings[-2:]]
        notices += [(m, "red") for m in self._summary.errors[-3:]]
        hidden = len(self._summary.warnings) + len(self._summary.errors) - len(notices)
        for message, style in notices:
            grid.add_row("!", Text(message, style=style), "")
        if hidden > 0:
            grid.add_row("", Text(f"{hidden} earlier messages in the log", style="dim"), "")

        elapsed = format_duration(self._summary.total_duration_seconds)
        return Panel(
            grid,
            title="[bold]Asset Migration[/bold]",
            subtitle=f"[dim]{elapsed}[/dim]",
            border_style="blue",
        )

    def start(self) -> None:
        """Start the progress display."""
        self._summary = MigrationSummary()
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
        )
        self._live.start()
        self._log("Migration started")

    def stop(self) -> None:
        """Stop the progress display."""
        if self._live:
            self._live.update(self._build_display())
            self._live.stop()
            self._live = None

        self._summary.end_time = datetime.now()
        self._log("Migration finished")

    def set_current_item(self, item: str) -> None:
        """Set the current item being processed."""
        self._current_item = item
        self._refresh()

    def complete_phase(self) -> PhaseResult:
        result = super().complete_phase()
        self._refresh()
        return result

    def __enter__(self) -> ProgressReporter:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.stop()


class SimpleProgressReporter(_ReporterBase):
    """Simple progress reporter without live updates.

    Useful for non-interactive environments or testing.
    """

    def start(self) -> None:
        """Start the migration."""
        self._summary = MigrationSummary()
        self.console.print("[bold blue]Asset Migration[/bold blue]")
        self.console.print()

    def stop(self) -> None:
        """Stop the migration."""
        self._summary.end_time = datetime.now()

    def start_phase(self, phase: Phase, total: int) -> None:
        super().start_phase(phase, total)
        phase_num = PHASE_ORDER.index(phase) + 1
        self.console.print(
            f"[cyan][{phase_num}/{len(PHASE_ORDER)}][/cyan] {phase.label} ({total} items)..."
        )

    def update_progress(
        self,
        succeeded: int = 0,
        failed: int = 0,
        skipped: int = 0,
        current_item: str = "",
    ) -> None:
        super().update_progress(succeeded, failed, skipped, current_item)
        if self.verbose and current_item:
            self.console.print(f"  [dim]Processing: {current_item}[/dim]")

    def set_current_item(self, item: str) -> None:
        """Set current item."""
        if self.verbose:
            self.console.print(f"  [dim]Processing: {item}[/dim]")

    def complete_phase(self) -> PhaseResult:
        result = super().complete_phase()
        status = (
            "[green]OK[/green]" if result.failed == 0 else f"[yellow]{result.failed} failed[/yellow]"
        )
        self.console.print(
            f"  Completed: {result.succeeded}/{result.total} {status} "
            f"({format_duration(result.duration_seconds)})"
        )
        return result

    def warning(self, message: str) -> None:
        super().warning(message)
        self.console.print(f"  [yellow]Warning: {message}[/yellow]")

    def error(self, message: str) -> None:
        super().error(message)
        self.console.print(f"  [red]Error: {message}[/red]")

    def info(self, message: str) -> None:
        super().info(message)
        self.console.print(f"  [dim]{message}[/dim]")

    def __enter__(self) -> SimpleProgressReporter:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.stop()


def create_progress_reporter(
    console: Console | None = None,
    log_file: Path | str | None = None,
    verbose: bool = False,
    simple: bool = False,
) -> ProgressReporter | SimpleProgressReporter:
    """Factory function to create a progress reporter.

    Args:
        console: Rich console instance.
        log_file: Optional path to log file.
        verbose: If True, show detailed operation logs.
        simple: If True, use simple reporter without live updates.

    Returns:
        ProgressReporter or SimpleProgressReporter instance.
    """
    if simple:
        return SimpleProgressReporter(console=console, log_file=log_file, verbose=verbose)
    return ProgressReporter(console=console, log_file=log_file, verbose=verbose)
