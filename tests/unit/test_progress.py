"""Unit tests for progress reporting."""

import io
from pathlib import Path

import pytest
from rich.console import Console

from asset_migrate.progress import (
    PHASE_ORDER,
    Phase,
    PhaseResult,
    ProgressReporter,
    SimpleProgressReporter,
    create_progress_reporter,
    format_duration,
)


def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)


class TestFormatting:
    """Tests for phase metadata and duration formatting."""

    def test_phase_order(self) -> None:
        """Phases run in declaration order and carry readable labels."""
        assert PHASE_ORDER[0] is Phase.PREPARATION
        assert PHASE_ORDER[-1] is Phase.COMPLETE
        assert Phase.FIX_LINKS.label == "Fix Broken Links"

    def test_format_duration(self) -> None:
        """Durations switch units at a minute and an hour."""
        assert format_duration(5.0) == "5.0s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(7260) == "2h 1m"

    def test_success_rate(self) -> None:
        """Empty phases count as fully successful."""
        assert PhaseResult(Phase.CLEANUP, 0, 0, 0, 0, 0.0).success_rate == 100.0
        assert PhaseResult(Phase.CLEANUP, 4, 3, 1, 0, 0.0).success_rate == 75.0


class TestSimpleProgressReporter:
    """Tests for SimpleProgressReporter."""

    def test_phase_lifecycle(self) -> None:
        """Counts accumulate per phase and land in the summary."""
        console = quiet_console()
        reporter = SimpleProgressReporter(console=console)

        with reporter:
            reporter.start_phase(Phase.CONSOLIDATE, 3)
            reporter.update_progress(succeeded=2)
            reporter.update_progress(failed=1, current_item="7")
            reporter.warning("slow volume")
            result = reporter.complete_phase()

        assert (result.total, result.succeeded, result.failed) == (3, 2, 1)
        summary = reporter.get_summary()
        assert summary.total_items == 3
        assert summary.total_failed == 1
        assert summary.warnings == ["slow volume"]
        output = console.file.getvalue()  # type: ignore[attr-defined]
        assert "Consolidate (3 items)" in output
        assert "1 failed" in output

    def test_complete_without_phase(self) -> None:
        """Completing with no phase in progress is an error."""
        with pytest.raises(RuntimeError, match="No phase in progress"):
            SimpleProgressReporter(console=quiet_console()).complete_phase()

    def test_log_file(self, tmp_path: Path) -> None:
        """Phase events are written to the log file."""
        log_path = tmp_path / "logs" / "migration.log"
        reporter = SimpleProgressReporter(console=quiet_console(), log_file=log_path)

        reporter.start_phase(Phase.DISCOVERY, 1)
        reporter.error("asset 4 unreadable")
        reporter.complete_phase()

        content = log_path.read_text()
        assert "Starting phase: Discovery (1 items)" in content
        assert "Error: asset 4 unreadable" in content

    def test_final_summary(self) -> None:
        """The final summary lists each phase and the errors."""
        console = quiet_console()
        reporter = SimpleProgressReporter(console=console)
        reporter.start_phase(Phase.QUARANTINE, 1)
        reporter.update_progress(succeeded=1)
        reporter.complete_phase()
        reporter.error("boom")

        reporter.print_final_summary()

        output = console.file.getvalue()  # type: ignore[attr-defined]
        assert "Migration Summary" in output
        assert "Quarantine" in output
        assert "Errors (1)" in output


class TestCreateProgressReporter:
    """Tests for create_progress_reporter."""

    def test_selects_reporter(self) -> None:
        """simple picks the plain reporter, otherwise the live one."""
        assert isinstance(create_progress_reporter(quiet_console(), simple=True), SimpleProgressReporter)
        assert isinstance(create_progress_reporter(quiet_console()), ProgressReporter)
