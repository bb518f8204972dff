"""Retry policy and error accounting for migration operations.

Transient failures are retried with exponential backoff. Fatal failures
(not found, permission denied, invalid input, constraint violations) are
raised immediately. A running count of recorded errors halts the migration
once it crosses the configured thresholds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError

from asset_migrate.storage import StorageFileNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

FATAL_PATTERNS = (
    "does not exist",
    "not found",
    "permission denied",
    "access denied",
    "invalid",
    "constraint violation",
)

FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    StorageFileNotFoundError,
    FileNotFoundError,
    PermissionError,
    IntegrityError,
)

MISSING_FILE_CATEGORY = "missing_source_file"


class RecoveryError(Exception):
    """Base exception for error recovery."""

    pass


class FatalOperationError(RecoveryError):
    """Raised for failures that must never be retried."""

    pass


class RetryExhaustedError(RecoveryError):
    """Raised when an operation still fails after every attempt."""

    def __init__(self, operation_id: str, attempts: int, last_error: BaseException) -> None:
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")


class ThresholdExceededError(RecoveryError):
    """Raised when accumulated errors cross a safety threshold."""

    def __init__(self, message: str, error_counts: dict[str, int]) -> None:
        self.error_counts = error_counts
        super().__init__(message)


def is_fatal(error: BaseException) -> bool:
    """Check whether an error must not be retried."""
    if isinstance(error, (FatalOperationError, *FATAL_EXCEPTIONS)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in FATAL_PATTERNS)


class ErrorRecovery:
    """Retries operations and tracks errors across a migration.

    Example:
        >>> recovery = ErrorRecovery(max_retries=3, base_delay=1.0)
        >>> data = await recovery.retry(lambda: provider.read(path), f"read:{path}")
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        error_threshold: int = 50,
        critical_threshold: int = 20,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize error recovery.

        Args:
            max_retries: Attempts per operation (including the first).
            base_delay: Delay before the first retry; doubles on each retry.
            error_threshold: Unexpected errors tolerated before halting.
            critical_threshold: Critical errors tolerated before halting.
            sleep: Awaitable sleep, replaceable for testing.
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.error_threshold = error_threshold
        self.critical_threshold = critical_threshold
        self._sleep = sleep

        self._total_retries = 0
        self._operations_retried: set[str] = set()
        self._errors: dict[str, list[dict[str, Any]]] = {}
        self._restored_counts: dict[str, int] = {}
        self._expected_missing = 0

    async def retry(self, operation: Callable[[], Awaitable[T]], operation_id: str) -> T:
        """Run an operation, retrying transient failures.

        Args:
            operation: Zero-argument callable returning an awaitable.
            operation_id: Identifier used in logs and statistics.

        Returns:
            The operation's result.

        Raises:
            Exception: The original error if it is fatal.
            RetryExhaustedError: If every attempt failed.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if is_fatal(e):
                    logger.error("Fatal error in %s (not retrying): %s", operation_id, e)
                    raise
                if attempt >= self.max_retries:
                    logger.error(
                        "Operation %s failed after %d attempts: %s", operation_id, attempt, e
                    )
                    raise RetryExhaustedError(operation_id, attempt, e) from e

                delay = self.base_delay * (2 ** (attempt - 1))
                self._total_retries += 1
                self._operations_retried.add(operation_id)
                logger.warning(
                    "Attempt %d/%d for %s failed: %s. Retrying in %.1fs",
                    attempt,
                    self.max_retries,
                    operation_id,
                    e,
                    delay,
                )
                await self._sleep(delay)

    def get_retry_stats(self) -> dict[str, int]:
        """Get retry statistics."""
        return {
            "total_retries": self._total_retries,
            "operations_retried": len(self._operations_retried),
        }

    def set_expected_missing_files(self, count: int) -> None:
        """Set how many missing-file errors discovery predicted."""
        self._expected_missing = max(0, count)

    @property
    def expected_missing_files(self) -> int:
        return self._expected_missing

    def record_error(
        self, category: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Record an error and halt if a threshold is crossed.

        Args:
            category: Error category (``missing_source_file`` is expected
                up to the discovery count; everything else is critical).
            message: Error description.
            context: Extra details for the log.

        Raises:
            ThresholdExceededError: If accumulated errors cross a threshold.
        """
        self._errors.setdefault(category, []).append(
            {
                "message": message,
                "context": context or {},
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error("Operation '%s' error: %s | context: %s", category, message, context or {})
        self._check_thresholds()

    def _check_thresholds(self) -> None:
        counts = self.session_error_counts()
        missing = counts.get(MISSING_FILE_CATEGORY, 0)
        critical = sum(n for category, n in counts.items() if category != MISSING_FILE_CATEGORY)
        # Missing files seen before a resume use up part of the expected count
        restored_missing = self._restored_counts.get(MISSING_FILE_CATEGORY, 0)
        expected = max(0, self._expected_missing - restored_missing)
        unexpected = critical + max(0, missing - expected)

        if critical >= self.critical_threshold:
            raise ThresholdExceededError(
                f"Critical error threshold exceeded ({critical} errors). "
                "Migration halted for safety. Review errors and resume.",
                counts,
            )

        max_missing = max(expected + 10, self.error_threshold)
        if missing > max_missing:
            raise ThresholdExceededError(
                f"Missing file errors ({missing}) exceed expected count "
                f"({expected}). This may indicate a configuration issue.",
                counts,
            )

        if unexpected >= self.error_threshold:
            raise ThresholdExceededError(
                f"Error threshold exceeded ({unexpected} unexpected errors). "
                "Migration halted for safety. Review errors and resume.",
                counts,
            )

    def session_error_counts(self) -> dict[str, int]:
        """Error counts recorded since this process started."""
        return {category: len(errors) for category, errors in self._errors.items()}

    def get_error_counts(self) -> dict[str, int]:
        """Error counts by category, including counts restored from a checkpoint."""
        counts = dict(self._restored_counts)
        for category, n in self.session_error_counts().items():
            counts[category] = counts.get(category, 0) + n
        return counts

    @property
    def total_errors(self) -> int:
        return sum(self.get_error_counts().values())

    def restore_error_counts(self, counts: dict[str, int]) -> None:
        """Carry error counts over from a checkpoint when resuming.

        Restored counts are reported and saved with later checkpoints but do
        not count toward the thresholds, so a run halted by a threshold can
        make progress once the operator resumes it.
        """
        self._restored_counts = {category: int(n) for category, n in counts.items()}

    def __repr__(self) -> str:
        return (
            f"ErrorRecovery(max_retries={self.max_retries}, total_errors={self.total_errors}, "
            f"retries={self._total_retries})"
        )
