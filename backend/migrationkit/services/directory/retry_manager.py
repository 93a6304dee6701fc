"""
Directory API Retry Manager.

This module provides the single retry pipeline every directory operation
runs through: exponential backoff with jitter, ``Retry-After`` overrides,
a per-attempt timeout and retry telemetry.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Optional, TypeVar

from logconfig.logger import get_logger
from migrationkit.core.settings import RetryOptions
from migrationkit.exceptions.directory_exceptions import (
    RETRYABLE_STATUS_CODES,
    DirectoryError,
    DirectoryRetryExhaustedError,
    DirectoryTimeoutError,
    get_error_severity,
    is_retryable_error,
)
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()

T = TypeVar('T')

RETRY_COUNTER = "GraphClient.Retries"


class RetryStrategy(Enum):
    """Retry strategy types."""
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_DELAY = "fixed_delay"
    IMMEDIATE = "immediate"


@dataclass
class RetryAttempt:
    """Information about a retry attempt."""
    attempt_number: int
    delay_seconds: float
    exception: Optional[Exception] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        jitter: bool = True,
        strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF,
        use_retry_after_header: bool = True,
        operation_timeout: Optional[float] = 120.0,
        retryable_status_codes: Optional[Iterable[int]] = None,
    ):
        """
        Initialize retry configuration.

        Args:
            max_retries: Retries after the first attempt.
            base_delay: Base delay between retries in seconds.
            max_delay: Maximum delay between retries in seconds.
            backoff_multiplier: Multiplier for exponential backoff.
            jitter: Whether to add random jitter to delays.
            strategy: Retry strategy to use.
            use_retry_after_header: Honour server ``Retry-After`` hints.
            operation_timeout: Per-attempt timeout in seconds.
            retryable_status_codes: HTTP statuses treated as transient.
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.strategy = strategy
        self.use_retry_after_header = use_retry_after_header
        self.operation_timeout = operation_timeout
        self.retryable_status_codes: FrozenSet[int] = frozenset(
            retryable_status_codes if retryable_status_codes is not None else RETRYABLE_STATUS_CODES
        )

    @classmethod
    def from_options(cls, options: RetryOptions) -> "RetryConfig":
        return cls(
            max_retries=options.max_retries,
            base_delay=options.initial_delay_ms / 1000.0,
            max_delay=options.max_delay_ms / 1000.0,
            backoff_multiplier=options.backoff_multiplier,
            use_retry_after_header=options.use_retry_after_header,
            operation_timeout=options.operation_timeout_seconds,
            retryable_status_codes=options.retryable_status_codes,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt_number: int, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay before the next attempt.

        Args:
            attempt_number: The attempt that just failed (1-based).
            retry_after: Server-supplied delay hint in seconds.

        Returns:
            Delay in seconds.
        """
        if retry_after is not None and self.use_retry_after_header:
            return max(0.0, retry_after)

        if self.strategy == RetryStrategy.IMMEDIATE:
            delay = 0.0
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = self.base_delay
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.base_delay * attempt_number
        else:
            delay = self.base_delay * (self.backoff_multiplier ** (attempt_number - 1))

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def is_retryable(self, exception: Exception) -> bool:
        if isinstance(exception, DirectoryRetryExhaustedError):
            return False
        if isinstance(exception, DirectoryTimeoutError):
            return True
        if isinstance(exception, DirectoryError) and exception.status_code is not None:
            return exception.status_code in self.retryable_status_codes
        return is_retryable_error(exception)


class RetryManager:
    """
    Runs directory operations with backoff, throttling hints and timeouts.

    ``sleep`` is injectable so tests can run the full retry loop without
    waiting on real back-off delays.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        telemetry: Optional[TelemetryService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.telemetry = telemetry
        self._sleep = sleep
        self.total_retries = 0

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        on_retry: Optional[Callable[[RetryAttempt], None]] = None,
    ) -> T:
        """
        Execute ``operation`` until it succeeds or the retry budget is spent.

        Non-retryable errors propagate immediately. When every attempt fails
        with a transient error, ``DirectoryRetryExhaustedError`` is raised.
        """
        start_time = time.monotonic()

        for attempt_number in range(1, self.config.max_attempts + 1):
            try:
                result = await self._run_attempt(operation, operation_name)
                if attempt_number > 1:
                    logger.info(
                        f"{operation_name} succeeded on attempt {attempt_number} "
                        f"after {time.monotonic() - start_time:.2f}s"
                    )
                return result

            except asyncio.CancelledError:
                raise

            except Exception as e:
                if not self.config.is_retryable(e):
                    logger.warning(
                        f"{operation_name} failed with non-retryable error "
                        f"(severity={get_error_severity(e)}): {e}"
                    )
                    raise

                if attempt_number >= self.config.max_attempts:
                    logger.error(
                        f"{operation_name} failed after {attempt_number} attempts: {e}"
                    )
                    raise DirectoryRetryExhaustedError(
                        f"{operation_name} failed after {attempt_number} attempts",
                        attempts=attempt_number,
                        last_exception=e,
                        operation=operation_name,
                    ) from e

                retry_after = getattr(e, "retry_after", None)
                delay = self.config.calculate_delay(attempt_number, retry_after)
                attempt = RetryAttempt(attempt_number=attempt_number, delay_seconds=delay, exception=e)

                logger.warning(
                    f"Retry attempt {attempt_number} for {operation_name} "
                    f"after {delay * 1000:.0f}ms due to: {e}"
                )
                self.total_retries += 1
                if self.telemetry is not None:
                    self.telemetry.increment_counter(RETRY_COUNTER)
                if on_retry is not None:
                    on_retry(attempt)

                await self._sleep(delay)

        raise RuntimeError("unreachable")

    async def _run_attempt(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        timeout = self.config.operation_timeout
        if not timeout:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DirectoryTimeoutError(
                f"{operation_name} timed out after {timeout}s",
                timeout_seconds=timeout,
                operation=operation_name,
                retryable=True,
            ) from e
