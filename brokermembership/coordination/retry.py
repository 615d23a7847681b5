"""
Retry logic with exponential backoff for coordination requests.

Only transient coordination failures (connection loss, request timeouts)
are retried. Everything else is a definite answer from the coordination
service and propagates on the first attempt.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from kazoo.exceptions import ConnectionLoss, OperationTimeoutError
from kazoo.handlers.threading import KazooTimeoutError

from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

TRANSIENT_ERRORS = (
    ConnectionLoss,
    OperationTimeoutError,
    KazooTimeoutError,
)


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts after the first try
        retry_backoff_ms: Initial backoff in milliseconds
        retry_backoff_max_ms: Maximum backoff in milliseconds
        retry_jitter_ms: Random jitter to add to backoff
    """
    max_retries: int = 5
    retry_backoff_ms: int = 100
    retry_backoff_max_ms: int = 5000
    retry_jitter_ms: int = 20

    @classmethod
    def from_config(cls, config: Any) -> "RetryConfig":
        """Build from the coordination.retry section of a Config."""
        return cls(
            max_retries=config.get("coordination.retry.max_retries", cls.max_retries),
            retry_backoff_ms=config.get("coordination.retry.backoff_ms", cls.retry_backoff_ms),
            retry_backoff_max_ms=config.get(
                "coordination.retry.backoff_max_ms", cls.retry_backoff_max_ms
            ),
            retry_jitter_ms=config.get("coordination.retry.jitter_ms", cls.retry_jitter_ms),
        )


class RetryManager:
    """
    Manages retry logic with exponential backoff.

    Implements:
    - Exponential backoff: delay doubles each retry
    - Maximum backoff: caps delay at maximum
    - Random jitter: prevents thundering herd on a recovering ensemble
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize retry manager.

        Args:
            config: Retry configuration
            sleep: Sleep function, replaceable in tests
        """
        self.config = config or RetryConfig()
        self._sleep = sleep

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
    ) -> T:
        """
        Execute operation with retry logic.

        Args:
            operation: Callable to execute
            operation_name: Name for logging

        Returns:
            Result from operation

        Raises:
            Exception: The last transient error once retries are exhausted,
                or any non-transient error immediately
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.config.max_retries + 1):
            try:
                result = operation()

                if attempt > 0:
                    logger.info(
                        f"{operation_name} succeeded after retry",
                        attempt=attempt,
                    )

                return result

            except TRANSIENT_ERRORS as e:
                last_exception = e

                if attempt < self.config.max_retries:
                    backoff_ms = self._calculate_backoff(attempt)

                    logger.warning(
                        f"{operation_name} failed, retrying",
                        attempt=attempt,
                        backoff_ms=backoff_ms,
                        error=repr(e),
                    )

                    self._sleep(backoff_ms / 1000.0)
                else:
                    logger.error(
                        f"{operation_name} failed after all retries",
                        attempts=attempt + 1,
                        error=repr(e),
                    )

        raise last_exception

    def _calculate_backoff(self, attempt: int) -> int:
        """
        Calculate backoff delay with exponential growth and jitter.

        Formula: min(base * 2^attempt, max) + jitter

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Backoff delay in milliseconds
        """
        exponential_backoff = self.config.retry_backoff_ms * (2 ** attempt)

        backoff = min(exponential_backoff, self.config.retry_backoff_max_ms)

        jitter = random.randint(0, self.config.retry_jitter_ms)

        return backoff + jitter
