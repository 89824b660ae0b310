"""
Bounded retry with per-attempt timeout for external capability calls.

Classification and extraction may be backed by a remote model. Each attempt
runs on a worker thread and is abandoned after the configured timeout; a
timeout counts as a failed attempt. After the last attempt the error is
raised as a CapabilityError for the pipeline to record as a step failure.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class CapabilityError(Exception):
    """An external capability failed after all retry attempts."""

    def __init__(self, message: str, operation: str = "operation", attempts: int = 0):
        self.operation = operation
        self.attempts = attempts
        super().__init__(message)


class CapabilityTimeoutError(CapabilityError):
    """A single capability attempt exceeded its timeout."""


@dataclass
class RetryPolicy:
    """Per-attempt timeout and one delay per retry."""
    timeout_seconds: float = 30.0
    retry_delays: List[float] = field(default_factory=lambda: [1.0, 2.0])

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays) + 1

    @classmethod
    def from_pipeline_config(cls, config) -> "RetryPolicy":
        return cls(
            timeout_seconds=config.capability_timeout_seconds,
            retry_delays=list(config.capability_retry_delays),
        )


@dataclass
class RetryResult:
    """Result of a retried operation."""
    success: bool
    result: Any = None
    attempts: int = 0
    last_error: Optional[str] = None


def call_with_timeout(operation: Callable[[], Any], timeout_seconds: float, operation_name: str = "operation") -> Any:
    """
    Run `operation` on a worker thread and wait at most `timeout_seconds`.

    The worker is not joined on timeout; a hung call is left to finish on
    its own and its result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        raise CapabilityTimeoutError(
            f"{operation_name} timed out after {timeout_seconds}s",
            operation=operation_name,
        )
    finally:
        executor.shutdown(wait=False)


def with_retry(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    operation_name: str = "operation",
    sleep_func: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Execute an operation with a per-attempt timeout and bounded retries.

    Args:
        operation: Callable that performs the operation (should raise on failure)
        policy: RetryPolicy with timeout and retry delays
        operation_name: Name for logging purposes
        sleep_func: Sleep function (injectable for testing)

    Returns:
        RetryResult with success status, result, attempts count, and last error
    """
    last_error: Optional[str] = None

    for attempt in range(policy.max_attempts):
        try:
            result = call_with_timeout(operation, policy.timeout_seconds, operation_name)
            if attempt > 0:
                logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
            return RetryResult(success=True, result=result, attempts=attempt + 1)
        except Exception as e:
            last_error = str(e) or type(e).__name__

            if attempt < policy.max_attempts - 1:
                delay = policy.retry_delays[attempt]
                logger.warning(
                    f"{operation_name} failed (attempt {attempt + 1}/{policy.max_attempts}): {last_error}; "
                    f"retrying in {delay}s"
                )
                sleep_func(delay)
            else:
                logger.error(f"{operation_name} failed after {attempt + 1} attempts: {last_error}")

    return RetryResult(success=False, attempts=policy.max_attempts, last_error=last_error)


def run_capability(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    operation_name: str = "operation",
    sleep_func: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Like with_retry, but returns the value directly.

    Raises:
        CapabilityError: If every attempt failed or timed out
    """
    outcome = with_retry(operation, policy, operation_name, sleep_func)
    if not outcome.success:
        raise CapabilityError(
            f"{operation_name} failed after {outcome.attempts} attempts: {outcome.last_error}",
            operation=operation_name,
            attempts=outcome.attempts,
        )
    return outcome.result
