"""Retry helpers for handling transient failures.

Used for probes of external daemons (the container runtime ping) where a
short, bounded retry hides a daemon that is still starting. Operations with
side effects (container start, image build) are never retried.

Features:
- Fixed backoff between attempts
- Retry on specific exception types
- Prometheus counters for monitoring retry behavior
- Structured logging of retry attempts

Usage:
    from pier.core.retry import fixed_backoff, run_with_retry

    await run_with_retry(ping, fixed_backoff(2, 1.0), retry_on=(OSError,))
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from prometheus_client import Counter

from pier.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "pier_retry_attempts_total",
    "Total number of retry attempts",
    labelnames=["operation", "outcome"],  # outcome: success, retry, exhausted
)

RETRY_OPERATIONS_TOTAL = Counter(
    "pier_retry_operations_total",
    "Total number of operations that required retries",
    labelnames=["operation"],
)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        delay: Seconds to wait before each retry
    """

    max_retries: int = 2
    delay: float = 1.0


def fixed_backoff(max_retries: int, delay: float) -> RetryConfig:
    """Build a config that waits exactly ``delay`` seconds between attempts."""
    return RetryConfig(max_retries=max_retries, delay=max(0.0, delay))


async def run_with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    operation_name: str | None = None,
) -> T:
    """Await ``func()`` until it succeeds or retries are exhausted.

    The last exception is re-raised unchanged once ``config.max_retries``
    retries have failed.
    """
    op_name = operation_name or getattr(func, "__name__", "operation")
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await func()
        except retry_on as e:
            if attempt > config.max_retries:
                logger.warning(
                    f"Operation '{op_name}' failed after {attempt} attempts: {e}",
                    extra={
                        "operation": op_name,
                        "attempts": attempt,
                        "outcome": "exhausted",
                        "error_type": type(e).__name__,
                    },
                )
                RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="exhausted").inc()
                raise

            logger.debug(
                f"Operation '{op_name}' failed (attempt {attempt}/{config.max_retries + 1}), "
                f"retrying in {config.delay:.2f}s: {e}",
                extra={
                    "operation": op_name,
                    "attempt": attempt,
                    "max_attempts": config.max_retries + 1,
                    "delay_seconds": config.delay,
                    "error_type": type(e).__name__,
                },
            )
            RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="retry").inc()
            if attempt == 1:
                RETRY_OPERATIONS_TOTAL.labels(operation=op_name).inc()
            await asyncio.sleep(config.delay)
            continue

        if attempt > 1:
            logger.info(
                f"Operation '{op_name}' succeeded after {attempt} attempts",
                extra={"operation": op_name, "attempts": attempt, "outcome": "success"},
            )
            RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="success").inc()
        return result
