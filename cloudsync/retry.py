"""Retry with exponential backoff for transient store failures.

Only TransientStoreError is retried. Everything else (identity, schema,
permission, revision mismatch) is deterministic and propagates untouched.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import TransientExhaustedError, TransientStoreError
from .logging_utils import get_sync_logger

logger = get_sync_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts, including the first one
        backoff_base: Delay before the second attempt (seconds)
        backoff_multiplier: Growth factor per attempt
        backoff_max: Cap on a single delay (seconds)
        jitter: Fraction of the delay randomized in both directions
        max_elapsed: Bound on total time spent in one retried call (seconds)
    """

    max_attempts: int = 4
    backoff_base: float = 0.2
    backoff_multiplier: float = 2.0
    backoff_max: float = 5.0
    jitter: float = 0.5
    max_elapsed: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Backoff delay after the given 0-based attempt failed."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.backoff_max)
        delay = min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)
        if self.jitter:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(delay, 0.0)


async def retry_transient(
    fn: Callable[[], Coroutine[Any, Any, T]],
    config: RetryConfig | None = None,
    operation: str = "store operation",
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Run an async operation, retrying transient store failures.

    Args:
        fn: Zero-argument async callable, invoked once per attempt
        config: Retry configuration (defaults if None)
        operation: Label used in log messages and errors
        on_attempt: Called with the 1-based attempt number before each try

    Returns:
        Result of fn

    Raises:
        TransientExhaustedError: If every attempt failed transiently or the
            elapsed-time bound was reached
    """
    cfg = config or RetryConfig()
    started = time.monotonic()
    last_error: TransientStoreError | None = None

    for attempt in range(cfg.max_attempts):
        if on_attempt is not None:
            on_attempt(attempt + 1)
        try:
            result = await fn()
        except TransientStoreError as exc:
            last_error = exc
            if attempt + 1 >= cfg.max_attempts:
                break

            delay = cfg.delay_for(attempt, exc.retry_after)
            remaining = cfg.max_elapsed - (time.monotonic() - started)
            if remaining <= 0 or delay > remaining:
                logger.error(
                    "RETRY_DEADLINE: %s attempt=%d/%d elapsed bound %.1fs reached: %s",
                    operation,
                    attempt + 1,
                    cfg.max_attempts,
                    cfg.max_elapsed,
                    exc,
                    extra={"attempts": attempt + 1},
                )
                raise TransientExhaustedError(operation, attempt + 1, exc) from exc

            logger.warning(
                "RETRYING: %s attempt=%d/%d status=%s delay=%.2fs: %s",
                operation,
                attempt + 1,
                cfg.max_attempts,
                exc.status_code,
                delay,
                exc,
                extra={"attempts": attempt + 1},
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 0:
                logger.warning(
                    "RETRY_RECOVERED: %s succeeded on attempt %d/%d",
                    operation,
                    attempt + 1,
                    cfg.max_attempts,
                    extra={"attempts": attempt + 1},
                )
            return result

    logger.error(
        "RETRY_EXHAUSTED: %s after %d attempts: %s",
        operation,
        cfg.max_attempts,
        last_error,
        extra={"attempts": cfg.max_attempts},
    )
    raise TransientExhaustedError(operation, cfg.max_attempts, last_error) from last_error
