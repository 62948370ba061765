"""
Backoff calculation and retry helpers.

``calculate_retry_delay`` is a pure function: given the attempt number, a
policy and a random source it returns the delay in milliseconds. Seeding the
random source makes it fully deterministic.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from jobrunner.config import RetryConfig
from jobrunner.constants import BackoffStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFunction = Callable[[int, RetryConfig, random.Random | None], int]


def exponential_backoff(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """
    Exponential backoff with jitter.

    ``min(max_delay, initial * multiplier^(attempt-1))`` scaled by a uniform
    factor in ``[1 - jitter, 1 + jitter]``.

    Args:
        attempt: 1-based number of the attempt that just failed.
        config: Backoff policy.
        rng: Random source. Module-level random when omitted.

    Returns:
        Delay in milliseconds, never negative.
    """
    base = config.initial_delay_ms * config.backoff_multiplier ** max(attempt - 1, 0)
    capped = min(base, config.max_delay_ms)

    offset = (rng or random).uniform(-1.0, 1.0)
    jitter = capped * config.jitter_factor * offset
    return max(0, round(capped + jitter))


def linear_backoff(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """Delay grows by ``initial_delay_ms`` per attempt, capped."""
    return min(config.initial_delay_ms * attempt, config.max_delay_ms)


def fixed_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """Constant delay."""
    return config.initial_delay_ms


def no_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """Retry immediately."""
    return 0


_DELAY_FUNCTIONS: dict[BackoffStrategy, DelayFunction] = {
    BackoffStrategy.EXPONENTIAL: exponential_backoff,
    BackoffStrategy.LINEAR: linear_backoff,
    BackoffStrategy.FIXED: fixed_delay,
    BackoffStrategy.NONE: no_delay,
}


def get_delay_function(strategy: BackoffStrategy | str) -> DelayFunction:
    """
    Get the delay function for a strategy.

    Raises:
        ValueError: If the strategy is unknown.
    """
    return _DELAY_FUNCTIONS[BackoffStrategy(strategy)]


def calculate_retry_delay(
    attempt: int,
    config: RetryConfig,
    exponential: bool = True,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before the attempt following ``attempt``.

    Non-exponential mode returns ``initial_delay_ms`` unchanged.
    """
    if not exponential:
        return fixed_delay(attempt, config)
    return exponential_backoff(attempt, config, rng)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of ``with_retry``."""

    success: bool
    attempts: int
    total_delay_ms: int
    result: T | None = None
    error: Exception | None = None


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    should_retry: Callable[[Exception, int], bool] | None = None,
    on_retry: Callable[[Exception, int, int], None] | None = None,
    operation_name: str = "operation",
    rng: random.Random | None = None,
) -> RetryResult[T]:
    """
    Call ``fn`` until it succeeds or attempts run out.

    Exceptions raised by ``fn`` are captured in the returned result, never
    re-raised. ``asyncio.CancelledError`` is not caught.

    Args:
        fn: Zero-argument coroutine factory.
        config: Attempt count and delay policy.
        strategy: Delay strategy between attempts.
        should_retry: Predicate ``(error, attempt)``; stop early when False.
        on_retry: Callback ``(error, attempt, delay_ms)`` before sleeping.
        operation_name: Label for log records.
        rng: Random source for jitter.

    Returns:
        RetryResult describing the final outcome.
    """
    config = config or RetryConfig()
    delay_fn = get_delay_function(strategy)
    attempt = 0
    total_delay_ms = 0
    last_error: Exception | None = None

    while attempt < config.max_attempts:
        attempt += 1
        try:
            result = await fn()
        except Exception as e:
            last_error = e
        else:
            if attempt > 1:
                logger.debug(
                    "Retry succeeded",
                    extra={"operation": operation_name, "attempt": attempt},
                )
            return RetryResult(
                success=True,
                attempts=attempt,
                total_delay_ms=total_delay_ms,
                result=result,
            )

        if attempt >= config.max_attempts:
            break

        if should_retry is not None and not should_retry(last_error, attempt):
            logger.debug(
                "Retry condition not met, stopping",
                extra={"operation": operation_name, "attempt": attempt, "error": str(last_error)},
            )
            break

        delay = delay_fn(attempt, config, rng)
        total_delay_ms += delay

        if on_retry is not None:
            on_retry(last_error, attempt, delay)

        logger.debug(
            "Retrying operation",
            extra={
                "operation": operation_name,
                "attempt": attempt,
                "delay_ms": delay,
                "error": str(last_error),
            },
        )

        if delay > 0:
            await asyncio.sleep(delay / 1000)

    logger.debug(
        "All retries exhausted",
        extra={"operation": operation_name, "attempts": attempt, "error": str(last_error)},
    )

    return RetryResult(
        success=False,
        attempts=attempt,
        total_delay_ms=total_delay_ms,
        error=last_error,
    )


_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network",
    "socket",
    "temporary",
    "unavailable",
    "429",
    "503",
    "504",
)


def retry_always(error: Exception, attempt: int) -> bool:
    """Retry on any error."""
    return True


def retry_never(error: Exception, attempt: int) -> bool:
    """Never retry."""
    return False


def retry_transient(error: Exception, attempt: int) -> bool:
    """Retry on errors that look like network or availability problems."""
    if isinstance(error, TimeoutError | ConnectionError):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)
