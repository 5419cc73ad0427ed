"""Retry with fixed backoff for model invocations."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

from loguru import logger

from termloop.cancellation import CancellationToken
from termloop.errors import ModelInvocationError, RunCancelledError

DEFAULT_MAX_RETRIES = 4
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0, 6.0)


async def invoke_with_retry[T](
    operation: Callable[[int], Awaitable[T]],
    *,
    token: CancellationToken,
    max_retries: int = DEFAULT_MAX_RETRIES,
    delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    on_retry: Callable[[int, int], None] | None = None,
    label: str = "model",
) -> T:
    """Run ``operation(attempt)`` until it succeeds or attempts run out.

    Cancellation is never retried. ``on_retry(attempt, max_retries)`` fires
    before every attempt after the first.
    """

    last_error: Exception | None = None
    for attempt in range(max_retries):
        token.raise_if_cancelled()
        if attempt > 0 and on_retry is not None:
            on_retry(attempt, max_retries)
        try:
            return await operation(attempt)
        except RunCancelledError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt + 1 >= max_retries:
                break
            delay = delays[min(attempt, len(delays) - 1)] if delays else 0.0
            logger.warning(
                "retry.attempt.failed label={} attempt={}/{} delay={}s error={}",
                label,
                attempt + 1,
                max_retries,
                delay,
                exc,
            )
            await token.sleep(delay)

    raise ModelInvocationError(
        f"{label} failed after {max_retries} attempts: {last_error}",
        attempts=max_retries,
        cause=last_error,
    ) from last_error
