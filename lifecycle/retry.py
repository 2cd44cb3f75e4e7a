# lifecycle/retry.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """
    max_attempts counts the first call too (3 => one call + two retries).
    Delay before retry n (0-based) is min_delay_s * backoff_factor**n, capped at max_delay_s.
    """
    max_attempts: int = 3
    min_delay_s: float = 0.5
    backoff_factor: float = 1.0
    max_delay_s: float = 30.0


def calculate_delay(retry_number: int, config: RetryConfig) -> float:
    delay = config.min_delay_s * (config.backoff_factor ** retry_number)
    return max(0.0, min(delay, config.max_delay_s))


async def retry_async(
    fn: Callable[[int], Awaitable[T]],
    *,
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call `fn(attempt)` until it succeeds or attempts run out; the last error is re-raised.

    `should_retry` decides per exception (default: everything except cancellation).
    """
    cfg = config or RetryConfig()
    attempts = max(1, int(cfg.max_attempts))

    for attempt in range(attempts):
        try:
            return await fn(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = should_retry(e) if should_retry is not None else True
            if not retryable or attempt >= attempts - 1:
                raise
            delay = calculate_delay(attempt, cfg)
            log.warning(
                f"Retrying {description} after {type(e).__name__}: {e}. "
                f"Attempt {attempt + 2}/{attempts} in {delay:.2f}s"
            )
            await sleep(delay)

    raise RuntimeError("Unexpected state in retry_async")
