"""Retry with exponential backoff and jitter.

Callers pass the async call, a retryability predicate, and optional
timing overrides. Used by the Anthropic client for 429/5xx and timeouts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from praxis.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        )


DEFAULT_RETRY_CONFIG = RetryConfig()


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff: min(initial * multiplier**attempt, max_delay), +/-25% jitter."""
    base = min(
        config.initial_delay * config.backoff_multiplier**attempt,
        config.max_delay,
    )
    if not config.jitter:
        return base
    return base * (0.75 + random.random() * 0.5)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    should_retry: Callable[[BaseException], bool],
    config: RetryConfig | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    **overrides: float | int | bool,
) -> T:
    """Run fn, retrying while should_retry(err) is true.

    Non-retryable errors (or an exception from should_retry itself)
    propagate immediately. After max_attempts the last error is re-raised.
    on_retry(attempt, delay, err) fires before each sleep; attempt is 1-based.
    """
    cfg = replace(config or DEFAULT_RETRY_CONFIG, **overrides)

    for attempt in range(cfg.max_attempts):
        try:
            return await fn()
        except Exception as err:
            if not should_retry(err):
                raise
            if attempt + 1 >= cfg.max_attempts:
                raise

            delay = compute_delay(attempt, cfg)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt + 1,
                cfg.max_attempts,
                err,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, err)
            await asyncio.sleep(delay)

    raise RuntimeError("with_retry requires max_attempts >= 1")
