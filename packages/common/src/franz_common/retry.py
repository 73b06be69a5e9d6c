"""Retrying calls that fail transiently.

A ``RetryConfig`` says how often to try and how long to wait in between;
a ``RetryExecutor`` runs a sync or async callable under that policy.

Example:
    ```python
    from franz_common.retry import RetryExecutor, RetryConfig, BackoffStrategy

    config = RetryConfig(
        max_attempts=3,
        initial_delay=1.0,
        backoff_strategy=BackoffStrategy.JITTER,
        should_retry=lambda exc: "429" in str(exc),
    )
    result = await RetryExecutor(config).execute(provider.complete, messages)
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class BackoffStrategy(str, Enum):
    """How the wait grows between attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    JITTER = "jitter"
    """Exponential, then scaled by a random factor within ``jitter_range``."""


@dataclass
class RetryConfig:
    """Retry policy.

    Attributes:
        max_attempts: Total tries, the first one included
        initial_delay: Seconds to wait after the first failure
        max_delay: Ceiling for any single wait
        backoff_strategy: How the wait grows
        backoff_multiplier: Growth factor for EXPONENTIAL and JITTER
        jitter_range: Relative spread for JITTER, 0.1 meaning +/-10%
        retry_on_exceptions: When set, other exception types are not retried
        should_retry: When set and returning False, the error propagates at once
        on_retry: Called as ``on_retry(attempt, error)`` before each wait
        on_failure: Called with the last error once attempts run out
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter_range: float = 0.1

    retry_on_exceptions: list[type] | None = None
    should_retry: Callable[[Exception], bool] | None = None

    on_retry: Callable[[int, Exception], None] | None = None
    on_failure: Callable[[Exception], None] | None = None

    def __post_init__(self) -> None:
        self.backoff_strategy = BackoffStrategy(self.backoff_strategy)

    def with_overrides(self, **overrides: Any) -> RetryConfig:
        """Copy with every override that is not None applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        strategy = self.backoff_strategy
        if strategy is BackoffStrategy.FIXED:
            delay = self.initial_delay
        elif strategy is BackoffStrategy.LINEAR:
            delay = self.initial_delay * attempt
        else:
            delay = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
            if strategy is BackoffStrategy.JITTER:
                delay *= 1 + random.uniform(-self.jitter_range, self.jitter_range)
        return min(delay, self.max_delay)

    def retryable(self, error: Exception) -> bool:
        if self.retry_on_exceptions and not isinstance(error, tuple(self.retry_on_exceptions)):
            return False
        return self.should_retry is None or bool(self.should_retry(error))


class RetryExecutor:
    """Runs callables under a ``RetryConfig``."""

    def __init__(self, config: RetryConfig) -> None:
        self.config = config

    async def execute(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``func(*args, **kwargs)``, awaiting the result when needed.

        Raises:
            Exception: A non-retryable error right away, otherwise the error
                of the last attempt
        """
        config = self.config
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as error:
                if not config.retryable(error):
                    raise
                if attempt >= config.max_attempts:
                    if config.on_failure:
                        config.on_failure(error)
                    raise
                delay = config.delay_for(attempt)
                if config.on_retry:
                    config.on_retry(attempt, error)
                logger.debug(
                    "Attempt %d/%d failed, retrying in %.2fs: %s",
                    attempt, config.max_attempts, delay, error,
                )
            await asyncio.sleep(delay)
