"""Retry presets for AI operations.

Each preset is a ``RetryConfig`` tuned for a kind of call. The preset used
for a given call is chosen by ``RetrySettings.preset_for`` (stage override,
then workflow override, then the operation default).

Example:
    ```python
    executor = retry_executor_for(
        settings.retry, "grounding", workflow_id="press-release", stage_id="research"
    )
    response = await executor.execute(provider.complete, messages, grounding=True)
    ```
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from franz_common.exceptions import ConfigurationError
from franz_common.retry import BackoffStrategy, RetryConfig, RetryExecutor
from franz_config.settings import RetrySettings
from franz_llm.errors import describe_error, get_retry_reason, is_rate_limit_error, is_retryable_error

logger = logging.getLogger(__name__)


RETRY_PRESETS: dict[str, RetryConfig] = {
    # Critical or expensive calls
    "CONSERVATIVE": RetryConfig(
        max_attempts=2,
        initial_delay=2.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        backoff_strategy=BackoffStrategy.JITTER,
        should_retry=is_retryable_error,
    ),
    "STANDARD": RetryConfig(
        max_attempts=3,
        initial_delay=1.0,
        max_delay=30.0,
        backoff_multiplier=2.0,
        backoff_strategy=BackoffStrategy.JITTER,
        should_retry=is_retryable_error,
    ),
    "AGGRESSIVE": RetryConfig(
        max_attempts=5,
        initial_delay=0.5,
        max_delay=60.0,
        backoff_multiplier=2.5,
        backoff_strategy=BackoffStrategy.JITTER,
        should_retry=is_retryable_error,
    ),
    # Only rate limits and quota errors are retried, with long waits
    "RATE_LIMIT": RetryConfig(
        max_attempts=4,
        initial_delay=5.0,
        max_delay=120.0,
        backoff_multiplier=3.0,
        backoff_strategy=BackoffStrategy.JITTER,
        should_retry=is_rate_limit_error,
    ),
    "FAST": RetryConfig(
        max_attempts=2,
        initial_delay=0.25,
        max_delay=2.0,
        backoff_multiplier=2.0,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        should_retry=is_retryable_error,
    ),
    "NONE": RetryConfig(max_attempts=1),
}


def get_retry_preset(name: str) -> RetryConfig:
    """Return a copy of the named preset.

    Raises:
        ConfigurationError: If the preset is unknown
    """
    key = name.upper().replace("-", "_")
    if key not in RETRY_PRESETS:
        raise ConfigurationError(
            f"Unknown retry preset: {name}",
            context={"preset": name, "available": sorted(RETRY_PRESETS)},
        )
    return replace(RETRY_PRESETS[key])


def retry_config_for(
    settings: RetrySettings,
    operation: str,
    workflow_id: str | None = None,
    stage_id: str | None = None,
    **overrides: Any,
) -> RetryConfig:
    """Resolve the retry config for one call, with logging hooks attached."""
    preset_name = settings.preset_for(operation, workflow_id, stage_id)
    config = get_retry_preset(preset_name).with_overrides(**overrides)

    if settings.enable_detailed_logging:
        def on_retry(attempt: int, error: Exception) -> None:
            logger.warning(
                "AI retry [%s/%s] attempt %d failed: %s",
                operation, preset_name, attempt, get_retry_reason(error),
            )

        def on_failure(error: Exception) -> None:
            logger.error(
                "AI %s failed after %d attempts: %s",
                operation, config.max_attempts, describe_error(error),
            )

        config.on_retry = on_retry
        config.on_failure = on_failure

    return config


def retry_executor_for(
    settings: RetrySettings,
    operation: str,
    workflow_id: str | None = None,
    stage_id: str | None = None,
    **overrides: Any,
) -> RetryExecutor:
    return RetryExecutor(
        retry_config_for(settings, operation, workflow_id, stage_id, **overrides)
    )
