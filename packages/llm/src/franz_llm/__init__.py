"""LLM provider abstraction for text and image generation."""

from franz_llm.base import (
    AsyncLLMProvider,
    CallOptions,
    GeneratedImage,
    ImageResponse,
    LLMConfig,
    LLMMessage,
    LLMResponse,
    ModelCapability,
    normalize_llm_config,
)
from franz_llm.errors import LLMError, get_retry_reason, is_rate_limit_error, is_retryable_error
from franz_llm.providers import (
    EchoProvider,
    GeminiProvider,
    LLMProviderFactory,
    create_llm_provider,
)
from franz_llm.retry import RETRY_PRESETS, get_retry_preset, retry_config_for, retry_executor_for

__all__ = [
    "AsyncLLMProvider",
    "CallOptions",
    "GeneratedImage",
    "ImageResponse",
    "LLMConfig",
    "LLMMessage",
    "LLMResponse",
    "ModelCapability",
    "normalize_llm_config",
    "LLMError",
    "get_retry_reason",
    "is_rate_limit_error",
    "is_retryable_error",
    "EchoProvider",
    "GeminiProvider",
    "LLMProviderFactory",
    "create_llm_provider",
    "RETRY_PRESETS",
    "get_retry_preset",
    "retry_config_for",
    "retry_executor_for",
]
