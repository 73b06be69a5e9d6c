"""LLM provider implementations and factory."""

from __future__ import annotations

from typing import Any, Dict, Type, Union

from franz_common.exceptions import ConfigurationError

from ..base import AsyncLLMProvider, LLMConfig, normalize_llm_config
from .echo import EchoProvider
from .gemini import GeminiProvider


class LLMProviderFactory:
    """Creates providers from configuration by provider name.

    Example:
        ```python
        LLMProviderFactory.register("my-llm", MyProvider)
        provider = LLMProviderFactory().create({"provider": "my-llm", "model": "m"})
        ```
    """

    _providers: Dict[str, Type[AsyncLLMProvider]] = {
        "echo": EchoProvider,
        "gemini": GeminiProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[AsyncLLMProvider]) -> None:
        cls._providers[name.lower()] = provider_class

    @classmethod
    def available(cls) -> list[str]:
        return sorted(cls._providers)

    def create(self, config: Union[LLMConfig, Dict[str, Any]]) -> AsyncLLMProvider:
        """Create a provider.

        Raises:
            ConfigurationError: If the provider name is unknown
        """
        llm_config = normalize_llm_config(config)
        provider_class = self._providers.get(llm_config.provider.lower())
        if provider_class is None:
            raise ConfigurationError(
                f"Unknown LLM provider: {llm_config.provider}",
                context={"provider": llm_config.provider, "available": self.available()},
            )
        return provider_class(llm_config)


def create_llm_provider(config: Union[LLMConfig, Dict[str, Any]]) -> AsyncLLMProvider:
    """Create a provider from an LLMConfig or dict."""
    return LLMProviderFactory().create(config)


__all__ = [
    "EchoProvider",
    "GeminiProvider",
    "LLMProviderFactory",
    "create_llm_provider",
]
