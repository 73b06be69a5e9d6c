"""Provider interface and the value types that cross it.

A provider turns a rendered prompt into text (``complete``) or images
(``generate_images``). Stage execution only talks to ``AsyncLLMProvider``,
which lets the echo provider stand in for Gemini in tests and offline runs.

Example:
    ```python
    from franz_llm import LLMConfig, create_llm_provider

    llm = create_llm_provider(LLMConfig(provider="echo", model="echo-model"))
    async with llm:
        response = await llm.complete("Write a haiku about autumn", temperature=0.9)
    print(response.content)
    ```
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Union

from franz_common.exceptions import OperationError

Prompt = Union[str, List["LLMMessage"]]


class ModelCapability(Enum):
    TEXT_GENERATION = "text_generation"
    JSON_MODE = "json_mode"
    GROUNDING = "grounding"
    IMAGE_GENERATION = "image_generation"


@dataclass
class LLMMessage:
    """One prompt message; ``role`` is 'system', 'user' or 'assistant'."""

    role: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Text produced by a provider.

    Attributes:
        content: Generated text
        model: Model that answered
        finish_reason: Provider's stop reason, when it reports one
        usage: Token counts keyed ``prompt_tokens``, ``completion_tokens``
            and ``total_tokens``
        grounding_metadata: Search queries and sources of a grounded call
    """

    content: str
    model: str
    finish_reason: str | None = None
    usage: Dict[str, int] | None = None
    grounding_metadata: Dict[str, Any] | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ImageResponse:
    images: List[GeneratedImage]
    model: str
    prompt: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMConfig:
    """Provider settings.

    ``model``, ``temperature``, ``max_tokens``, ``system_prompt`` and
    ``response_format`` are defaults that a single ``complete`` call may
    override. ``options`` holds provider-specific extras.
    """

    provider: str
    model: str
    api_key: str | None = None
    image_model: str | None = None

    temperature: float = 0.7
    max_tokens: int | None = None
    system_prompt: str | None = None
    response_format: str | None = None  # 'text' or 'json'

    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LLMConfig:
        """Build from a mapping; keys that are not fields are dropped."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def clone(self, **overrides: Any) -> LLMConfig:
        return replace(self, **overrides)


def normalize_llm_config(config: Union[LLMConfig, Dict[str, Any]]) -> LLMConfig:
    """Coerce a dict into an ``LLMConfig``; an ``LLMConfig`` passes through.

    Raises:
        TypeError: For anything else
    """
    if isinstance(config, dict):
        return LLMConfig.from_dict(config)
    if not isinstance(config, LLMConfig):
        raise TypeError(f"Expected LLMConfig or dict, got {type(config).__name__}")
    return config


@dataclass(frozen=True)
class CallOptions:
    """Effective settings of one ``complete`` call."""

    model: str
    temperature: float
    max_tokens: int | None = None
    system_prompt: str | None = None
    response_format: str | None = None
    grounding: bool = False

    @property
    def wants_json(self) -> bool:
        return self.response_format == "json"


class AsyncLLMProvider(ABC):
    """Base class for async providers.

    Subclasses create their client in ``initialize`` and drop it in
    ``close``; ``async with provider:`` does both.
    """

    def __init__(self, config: Union[LLMConfig, Dict[str, Any]]):
        self.config = normalize_llm_config(config)
        self._client: Any = None
        self._is_initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    async def initialize(self) -> None:
        self._is_initialized = True

    async def close(self) -> None:
        self._is_initialized = False

    @abstractmethod
    def get_capabilities(self) -> List[ModelCapability]:
        ...

    @abstractmethod
    async def complete(self, messages: Prompt, **kwargs: Any) -> LLMResponse:
        """Generate text.

        Args:
            messages: A prompt string or a list of messages
            **kwargs: Per-call overrides (see ``resolve_options``); also
                ``grounding=True`` for search grounding
        """

    async def generate_images(self, prompt: str, **kwargs: Any) -> ImageResponse:
        """Generate images; accepts ``number_of_images``, ``aspect_ratio`` and ``model``.

        Raises:
            OperationError: If the provider has no image support
        """
        raise OperationError(
            f"{type(self).__name__} does not support image generation",
            context={"provider": self.config.provider},
        )

    def resolve_options(self, **kwargs: Any) -> CallOptions:
        """Per-call keyword arguments layered over the configured defaults.

        Overrides that are None or empty fall back to the config, except
        ``temperature`` where only None does.
        """
        config = self.config
        temperature = kwargs.get("temperature")
        return CallOptions(
            model=kwargs.get("model") or config.model,
            temperature=config.temperature if temperature is None else temperature,
            max_tokens=kwargs.get("max_tokens") or config.max_tokens,
            system_prompt=kwargs.get("system_prompt") or config.system_prompt,
            response_format=kwargs.get("response_format") or config.response_format,
            grounding=bool(kwargs.get("grounding")),
        )

    @staticmethod
    def to_messages(messages: Prompt) -> List[LLMMessage]:
        if isinstance(messages, str):
            return [LLMMessage(role="user", content=messages)]
        return list(messages)

    async def __aenter__(self) -> AsyncLLMProvider:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
