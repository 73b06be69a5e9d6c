"""Google Gemini provider.

Uses the ``google-genai`` SDK for text generation (optionally grounded with
Google Search) and Imagen image generation. The SDK is imported when the
provider initializes, so the package only needs it when Gemini is selected.

Example:
    ```python
    from franz_llm.providers import GeminiProvider

    llm = GeminiProvider({"provider": "gemini", "model": "gemini-2.5-flash"})
    async with llm:
        response = await llm.complete("Summarize today's AI news", grounding=True)
    ```
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Union

from ..base import (
    AsyncLLMProvider,
    GeneratedImage,
    ImageResponse,
    LLMConfig,
    LLMResponse,
    ModelCapability,
    Prompt,
)
from ..errors import LLMError

logger = logging.getLogger(__name__)


class GeminiProvider(AsyncLLMProvider):
    """Gemini text and Imagen image generation through ``google-genai``."""

    def __init__(self, config: Union[LLMConfig, Dict[str, Any]]):
        super().__init__(config)
        self._types: Any = None
        self._errors: Any = None

    async def initialize(self) -> None:
        """Create the genai client."""
        try:
            from google import genai
            from google.genai import errors, types
        except ImportError as e:
            raise ImportError(
                "google-genai package not installed. "
                "Install with: pip install 'franz-ai-writer[gemini]'"
            ) from e

        api_key = (
            self.config.api_key
            or os.environ.get("GEMINI_API_KEY")
            or os.environ.get("GOOGLE_API_KEY")
        )
        if not api_key:
            raise LLMError("Gemini API key not provided", code="unauthenticated", provider="gemini")

        self._client = genai.Client(api_key=api_key)
        self._types = types
        self._errors = errors
        self._is_initialized = True

    async def close(self) -> None:
        self._client = None
        self._is_initialized = False

    def get_capabilities(self) -> List[ModelCapability]:
        return [
            ModelCapability.TEXT_GENERATION,
            ModelCapability.JSON_MODE,
            ModelCapability.GROUNDING,
            ModelCapability.IMAGE_GENERATION,
        ]

    def _wrap_error(self, error: Exception) -> LLMError:
        if self._errors is not None and isinstance(error, self._errors.APIError):
            return LLMError(
                getattr(error, "message", None) or str(error),
                status_code=getattr(error, "code", None),
                code=getattr(error, "status", None),
                provider="gemini",
            )
        return LLMError(str(error), provider="gemini")

    async def complete(
        self,
        messages: Prompt,
        **kwargs: Any,
    ) -> LLMResponse:
        if not self._is_initialized:
            await self.initialize()

        types = self._types
        options = self.resolve_options(**kwargs)
        message_list = self.to_messages(messages)

        system_parts = [m.content for m in message_list if m.role == "system"]
        if options.system_prompt:
            system_parts.insert(0, options.system_prompt)

        contents = [
            types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[types.Part.from_text(text=m.content)],
            )
            for m in message_list
            if m.role != "system"
        ]

        config_args: Dict[str, Any] = {"temperature": options.temperature}
        if options.max_tokens:
            config_args["max_output_tokens"] = options.max_tokens
        if system_parts:
            config_args["system_instruction"] = "\n\n".join(system_parts)
        if options.grounding:
            config_args["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        elif options.wants_json:
            # Search grounding cannot be combined with a JSON response type
            config_args["response_mime_type"] = "application/json"

        logger.debug(
            "Gemini generate_content model=%s grounding=%s",
            options.model, options.grounding,
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=options.model,
                contents=contents,
                config=types.GenerateContentConfig(**config_args),
            )
        except Exception as e:
            raise self._wrap_error(e) from e

        usage = None
        if response.usage_metadata is not None:
            meta = response.usage_metadata
            usage = {
                "prompt_tokens": meta.prompt_token_count or 0,
                "completion_tokens": meta.candidates_token_count or 0,
                "total_tokens": meta.total_token_count or 0,
            }

        grounding = None
        finish_reason = None
        if response.candidates:
            candidate = response.candidates[0]
            finish_reason = str(candidate.finish_reason) if candidate.finish_reason else None
            if candidate.grounding_metadata is not None:
                grounding = candidate.grounding_metadata.model_dump(exclude_none=True)

        return LLMResponse(
            content=response.text or "",
            model=options.model,
            finish_reason=finish_reason,
            usage=usage,
            grounding_metadata=grounding,
        )

    async def generate_images(self, prompt: str, **kwargs: Any) -> ImageResponse:
        if not self._is_initialized:
            await self.initialize()

        types = self._types
        model = kwargs.get("model") or self.config.image_model or "imagen-4.0-generate-001"
        config_args: Dict[str, Any] = {
            "number_of_images": int(kwargs.get("number_of_images") or 1),
        }
        if kwargs.get("aspect_ratio"):
            config_args["aspect_ratio"] = kwargs["aspect_ratio"]

        try:
            response = await self._client.aio.models.generate_images(
                model=model,
                prompt=prompt,
                config=types.GenerateImagesConfig(**config_args),
            )
        except Exception as e:
            raise self._wrap_error(e) from e

        images = [
            GeneratedImage(
                data=generated.image.image_bytes,
                mime_type=generated.image.mime_type or "image/png",
            )
            for generated in (response.generated_images or [])
            if generated.image is not None and generated.image.image_bytes
        ]
        if not images:
            raise LLMError("Image generation returned no images", provider="gemini")

        return ImageResponse(images=images, model=model, prompt=prompt, metadata=config_args)
