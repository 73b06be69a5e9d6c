"""Echo provider for testing and offline runs."""

from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import asdict
from typing import Any, Deque, Dict, List, Union

from ..base import (
    AsyncLLMProvider,
    GeneratedImage,
    ImageResponse,
    LLMConfig,
    LLMResponse,
    ModelCapability,
    Prompt,
)

# Minimal PNG signature so generated bytes look like an image to sniffers
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class EchoProvider(AsyncLLMProvider):
    """Deterministic provider that echoes the last user message.

    Responses can be scripted with ``set_responses``; queued entries are
    returned (or raised, for exceptions) in order before falling back to
    echoing. Every call is recorded in ``calls`` for assertions.

    Options:
        echo_prefix: Prefix added to echoed content (default ``"Echo: "``)
        mock_tokens: Whether to report token usage (default True)
    """

    def __init__(self, config: Union[LLMConfig, Dict[str, Any]]):
        super().__init__(config)
        self.echo_prefix = self.config.options.get("echo_prefix", "Echo: ")
        self.mock_tokens = self.config.options.get("mock_tokens", True)
        self._responses: Deque[Union[LLMResponse, str, BaseException]] = deque()
        self.calls: List[Dict[str, Any]] = []

    def set_responses(self, responses: List[Union[LLMResponse, str, BaseException]]) -> None:
        """Queue scripted responses, replacing any still queued."""
        self._responses = deque(responses)

    def add_response(self, response: Union[LLMResponse, str, BaseException]) -> None:
        self._responses.append(response)

    def get_capabilities(self) -> List[ModelCapability]:
        return [
            ModelCapability.TEXT_GENERATION,
            ModelCapability.JSON_MODE,
            ModelCapability.GROUNDING,
            ModelCapability.IMAGE_GENERATION,
        ]

    @staticmethod
    def _count_tokens(text: str) -> int:
        # Rough approximation: 1 token ~= 4 characters
        return max(1, len(text) // 4)

    def _usage(self, prompt: str, completion: str) -> Dict[str, int] | None:
        if not self.mock_tokens:
            return None
        prompt_tokens = self._count_tokens(prompt)
        completion_tokens = self._count_tokens(completion)
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    async def complete(
        self,
        messages: Prompt,
        **kwargs: Any,
    ) -> LLMResponse:
        if not self._is_initialized:
            await self.initialize()

        message_list = self.to_messages(messages)
        options = self.resolve_options(**kwargs)
        self.calls.append({"kind": "complete", "messages": message_list, "options": asdict(options)})

        prompt_text = "\n".join(msg.content for msg in message_list)

        if self._responses:
            scripted = self._responses.popleft()
            if isinstance(scripted, BaseException):
                raise scripted
            if isinstance(scripted, LLMResponse):
                return scripted
            content = scripted
        else:
            user_messages = [msg for msg in message_list if msg.role == "user"]
            echoed = user_messages[-1].content if user_messages else "(no user message)"
            content = self.echo_prefix + echoed
            if options.wants_json:
                content = json.dumps({"echo": content})

        grounding = None
        if options.grounding:
            grounding = {
                "web_search_queries": [prompt_text[:80]],
                "grounding_chunks": [],
            }

        return LLMResponse(
            content=content,
            model=options.model or "echo-model",
            finish_reason="stop",
            usage=self._usage(prompt_text, content),
            grounding_metadata=grounding,
        )

    async def generate_images(self, prompt: str, **kwargs: Any) -> ImageResponse:
        if not self._is_initialized:
            await self.initialize()

        count = int(kwargs.get("number_of_images") or 1)
        self.calls.append({"kind": "images", "prompt": prompt, "options": dict(kwargs)})

        images = [
            GeneratedImage(
                data=_PNG_SIGNATURE + hashlib.sha256(f"{prompt}:{i}".encode("utf-8")).digest(),
                mime_type="image/png",
            )
            for i in range(count)
        ]
        return ImageResponse(
            images=images,
            model=kwargs.get("model") or self.config.image_model or "echo-image-model",
            prompt=prompt,
            metadata={"aspect_ratio": kwargs.get("aspect_ratio", "1:1")},
        )
