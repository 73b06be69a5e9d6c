"""Helpers for scripting EchoProvider responses in tests.

Example:
    ```python
    from franz_llm.testing import json_response, rate_limit_error, text_response

    provider.set_responses([
        rate_limit_error(),
        json_response({"tone": "formal"}),
        text_response("Final draft"),
    ])
    ```
"""

from __future__ import annotations

import json
from typing import Any

from .base import LLMResponse
from .errors import LLMError


def text_response(
    content: str,
    *,
    model: str = "test-model",
    usage: dict[str, int] | None = None,
    grounding_metadata: dict[str, Any] | None = None,
) -> LLMResponse:
    """Create a plain text LLMResponse."""
    return LLMResponse(
        content=content,
        model=model,
        finish_reason="stop",
        usage=usage,
        grounding_metadata=grounding_metadata,
    )


def json_response(data: Any, *, fenced: bool = False, model: str = "test-model") -> LLMResponse:
    """Create a response whose content is JSON, optionally in a ```json fence."""
    body = json.dumps(data, indent=2)
    if fenced:
        body = f"```json\n{body}\n```"
    return text_response(body, model=model)


def rate_limit_error(message: str = "Resource has been exhausted") -> LLMError:
    return LLMError(message, status_code=429, code="RESOURCE_EXHAUSTED", provider="test")


def server_error(status_code: int = 503) -> LLMError:
    return LLMError("The model is overloaded", status_code=status_code, provider="test")


def client_error(message: str = "Invalid request") -> LLMError:
    return LLMError(message, status_code=400, code="INVALID_ARGUMENT", provider="test")
