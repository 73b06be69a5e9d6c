"""Common exception hierarchy for the franz packages.

Every package extends ``FranzError`` so callers can catch one root type while
still getting structured context about what went wrong.

Example:
    ```python
    from franz_common.exceptions import NotFoundError

    raise NotFoundError(
        "Stage not found",
        context={"stage_id": "summary", "workflow_id": "poem-generation"},
    )
    ```
"""

from typing import Any, Dict


class FranzError(Exception):
    """Base exception for all franz packages.

    Attributes:
        context: Dictionary with contextual information about the error.

    Args:
        message: Human-readable error message
        context: Optional dictionary with error context (ids, field names, etc.)
    """

    def __init__(self, message: str, context: Dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ValidationError(FranzError):
    """Raised when data or a definition fails validation checks."""

    pass


class ConfigurationError(FranzError):
    """Raised when configuration is invalid or missing.

    Example:
        ```python
        raise ConfigurationError(
            "Unknown provider",
            context={"provider": "openai", "available": ["echo", "gemini"]},
        )
        ```
    """

    pass


class NotFoundError(FranzError):
    """Raised when a requested item (workflow, stage, document, job) is not found."""

    pass


class OperationError(FranzError):
    """Raised when an operation fails.

    Covers failures that don't fit the other categories, such as state
    transition errors or failed provider calls.
    """

    pass


class SerializationError(FranzError):
    """Raised when serialization or deserialization fails."""

    pass


class TimeoutError(FranzError):
    """Raised when an operation exceeds its time limit.

    Example:
        ```python
        raise TimeoutError(
            "Export timed out",
            context={"job_id": "job-1", "timeout_seconds": 30},
        )
        ```
    """

    pass


__all__ = [
    "FranzError",
    "ValidationError",
    "ConfigurationError",
    "NotFoundError",
    "OperationError",
    "SerializationError",
    "TimeoutError",
]
