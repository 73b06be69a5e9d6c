"""Common utilities shared by the franz packages.

- **Exceptions**: Unified exception hierarchy with context support
- **Transitions**: Declarative status-graph validation
- **Retry**: Retry executor with configurable backoff
- **Events**: Publish-subscribe event bus
- **Registry**: Named item registry
"""

from franz_common.exceptions import (
    ConfigurationError,
    FranzError,
    NotFoundError,
    OperationError,
    SerializationError,
    TimeoutError,
    ValidationError,
)
from franz_common.registry import Registry
from franz_common.retry import BackoffStrategy, RetryConfig, RetryExecutor
from franz_common.transitions import InvalidTransitionError, TransitionValidator

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Exceptions
    "FranzError",
    "ValidationError",
    "ConfigurationError",
    "NotFoundError",
    "OperationError",
    "SerializationError",
    "TimeoutError",
    # Transitions
    "InvalidTransitionError",
    "TransitionValidator",
    # Retry
    "BackoffStrategy",
    "RetryConfig",
    "RetryExecutor",
    # Registry
    "Registry",
]
