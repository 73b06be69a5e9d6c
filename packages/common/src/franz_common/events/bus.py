"""EventBus protocol definition."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from franz_common.exceptions import ConfigurationError

if TYPE_CHECKING:
    from .types import Event, EventHandler, Subscription


@runtime_checkable
class EventBus(Protocol):
    """Publish-subscribe interface used to observe record changes.

    Job stores publish every write on a per-record topic; reconcilers
    subscribe to the topic of the record they are tracking. Backends are
    chosen from configuration through ``create_event_bus``.
    """

    async def connect(self) -> None:
        """Initialize the event bus. Should be idempotent."""
        ...

    async def close(self) -> None:
        """Cancel all subscriptions and release resources."""
        ...

    async def publish(self, topic: str, event: Event) -> None:
        """Publish an event to every subscriber of ``topic``."""
        ...

    async def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        pattern: str | None = None,
    ) -> Subscription:
        """Subscribe ``handler`` to a topic (or an fnmatch ``pattern``)."""
        ...


def create_event_bus(config: dict[str, Any]) -> EventBus:
    """Create an event bus from configuration.

    Args:
        config: Configuration dict with a ``backend`` key. Only ``memory`` is
            available.

    Raises:
        ConfigurationError: If the backend type is not recognized
    """
    from .memory import InMemoryEventBus

    backend = config.get("backend", "memory")

    if backend == "memory":
        return InMemoryEventBus()
    raise ConfigurationError(
        f"Unknown event bus backend: {backend}. Available backends: memory",
        context={"backend": backend},
    )
