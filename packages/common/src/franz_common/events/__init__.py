"""Event bus abstraction for observing record changes.

Example:
    ```python
    from franz_common.events import create_event_bus, Event, EventType

    bus = create_event_bus({"backend": "memory"})
    await bus.connect()

    async def on_job(event: Event) -> None:
        print(event.payload["status"])

    subscription = await bus.subscribe("jobs:doc-1:job-9", on_job)
    await bus.publish("jobs:doc-1:job-9", Event(
        type=EventType.UPDATED,
        topic="jobs:doc-1:job-9",
        payload={"status": "running"},
    ))
    await subscription.cancel()
    await bus.close()
    ```
"""

from __future__ import annotations

from .bus import EventBus, create_event_bus
from .memory import InMemoryEventBus
from .types import Event, EventHandler, EventType, Subscription

__all__ = [
    "EventBus",
    "create_event_bus",
    "Event",
    "EventHandler",
    "EventType",
    "Subscription",
    "InMemoryEventBus",
]
