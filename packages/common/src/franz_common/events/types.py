"""Change notifications and the handles returned by ``subscribe``."""

from __future__ import annotations

import fnmatch
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

EventHandler = Callable[["Event"], Union[Awaitable[None], None]]


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(Enum):
    """What happened to the record a topic names."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Event:
    """One change to one record.

    Attributes:
        type: Kind of change
        topic: Record the change applies to, e.g. ``"jobs:doc-1:job-9"``
        payload: The record as it stands after the change, so subscribers
            never have to read the store back
        source: Name of the publishing component
        timestamp: When the change was published (aware UTC)
        event_id: Unique id, handy for correlating log lines
    """

    type: EventType
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)
    event_id: str = field(default_factory=_new_id)


@dataclass
class Subscription:
    """Handle for one ``subscribe`` call.

    A subscription listens either to one exact topic or, when ``pattern`` is
    set, to every topic matching that fnmatch pattern.

    Example:
        ```python
        async def on_job(event: Event) -> None:
            print(event.payload["status"])

        subscription = await event_bus.subscribe("jobs:doc-1:job-9", on_job)
        await subscription.cancel()
        ```
    """

    topic: str
    handler: EventHandler
    pattern: Optional[str] = None
    subscription_id: str = field(default_factory=_new_id)
    # Installed by the bus; cleared once cancelled
    _on_cancel: Optional[Callable[[str], Awaitable[None]]] = field(default=None, repr=False)

    def matches(self, topic: str) -> bool:
        if self.pattern:
            return fnmatch.fnmatchcase(topic, self.pattern)
        return topic == self.topic

    @property
    def active(self) -> bool:
        return self._on_cancel is not None

    async def cancel(self) -> None:
        """Stop delivery. Calling it again does nothing."""
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            await on_cancel(self.subscription_id)
