"""Single-process event bus."""

from __future__ import annotations

import inspect
import logging
from typing import Optional

from .types import Event, EventHandler, Subscription

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Delivers events to subscribers of the same process.

    Delivery happens inside ``publish``: matching handlers run one after
    another, in subscription order, before ``publish`` returns. A handler
    may cancel its own or another subscription while an event is being
    delivered; a cancelled subscription receives nothing further. Handler
    failures are logged and never reach the publisher.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._connected = False

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    async def connect(self) -> None:
        self._connected = True
        logger.debug("In-memory event bus connected")

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await subscription.cancel()
        self._connected = False
        logger.debug("In-memory event bus closed")

    async def publish(self, topic: str, event: Event) -> None:
        if not self._connected:
            logger.warning("Publishing %s on %s to a closed event bus", event.type.value, topic)

        targets = [s for s in self._subscriptions.values() if s.matches(topic)]
        delivered = 0
        for subscription in targets:
            if not subscription.active:
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(
                    "Handler of subscription %s failed on %s",
                    subscription.subscription_id[:8], topic,
                )
        logger.debug("%s on %s reached %d handler(s)", event.type.value, topic, delivered)

    async def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        pattern: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(
            topic=topic, handler=handler, pattern=pattern, _on_cancel=self._remove
        )
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug("Subscription %s on %s", subscription.subscription_id[:8], pattern or topic)
        return subscription

    async def _remove(self, subscription_id: str) -> None:
        if self._subscriptions.pop(subscription_id, None) is not None:
            logger.debug("Subscription %s cancelled", subscription_id[:8])
