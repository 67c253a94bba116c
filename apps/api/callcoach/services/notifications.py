"""In-memory publish/subscribe channel for call progress events."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class Subscriber:
    """One listener on a call topic."""

    subscriber_id: str
    send: SendCallable


class NotificationChannel:
    """Fan out progress events to every subscriber of a call topic.

    Delivery is at-most-once: a subscriber whose send fails simply misses the
    event, and the publisher never sees the failure.
    """

    def __init__(self) -> None:
        self._topics: Dict[str, Dict[str, Subscriber]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, subscriber: Subscriber) -> int:
        """Register a subscriber and return the topic's subscriber count."""

        async with self._lock:
            subscribers = self._topics.setdefault(topic, {})
            subscribers[subscriber.subscriber_id] = subscriber
            return len(subscribers)

    async def unsubscribe(self, topic: str, subscriber_id: str) -> None:
        """Remove a subscriber, dropping the topic once it is empty."""

        async with self._lock:
            subscribers = self._topics.get(topic)
            if not subscribers:
                return
            subscribers.pop(subscriber_id, None)
            if not subscribers:
                self._topics.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, {}))

    async def publish(self, topic: str, event: BaseModel | dict[str, Any]) -> int:
        """Send ``event`` to the topic and return how many sends succeeded."""

        message = event.model_dump(mode="json") if isinstance(event, BaseModel) else dict(event)

        async with self._lock:
            subscribers = list(self._topics.get(topic, {}).values())

        if not subscribers:
            return 0

        results = await asyncio.gather(
            *(subscriber.send(message) for subscriber in subscribers),
            return_exceptions=True,
        )
        delivered = 0
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, BaseException):
                logger.debug("Dropped event for %s on %s: %s", subscriber.subscriber_id, topic, result)
            else:
                delivered += 1
        return delivered
