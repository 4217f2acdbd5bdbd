"""
Real-time Broadcast.

============================================================
PURPOSE
============================================================
Fan out events to connected dashboard clients.

Topics:
- alerts          alert:created events
- employee:<id>   alert:escalated events for one responder

Publishing never blocks: a subscriber whose queue is full
misses the event.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set


logger = logging.getLogger(__name__)


ALERTS_TOPIC = "alerts"


def employee_topic(employee_id: str) -> str:
    return f"employee:{employee_id}"


class Broadcaster(ABC):
    """Publishes JSON-serializable payloads to a topic."""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Returns the number of subscribers the payload was handed to."""
        pass


class Subscription:
    """One subscriber's view of a topic."""

    def __init__(self, broadcaster: "InProcessBroadcaster", topic: str, maxsize: int):
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._broadcaster = broadcaster

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class InProcessBroadcaster(Broadcaster):
    """
    Topic fan-out over per-subscriber asyncio queues.

    Suitable for a single process; a websocket server pulls from
    its subscriptions and forwards to the client.
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic, self._queue_size)
        self._subscribers.setdefault(topic, set()).add(subscription)
        logger.debug(f"Subscribed to {topic} ({len(self._subscribers[topic])} subscribers)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        delivered = 0
        subscribers: List[Subscription] = list(self._subscribers.get(topic, ()))
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full on {topic}, dropping {payload.get('type')}")
        return delivered


__all__ = [
    "ALERTS_TOPIC",
    "employee_topic",
    "Broadcaster",
    "Subscription",
    "InProcessBroadcaster",
]
