"""
In-process event bus for workflow lifecycle events
"""
import asyncio
from typing import Any, Callable, Dict, List
from dataclasses import dataclass, field
from datetime import datetime
import logging


logger = logging.getLogger(__name__)

# Topic receiving every lifecycle event regardless of type
ALL_EVENTS = "workflow.*"


def topic_for(event_type: str) -> str:
    return f"workflow.{event_type}"


@dataclass
class Event:
    """Published envelope"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """Topic based pub/sub; subscriber failures are logged, never raised"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """Publish an event to ``topic`` and the catch-all topic"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))
            if topic != ALL_EVENTS:
                subscribers.extend(self.subscribers.get(ALL_EVENTS, []))

        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """Subscribe ``handler`` (sync or async) to ``topic``"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        async with self._lock:
            if topic in self.subscribers and handler in self.subscribers[topic]:
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
