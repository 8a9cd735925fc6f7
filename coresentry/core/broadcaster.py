"""
Core Sentry - Event Broadcaster
===============================

Fans telemetry and decision events out to stream subscribers.
Publishing never blocks: a subscriber that falls behind loses its oldest
queued events.
"""

import asyncio
from typing import Optional

from coresentry.schemas.events import BaseEvent
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)


class EventBroadcaster:
    """In-process publish/subscribe over asyncio queues."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.queue_size)
        self._subscribers.append(queue)
        logger.debug("Stream subscriber added", extra={"subscribers": len(self._subscribers)})
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            logger.debug("Stream subscriber removed", extra={"subscribers": len(self._subscribers)})

    def publish(self, event: BaseEvent) -> None:
        """Deliver ``event`` to every subscriber without waiting."""
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
