"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import EngineEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, delivery tag)
Delivery = Tuple[str, int]


class InMemoryTransport(BaseTransport[Delivery]):
    """Per-topic queues with at-least-once delivery.

    Delivered events are held in flight until acked; ``nack`` puts them back
    at the head of their queue. Each topic keeps at most ``max_queue``
    undelivered events (``None`` for no bound); the oldest is dropped first.
    """

    def __init__(self, poll_interval: float = 0.05, max_queue: Optional[int] = 1000) -> None:
        self.poll_interval = poll_interval
        self.max_queue = max_queue
        self.dropped = 0
        self._queues: Dict[str, Deque[EngineEvent]] = defaultdict(deque)
        self._in_flight: Dict[Delivery, EngineEvent] = {}
        self._tags = itertools.count(1)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: EngineEvent) -> None:
        async with self._lock:
            queue = self._queues[topic]
            if self.max_queue is not None and len(queue) >= self.max_queue:
                stale = queue.popleft()
                self.dropped += 1
                logger.warning(
                    f"Queue {topic} is full ({self.max_queue}); dropped undelivered "
                    f"event {stale.event_id} for instance_id={stale.instance_id}"
                )
            queue.append(event)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, EngineEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                queue = self._queues[topic]
                delivery = None
                if queue:
                    event = queue.popleft()
                    delivery = (topic, next(self._tags))
                    self._in_flight[delivery] = event
            if delivery is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield delivery, event

    async def ack(self, raw_message: Delivery) -> None:
        async with self._lock:
            self._in_flight.pop(raw_message, None)

    async def nack(self, raw_message: Delivery, requeue: bool = True) -> None:
        async with self._lock:
            event = self._in_flight.pop(raw_message, None)
            if event is not None and requeue:
                self._queues[raw_message[0]].appendleft(event)

    def pending(self, topic: str) -> List[EngineEvent]:
        """Queued events for ``topic`` not yet delivered, without consuming them."""
        return list(self._queues.get(topic, ()))

    def in_flight(self) -> List[EngineEvent]:
        return list(self._in_flight.values())
