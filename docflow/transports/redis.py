"""Redis Streams transport so collaborators in other processes see engine events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
    from redis.exceptions import ResponseError
except ImportError:
    redis = None

from ..contracts import EngineEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (stream key, entry id)
StreamEntry = Tuple[str, str]


class RedisTransport(BaseTransport[StreamEntry]):
    """One stream per event kind, read through a consumer group.

    Unacknowledged entries stay in the group's pending list, so a collaborator
    that crashes mid-delivery sees the event again after ``nack``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "docflow",
        group: str = "docflow-collaborators",
        consumer: str = "worker-1",
        max_len: Optional[int] = 10_000,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.group = group
        self.consumer = consumer
        self.max_len = max_len
        self._redis: Optional[Any] = None
        self._groups: set[str] = set()

    def stream_key(self, topic: str) -> str:
        return f"{self.prefix}:events:{topic}"

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._groups.clear()

    async def publish(self, topic: str, event: EngineEvent) -> None:
        """Append ``event`` to the stream for ``topic``."""
        await self.connect()
        fields = {
            "event_id": event.event_id,
            "instance_id": event.instance_id,
            "body": event.to_json(),
        }
        kwargs = {"maxlen": self.max_len, "approximate": True} if self.max_len else {}
        await self._redis.xadd(self.stream_key(topic), fields, **kwargs)

    async def _ensure_group(self, key: str) -> None:
        if key in self._groups:
            return
        try:
            await self._redis.xgroup_create(key, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            # BUSYGROUP: another consumer created it first
            if "BUSYGROUP" not in str(exc):
                raise
        self._groups.add(key)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[StreamEntry, EngineEvent]]:
        """Yield events delivered to this consumer, pending ones first."""
        await self.connect()
        key = self.stream_key(topic)
        await self._ensure_group(key)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        # "0" replays entries delivered to us but never acked, ">" reads new ones
        cursor = "0"

        while deadline is None or loop.time() < deadline:
            response = await self._redis.xreadgroup(
                self.group, self.consumer, {key: cursor}, count=10, block=1000
            )
            entries = response[0][1] if response else []
            if cursor != ">":
                if not entries:
                    cursor = ">"
                    continue
                cursor = entries[-1][0]

            for entry_id, fields in entries:
                try:
                    event = EngineEvent.from_json(fields["body"])
                except (KeyError, ValueError) as exc:
                    logger.error(f"Dropping malformed entry {entry_id} on {key}: {exc}")
                    await self._redis.xack(key, self.group, entry_id)
                    continue
                yield (key, entry_id), event

    async def ack(self, raw_message: StreamEntry) -> None:
        key, entry_id = raw_message
        await self._redis.xack(key, self.group, entry_id)

    async def nack(self, raw_message: StreamEntry, requeue: bool = True) -> None:
        """Leave the entry pending for redelivery, or drop it when ``requeue`` is false."""
        if not requeue:
            await self.ack(raw_message)
