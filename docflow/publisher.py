"""Publishes outbound engine events on the configured transport."""

from __future__ import annotations

import logging
from typing import List, Optional

from .contracts import EngineEvent, EventData
from .models import WorkflowInstance
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventPublisher:
    """Wraps side-effect payloads in an :class:`EngineEvent` and publishes them.

    The topic is the event kind, so collaborators subscribe only to what they
    execute (e.g. a task service subscribes to ``task-requested``).
    """

    def __init__(self, transport: BaseTransport, history_size: int = 0) -> None:
        self._transport = transport
        self._history_size = history_size
        self.recent: List[EngineEvent] = []

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    async def emit(self, instance: WorkflowInstance, data: EventData) -> EngineEvent:
        event = EngineEvent(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            data=data,
            instance=instance.model_copy(deep=True),
        )
        await self._transport.publish(event.kind, event)
        logger.debug(f"Published {event.kind} for instance_id={instance.id}")
        if self._history_size:
            self.recent.append(event)
            del self.recent[: -self._history_size]
        return event

    async def emit_best_effort(
        self, instance: WorkflowInstance, data: EventData
    ) -> Optional[EngineEvent]:
        """Publish without letting a transport failure escape."""
        try:
            return await self.emit(instance, data)
        except Exception:
            logger.exception(
                f"Failed to publish {data.kind} for instance_id={instance.id}"
            )
            return None
