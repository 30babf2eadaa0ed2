"""In-memory implementation of the instance store."""

from __future__ import annotations

from typing import Dict, Optional, Set

from ..models import WorkflowInstance
from .repository import InstanceStore


class InMemoryInstanceStore(InstanceStore):
    """Store workflow instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Instances are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._active: Set[str] = set()

    # ------------------------------------------------------------------
    async def get(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def save(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)
        if instance.is_terminal:
            self._active.discard(instance.id)
        else:
            self._active.add(instance.id)

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if (workflow_id is None or instance.workflow_id == workflow_id)
            and (status is None or instance.status == status)
            and (organization_id is None or instance.organization_id == organization_id)
        ]

    async def list_active(self) -> list[WorkflowInstance]:
        return [
            self._instances[instance_id].model_copy(deep=True)
            for instance_id in sorted(self._active)
        ]
