"""Store abstraction for workflow instance persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..models import WorkflowInstance


class InstanceStore(Protocol):
    """Protocol for workflow instance persistence backends.

    Terminal instances are kept for audit; backends decide how long to
    retain them.
    """

    async def get(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def save(self, instance: WorkflowInstance) -> None:
        """Insert or replace an instance and update the active index."""

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered."""

    async def list_active(self) -> list[WorkflowInstance]:
        """Return all instances in a non-terminal status."""
