"""Exception taxonomy for the docflow engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional


class WorkflowError(Exception):
    """Base class for all engine errors.

    Carries enough context (instance, step, timestamp) for the failure to be
    correlated with the instance history.
    """

    def __init__(
        self,
        message: str,
        *,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.instance_id = instance_id
        self.step_id = step_id
        self.timestamp = datetime.now(timezone.utc)


class ValidationError(WorkflowError):
    """A workflow definition or step configuration is malformed."""

    def __init__(self, message: str, field: str) -> None:
        super().__init__(message)
        self.field = field

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class DefinitionNotFound(WorkflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow definition {workflow_id} not found")
        self.workflow_id = workflow_id


class InstanceNotFound(WorkflowError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"Workflow instance {instance_id} not found", instance_id=instance_id
        )


class StepNotFound(WorkflowError):
    def __init__(self, workflow_id: str, step_id: str) -> None:
        super().__init__(f"Step {step_id} not found in workflow {workflow_id}", step_id=step_id)
        self.workflow_id = workflow_id


class DependencyNotSatisfied(WorkflowError):
    """A step was attempted before its prerequisites completed.

    Callers should retry once the missing steps are done.
    """

    def __init__(self, instance_id: str, step_id: str, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__(
            f"Step {step_id} depends on uncompleted steps: {', '.join(self.missing)}",
            instance_id=instance_id,
            step_id=step_id,
        )


class InvalidStateTransition(WorkflowError):
    """The requested operation is not allowed from the instance's current status."""

    def __init__(self, instance_id: str, status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} workflow instance {instance_id} in status {status}",
            instance_id=instance_id,
        )
        self.status = status
        self.operation = operation


class StepExecutionError(WorkflowError):
    """A step handler failed (script error, collaborator failure, timeout)."""


class ApprovalError(WorkflowError):
    """An approval decision cannot be accepted for the step."""
