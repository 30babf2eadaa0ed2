"""Outbound event contracts published by the docflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import WorkflowInstance


class NotificationRequested(BaseModel):
    kind: Literal["notification-requested"] = "notification-requested"
    step_id: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    message: str


class DocumentRouted(BaseModel):
    kind: Literal["document-routed"] = "document-routed"
    step_id: Optional[str] = None
    document_id: str
    routing_config: Dict[str, Any] = Field(default_factory=dict)


class TaskRequested(BaseModel):
    kind: Literal["task-requested"] = "task-requested"
    title: str
    assignee: Optional[str] = None
    document_id: str
    instance_id: str
    step_id: str
    due_at: Optional[datetime] = None


class Escalated(BaseModel):
    kind: Literal["escalated"] = "escalated"
    instance_id: str
    step_id: str
    level: int
    assignee: str
    message: Optional[str] = None


class ApprovalRequested(BaseModel):
    kind: Literal["approval-requested"] = "approval-requested"
    step_id: str
    approvers: List[str] = Field(default_factory=list)
    approval_type: str = "single"


class ApprovalRecorded(BaseModel):
    kind: Literal["approval-recorded"] = "approval-recorded"
    step_id: str
    approver_id: str
    decision: str
    comments: Optional[str] = None
    delegated_to: Optional[str] = None


class WebhookRequested(BaseModel):
    kind: Literal["webhook-requested"] = "webhook-requested"
    step_id: Optional[str] = None
    url: Optional[str] = None
    body: Dict[str, Any] = Field(default_factory=dict)


class EventLogged(BaseModel):
    kind: Literal["event-logged"] = "event-logged"
    step_id: Optional[str] = None
    event: Dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    kind: Literal["step-completed", "step-failed"]
    step_id: str
    result: Any = None
    error: Optional[str] = None


class InstanceLifecycle(BaseModel):
    kind: Literal[
        "instance-started",
        "instance-completed",
        "instance-failed",
        "instance-paused",
        "instance-resumed",
        "instance-cancelled",
    ]
    reason: Optional[str] = None


EventData = Annotated[
    Union[
        NotificationRequested,
        DocumentRouted,
        TaskRequested,
        Escalated,
        ApprovalRequested,
        ApprovalRecorded,
        WebhookRequested,
        EventLogged,
        StepOutcome,
        InstanceLifecycle,
    ],
    Field(discriminator="kind"),
]


class EngineEvent(BaseModel):
    """Envelope for every side-effect request leaving the engine.

    Carries the instance snapshot taken when the event was produced so
    collaborators and observers never need to call back into the engine.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    instance_id: str
    workflow_id: str
    data: EventData
    instance: WorkflowInstance

    @property
    def kind(self) -> str:
        return self.data.kind

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EngineEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
