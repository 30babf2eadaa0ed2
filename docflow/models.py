"""Data models for workflow definitions and running instances."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Reserved step id used for lifecycle history entries (start, pause, cancel...)
LIFECYCLE_STEP_ID = "workflow"

Category = Literal["financial", "legal", "compliance", "audit", "general"]
TriggerType = Literal[
    "document_type", "amount_threshold", "compliance_flag", "keyword_match", "manual"
]
Operator = Literal["equals", "greater_than", "less_than", "contains", "regex"]
Priority = Literal["low", "medium", "high", "critical"]
StepType = Literal[
    "approval",
    "notification",
    "document_routing",
    "task_creation",
    "validation",
    "escalation",
    "automation",
]
ActionType = Literal[
    "update_status",
    "send_notification",
    "create_task",
    "route_document",
    "trigger_webhook",
    "log_event",
]
ApprovalType = Literal["single", "sequential", "parallel", "majority"]
Decision = Literal["approved", "rejected", "delegated", "pending"]
HistoryStatus = Literal["started", "completed", "failed", "skipped"]
InstanceStatus = Literal[
    "pending", "in_progress", "completed", "failed", "cancelled", "paused"
]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
EXECUTABLE_STATUSES = frozenset({"pending", "in_progress"})

PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Definition side


class TriggerCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: Optional[str] = None
    operator: Optional[Operator] = None
    value: Any = None


class Trigger(BaseModel):
    """Predicate over an incoming event deciding whether a definition fires."""

    model_config = ConfigDict(frozen=True)

    type: TriggerType
    condition: TriggerCondition = TriggerCondition()
    priority: Priority = "medium"


class EscalationLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    timeout_hours: float
    assignee: str
    template: Optional[str] = None


class ApprovalConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["approval"] = "approval"
    approval_type: ApprovalType = "single"
    approvers: List[str] = Field(default_factory=list)
    due_hours: Optional[float] = None
    escalation_levels: List[EscalationLevel] = Field(default_factory=list)


class NotificationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notification"] = "notification"
    template: str = "Workflow notification"
    recipients: List[str] = Field(default_factory=list)


class RoutingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["document_routing"] = "document_routing"
    destination: str
    queue: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class TaskConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["task_creation"] = "task_creation"
    template: str = "Workflow Task"
    assignee: Optional[str] = None
    due_hours: Optional[float] = None


class ValidationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["validation"] = "validation"
    rules: List[str] = Field(default_factory=list)


class EscalationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["escalation"] = "escalation"
    levels: List[EscalationLevel] = Field(default_factory=list)


class AutomationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["automation"] = "automation"
    script: str
    timeout_seconds: Optional[float] = None


StepConfig = Annotated[
    Union[
        ApprovalConfig,
        NotificationConfig,
        RoutingConfig,
        TaskConfig,
        ValidationConfig,
        EscalationConfig,
        AutomationConfig,
    ],
    Field(discriminator="kind"),
]


class Action(BaseModel):
    """Side effect run after a step succeeds or fails."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    config: Dict[str, Any] = Field(default_factory=dict)


class Assignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["user", "role", "group", "auto_assign"] = "user"
    target: str
    fallback: Optional[str] = None


class StepSpec(BaseModel):
    """One step of a workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    type: StepType
    config: StepConfig
    dependencies: List[str] = Field(default_factory=list)
    on_success: List[Action] = Field(default_factory=list)
    on_failure: List[Action] = Field(default_factory=list)
    assigned_to: Optional[Assignment] = None
    max_retries: int = Field(default=0, ge=0)
    timeout_seconds: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _default_config_kind(cls, data: Any) -> Any:
        # Allow configs written without an explicit ``kind``: it follows the step type.
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            config = data["config"]
            if "kind" not in config and "type" in data:
                data = {**data, "config": {**config, "kind": data["type"]}}
        elif isinstance(data, dict) and data.get("config") is None and "type" in data:
            data = {**data, "config": {"kind": data["type"]}}
        return data


class WorkflowMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    tags: List[str] = Field(default_factory=list)
    business_rules: List[str] = Field(default_factory=list)
    compliance_requirements: List[str] = Field(default_factory=list)
    estimated_duration: float = 60  # minutes
    complexity: Literal["simple", "moderate", "complex"] = "simple"
    risk_level: Priority = "low"


class WorkflowDefinition(BaseModel):
    """Versioned template of triggers and dependent steps.

    Instances are frozen once published to the catalog; updates produce a new
    object with a bumped version.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: Category = "general"
    triggers: List[Trigger] = Field(default_factory=list)
    steps: List[StepSpec]
    metadata: WorkflowMetadata = WorkflowMetadata()
    is_active: bool = True
    version: str = "1.0.0"
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    last_modified: datetime = Field(default_factory=utcnow)

    def step(self, step_id: str) -> Optional[StepSpec]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ----------------------------------------------------------------------
# Inbound event


class DocumentEvent(BaseModel):
    """Finished document/entity assessment handed to the engine."""

    document_id: str
    category: Optional[str] = None
    amount: Optional[float] = None
    compliance_score: Optional[float] = None
    text: Optional[str] = None
    actor_id: str = "system"
    organization_id: str = "default"
    payload: Dict[str, Any] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Runtime side


class HistoryEntry(BaseModel):
    """Immutable audit record. History is append-only."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
    actor_id: str
    status: HistoryStatus
    duration: float = 0.0  # seconds
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApprovalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    approver_id: str
    decision: Decision
    timestamp: datetime = Field(default_factory=utcnow)
    comments: Optional[str] = None
    delegated_to: Optional[str] = None


class WorkflowMetrics(BaseModel):
    total_duration: float = 0.0  # seconds
    step_durations: Dict[str, float] = Field(default_factory=dict)
    approval_times: Dict[str, float] = Field(default_factory=dict)
    bottlenecks: List[str] = Field(default_factory=list)
    efficiency: float = 0.0
    compliance_score: float = 1.0


class WorkflowContext(BaseModel):
    document: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    assignments: Dict[str, str] = Field(default_factory=dict)
    deadlines: Dict[str, datetime] = Field(default_factory=dict)
    # highest escalation level already fired, per step
    escalations: Dict[str, int] = Field(default_factory=dict)
    # approval records already spent by a failed round, per step
    approval_rounds: Dict[str, int] = Field(default_factory=dict)


class WorkflowInstance(BaseModel):
    """One running execution of a definition against a document."""

    id: str
    workflow_id: str
    workflow_version: str = "1.0.0"
    document_id: str
    organization_id: str = "default"
    initiated_by: str = "system"
    status: InstanceStatus = "pending"
    current_step: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    history: List[HistoryEntry] = Field(default_factory=list)
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    metrics: WorkflowMetrics = Field(default_factory=WorkflowMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step_status(self, step_id: str) -> Optional[HistoryStatus]:
        """Return the most recent history status recorded for ``step_id``."""
        for entry in reversed(self.history):
            if entry.step_id == step_id:
                return entry.status
        return None

    def completed_steps(self) -> set[str]:
        return {
            entry.step_id
            for entry in self.history
            if entry.status == "completed" and entry.step_id != LIFECYCLE_STEP_ID
        }

    def step_started_at(self, step_id: str) -> Optional[datetime]:
        for entry in reversed(self.history):
            if entry.step_id == step_id and entry.status == "started":
                return entry.timestamp
        return None

    def approvals_for(self, step_id: str) -> List[ApprovalRecord]:
        return [record for record in self.approvals if record.step_id == step_id]

    def open_approvals(self, step_id: str) -> List[ApprovalRecord]:
        """Decisions for ``step_id`` made since its last failed round."""
        return self.approvals_for(step_id)[self.context.approval_rounds.get(step_id, 0) :]
