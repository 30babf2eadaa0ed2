"""Instance state machine and completion detection."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import InvalidStateTransition
from .models import (
    LIFECYCLE_STEP_ID,
    HistoryEntry,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"in_progress", "paused", "failed", "cancelled"}),
    "in_progress": frozenset({"completed", "failed", "paused", "cancelled"}),
    "paused": frozenset({"in_progress", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

_ACTIONS = {
    "in_progress": "started",
    "completed": "completed",
    "failed": "failed",
    "paused": "paused",
    "cancelled": "cancelled",
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    instance: WorkflowInstance,
    target: InstanceStatus,
    actor_id: str,
    now: datetime,
    notes: Optional[str] = None,
    operation: Optional[str] = None,
) -> HistoryEntry:
    """Move ``instance`` to ``target`` and append exactly one history entry.

    Raises:
        InvalidStateTransition: when the move is not part of the state machine.
    """
    current = instance.status
    if not can_transition(current, target):
        raise InvalidStateTransition(instance.id, current, operation or f"move to {target}")

    action = _ACTIONS[target]
    if current == "paused" and target == "in_progress":
        action = "resumed"

    entry = HistoryEntry(
        step_id=LIFECYCLE_STEP_ID,
        action=action,
        timestamp=now,
        actor_id=actor_id,
        status="failed" if target == "failed" else "completed",
        duration=(now - instance.started_at).total_seconds(),
        notes=notes,
        metadata={"from": current, "to": target},
    )
    instance.status = target
    instance.history.append(entry)
    if target in ("completed", "failed", "cancelled"):
        instance.completed_at = now
        instance.metrics.total_duration = (now - instance.started_at).total_seconds()
    return entry


def detect_outcome(
    instance: WorkflowInstance, definition: WorkflowDefinition
) -> Optional[InstanceStatus]:
    """Return ``completed`` once every step has a completed entry, else ``None``.

    Failure is decided by the step executor when a step exhausts its retries,
    so it is not re-derived here.
    """
    if instance.status != "in_progress":
        return None
    done = instance.completed_steps()
    if all(step.id in done for step in definition.steps):
        return "completed"
    return None
