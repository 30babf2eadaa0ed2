"""Time-based escalation ladders."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Sequence

from .models import EscalationLevel, WorkflowInstance, utcnow


class EscalationEvaluator:
    """Pull-based escalation: nothing is scheduled, callers ask when they need to."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def elapsed_hours(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        return (now - instance.started_at).total_seconds() / 3600

    def evaluate(
        self,
        instance: WorkflowInstance,
        ladder: Sequence[EscalationLevel],
        now: Optional[datetime] = None,
    ) -> Optional[EscalationLevel]:
        """Return the highest ladder level whose timeout has elapsed, or ``None``.

        Walking the ladder from the top means an irregular evaluation schedule
        still reports the most urgent level reached.
        """
        elapsed = self.elapsed_hours(instance, now)
        for level in sorted(ladder, key=lambda item: item.level, reverse=True):
            if elapsed >= level.timeout_hours:
                return level
        return None

    @staticmethod
    def is_new(instance: WorkflowInstance, step_id: str, level: EscalationLevel) -> bool:
        """True when ``level`` is above anything already fired for the step."""
        return level.level > instance.context.escalations.get(step_id, 0)
