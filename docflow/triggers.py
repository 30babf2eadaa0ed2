"""Trigger evaluation: which definitions fire for an incoming event."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from .models import PRIORITY_RANK, DocumentEvent, Trigger, WorkflowDefinition

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS = ("greater_than", "less_than", "equals")


def _compare(actual: float, operator: Optional[str], expected: float) -> bool:
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    if operator == "equals":
        return actual == expected
    return False


def evaluate_trigger(trigger: Trigger, event: DocumentEvent) -> bool:
    """Return ``True`` when a single trigger matches ``event``."""
    condition = trigger.condition

    if trigger.type == "document_type":
        return event.category is not None and condition.value == event.category

    if trigger.type == "amount_threshold":
        if event.amount is None:
            return False
        return _compare(event.amount, condition.operator, float(condition.value))

    if trigger.type == "compliance_flag":
        if event.compliance_score is None:
            return False
        # deteriorating compliance is the usual case, hence less_than by default
        return _compare(
            event.compliance_score, condition.operator or "less_than", float(condition.value)
        )

    if trigger.type == "keyword_match":
        text = event.text or ""
        if not text or condition.value is None:
            return False
        if condition.operator == "regex":
            return re.search(str(condition.value), text, re.IGNORECASE) is not None
        return str(condition.value).lower() in text.lower()

    # manual triggers only fire through an explicit start
    return False


class TriggerEvaluator:
    """Pure evaluation of definition triggers against events."""

    def matches(self, definition: WorkflowDefinition, event: DocumentEvent) -> Optional[Trigger]:
        """Return the highest-priority matching trigger, or ``None``.

        A definition matches when any one of its triggers matches.
        """
        best: Optional[Trigger] = None
        for trigger in definition.triggers:
            if evaluate_trigger(trigger, event):
                if best is None or PRIORITY_RANK[trigger.priority] > PRIORITY_RANK[best.priority]:
                    best = trigger
        return best

    def match_triggers(
        self, definitions: Iterable[WorkflowDefinition], event: DocumentEvent
    ) -> List[WorkflowDefinition]:
        """Return active definitions that fire for ``event``, most urgent first."""
        matched: list[tuple[int, str, WorkflowDefinition]] = []
        for definition in definitions:
            if not definition.is_active:
                continue
            trigger = self.matches(definition, event)
            if trigger is not None:
                logger.debug(
                    f"Workflow {definition.id} matched document {event.document_id} "
                    f"via {trigger.type} trigger"
                )
                matched.append((-PRIORITY_RANK[trigger.priority], definition.id, definition))
        matched.sort(key=lambda item: (item[0], item[1]))
        return [definition for _, _, definition in matched]
