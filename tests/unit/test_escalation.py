"""Escalation ladder evaluation."""

from datetime import datetime, timedelta, timezone

from docflow.escalation import EscalationEvaluator
from docflow.models import EscalationLevel, WorkflowInstance

STARTED = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)

LADDER = [
    EscalationLevel(level=1, timeout_hours=24, assignee="MANAGER"),
    EscalationLevel(level=2, timeout_hours=48, assignee="PARTNER"),
]


def _instance():
    return WorkflowInstance(
        id="inst-1", workflow_id="wf", document_id="doc", started_at=STARTED
    )


def test_no_level_before_first_timeout():
    evaluator = EscalationEvaluator()
    assert evaluator.evaluate(_instance(), LADDER, STARTED + timedelta(hours=23)) is None


def test_highest_elapsed_level_wins():
    evaluator = EscalationEvaluator()
    instance = _instance()

    assert evaluator.evaluate(instance, LADDER, STARTED + timedelta(hours=25)).level == 1
    assert evaluator.evaluate(instance, LADDER, STARTED + timedelta(hours=49)).level == 2
    # an irregular schedule still lands on the most urgent level reached
    assert evaluator.evaluate(instance, list(reversed(LADDER)), STARTED + timedelta(hours=72)).level == 2


def test_uses_injected_clock():
    evaluator = EscalationEvaluator(clock=lambda: STARTED + timedelta(hours=30))
    assert evaluator.elapsed_hours(_instance()) == 30
    assert evaluator.evaluate(_instance(), LADDER).assignee == "MANAGER"


def test_is_new_guards_against_refiring():
    instance = _instance()
    assert EscalationEvaluator.is_new(instance, "review", LADDER[0])

    instance.context.escalations["review"] = 1
    assert not EscalationEvaluator.is_new(instance, "review", LADDER[0])
    assert EscalationEvaluator.is_new(instance, "review", LADDER[1])


def test_short_ladder_reports_monotonic_levels():
    ladder = [
        EscalationLevel(level=1, timeout_hours=1, assignee="TEAM_LEAD"),
        EscalationLevel(level=2, timeout_hours=4, assignee="DIRECTOR"),
    ]
    evaluator = EscalationEvaluator()
    instance = _instance()

    assert evaluator.evaluate(instance, ladder, STARTED + timedelta(minutes=30)) is None
    assert evaluator.evaluate(instance, ladder, STARTED + timedelta(hours=2)).level == 1
    assert evaluator.evaluate(instance, ladder, STARTED + timedelta(hours=5)).level == 2
