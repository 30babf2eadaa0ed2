"""Instance lifecycle through the engine: ordering, idempotency and control operations."""

import asyncio
from datetime import timedelta

import pytest

from docflow.errors import (
    DefinitionNotFound,
    DependencyNotSatisfied,
    InstanceNotFound,
    InvalidStateTransition,
    StepNotFound,
)
from docflow.models import DocumentEvent

ONBOARDING = {
    "id": "vendor_onboarding",
    "name": "Vendor Onboarding",
    "triggers": [{"type": "document_type", "condition": {"value": "vendor_form"}}],
    "steps": [
        {
            "id": "collect_kyc",
            "type": "task_creation",
            "config": {"template": "Collect KYC for {document_id}", "due_hours": 48},
            "assigned_to": {"type": "role", "target": "", "fallback": "AP_CLERK"},
        },
        {
            "id": "notify_ap",
            "type": "notification",
            "config": {"template": "Vendor {document_id} onboarded"},
            "dependencies": ["collect_kyc"],
            "assigned_to": {"type": "user", "target": "ap_lead"},
        },
    ],
}

MANUAL_ONLY = {
    "id": "manual_audit",
    "name": "Manual Audit",
    "category": "audit",
    "triggers": [{"type": "manual"}],
    "steps": [{"id": "sample", "type": "notification"}],
}


@pytest.fixture
def onboarding_engine(make_engine):
    return make_engine([ONBOARDING, MANUAL_ONLY])


async def _start(engine):
    [instance_id] = await engine.trigger_workflow(
        DocumentEvent(document_id="VND-1", category="vendor_form", actor_id="clerk")
    )
    return instance_id


@pytest.mark.asyncio
async def test_dependent_step_before_prerequisite_is_rejected(onboarding_engine):
    instance_id = await _start(onboarding_engine)
    before = await onboarding_engine.get_workflow_instance(instance_id)

    with pytest.raises(DependencyNotSatisfied) as exc_info:
        await onboarding_engine.execute_workflow_step(instance_id, "notify_ap", "clerk")

    assert exc_info.value.missing == ["collect_kyc"]
    assert await onboarding_engine.get_workflow_instance(instance_id) == before


@pytest.mark.asyncio
async def test_steps_run_in_order_to_completion(onboarding_engine, transport, clock):
    instance_id = await _start(onboarding_engine)

    instance = await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")
    assert instance.status == "in_progress"
    task = transport.pending("task-requested")[0].data
    assert task.title == "Collect KYC for VND-1"
    assert task.assignee == "AP_CLERK"
    assert task.due_at == clock.now + timedelta(hours=48)
    assert instance.context.deadlines["collect_kyc"] == task.due_at

    instance = await onboarding_engine.execute_workflow_step(instance_id, "notify_ap", "clerk")
    assert instance.status == "completed"
    notification = transport.pending("notification-requested")[0].data
    assert notification.recipients == ["ap_lead"]
    assert notification.message == "Vendor VND-1 onboarded"


@pytest.mark.asyncio
async def test_reexecuting_completed_step_is_a_noop(onboarding_engine, transport):
    instance_id = await _start(onboarding_engine)
    first = await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")

    second = await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")

    assert second.history == first.history
    assert len(transport.pending("task-requested")) == 1
    assert len(transport.pending("step-completed")) == 1


@pytest.mark.asyncio
async def test_terminal_instances_reject_every_operation(onboarding_engine):
    instance_id = await _start(onboarding_engine)
    await onboarding_engine.cancel_workflow(instance_id, reason="vendor withdrew")

    for operation in (
        onboarding_engine.pause_workflow(instance_id),
        onboarding_engine.resume_workflow(instance_id),
        onboarding_engine.cancel_workflow(instance_id),
        onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk"),
    ):
        with pytest.raises(InvalidStateTransition):
            await operation

    instance = await onboarding_engine.get_workflow_instance(instance_id)
    assert instance.status == "cancelled"
    cancelled = [e for e in instance.history if e.action == "cancelled"]
    assert len(cancelled) == 1
    assert cancelled[0].notes == "vendor withdrew"


@pytest.mark.asyncio
async def test_pause_blocks_execution_until_resumed(onboarding_engine, transport):
    instance_id = await _start(onboarding_engine)

    paused = await onboarding_engine.pause_workflow(instance_id, actor_id="ops")
    assert paused.status == "paused"
    with pytest.raises(InvalidStateTransition):
        await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")
    with pytest.raises(InvalidStateTransition):
        await onboarding_engine.pause_workflow(instance_id)

    resumed = await onboarding_engine.resume_workflow(instance_id, actor_id="ops")
    assert resumed.status == "in_progress"
    assert resumed.history[-1].action == "resumed"
    assert len(transport.pending("instance-paused")) == 1
    assert len(transport.pending("instance-resumed")) == 1

    with pytest.raises(InvalidStateTransition):
        await onboarding_engine.resume_workflow(instance_id)

    instance = await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")
    assert instance.step_status("collect_kyc") == "completed"


@pytest.mark.asyncio
async def test_cancel_counts_in_analytics(onboarding_engine):
    instance_id = await _start(onboarding_engine)
    await onboarding_engine.cancel_workflow(instance_id)

    analytics = onboarding_engine.get_analytics()
    assert analytics.total_workflows == 1
    assert analytics.cancelled_workflows == 1
    assert analytics.completion_rate == 0


@pytest.mark.asyncio
async def test_concurrent_cancel_and_execute_are_serialized(onboarding_engine):
    instance_id = await _start(onboarding_engine)

    results = await asyncio.gather(
        onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk"),
        onboarding_engine.cancel_workflow(instance_id),
        return_exceptions=True,
    )

    instance = await onboarding_engine.get_workflow_instance(instance_id)
    assert instance.status == "cancelled"
    assert not any(isinstance(r, Exception) for r in results)
    assert [e.action for e in instance.history if e.step_id == "workflow"][-1] == "cancelled"


@pytest.mark.asyncio
async def test_manual_workflows_only_start_explicitly(onboarding_engine):
    event = DocumentEvent(document_id="AUD-1", category="vendor_form")
    started = await onboarding_engine.trigger_workflow(event)
    assert len(started) == 1

    instance = await onboarding_engine.start_workflow("manual_audit", event)
    assert instance.workflow_id == "manual_audit"
    assert instance.status == "pending"

    with pytest.raises(DefinitionNotFound):
        await onboarding_engine.start_workflow("ghost", event)


@pytest.mark.asyncio
async def test_inactive_definitions_do_not_fire(onboarding_engine):
    onboarding_engine.update_workflow("vendor_onboarding", {"is_active": False})
    event = DocumentEvent(document_id="VND-2", category="vendor_form")

    assert onboarding_engine.match_triggers(event) == []
    assert await onboarding_engine.trigger_workflow(event) == []
    with pytest.raises(InvalidStateTransition):
        await onboarding_engine.start_workflow("vendor_onboarding", event)


@pytest.mark.asyncio
async def test_running_instances_keep_their_definition_version(onboarding_engine):
    instance_id = await _start(onboarding_engine)
    onboarding_engine.update_workflow(
        "vendor_onboarding",
        {"steps": [{"id": "only_step", "type": "notification"}]},
    )

    instance = await onboarding_engine.execute_workflow_step(instance_id, "collect_kyc", "clerk")
    assert instance.workflow_version == "1.0.0"
    assert instance.step_status("collect_kyc") == "completed"
    assert onboarding_engine.get_workflows()[0].version == "1.0.1"


@pytest.mark.asyncio
async def test_unknown_instance_and_step(onboarding_engine):
    with pytest.raises(InstanceNotFound):
        await onboarding_engine.execute_workflow_step("missing", "collect_kyc", "clerk")
    with pytest.raises(InstanceNotFound):
        await onboarding_engine.cancel_workflow("missing")

    instance_id = await _start(onboarding_engine)
    with pytest.raises(StepNotFound):
        await onboarding_engine.execute_workflow_step(instance_id, "ghost", "clerk")
