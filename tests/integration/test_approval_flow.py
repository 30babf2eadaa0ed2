"""Approval-driven workflows end to end."""

import pytest

from docflow.errors import ApprovalError, InvalidStateTransition
from docflow.models import DocumentEvent


def _committee_workflow(approval_type="majority", **config):
    return {
        "id": "board_resolution",
        "name": "Board Resolution",
        "category": "legal",
        "triggers": [{"type": "document_type", "condition": {"value": "resolution"}}],
        "steps": [
            {
                "id": "board_vote",
                "type": "approval",
                "config": {
                    "approval_type": approval_type,
                    "approvers": ["dir_a", "dir_b", "dir_c"],
                    **config,
                },
            },
            {
                "id": "file_resolution",
                "type": "document_routing",
                "config": {"destination": "roc_filings"},
                "dependencies": ["board_vote"],
            },
        ],
    }


async def _start(engine, category="resolution", **event):
    [instance_id] = await engine.trigger_workflow(
        DocumentEvent(document_id="RES-1", category=category, **event)
    )
    return instance_id


@pytest.mark.asyncio
async def test_high_value_invoice_completes_after_two_approvals(engine, clock, transport):
    event = DocumentEvent(document_id="INV-500", amount=150000, actor_id="clerk")
    [instance_id] = await engine.trigger_workflow(event)

    instance = await engine.get_workflow_instance(instance_id)
    assert instance.workflow_id == "high_value_approval"
    assert instance.status == "pending"
    assert instance.current_step == "manager_approval"
    assert instance.context.assignments == {
        "manager_approval": "MANAGER",
        "partner_approval": "PARTNER",
    }

    clock.advance(hours=2)
    instance = await engine.approve_step(instance_id, "manager_approval", "alice", "approved")
    assert instance.status == "in_progress"
    assert instance.context.variables["status"] == "manager_approved"

    clock.advance(hours=1)
    instance = await engine.approve_step(instance_id, "partner_approval", "bob", "approved")

    assert instance.status == "completed"
    assert instance.completed_at == clock.now
    completed = [
        entry.step_id
        for entry in instance.history
        if entry.status == "completed" and entry.step_id != "workflow"
    ]
    assert completed == ["manager_approval", "partner_approval"]
    assert instance.metrics.total_duration == 3 * 3600
    assert instance.metrics.approval_times == {"manager_approval": 0.0, "partner_approval": 0.0}
    assert instance.context.variables["status"] == "approved"

    stored = await engine.get_workflow_instance(instance_id)
    assert stored.status == "completed"
    assert await engine.get_active_workflows() == []

    kinds = {topic for topic, queue in transport._queues.items() if queue}
    assert {"instance-started", "approval-recorded", "step-completed", "instance-completed"} <= kinds

    analytics = engine.get_analytics()
    assert analytics.total_workflows == 1
    assert analytics.completed_workflows == 1
    assert analytics.average_duration == 3 * 3600


@pytest.mark.asyncio
async def test_majority_completes_on_second_approval(make_engine):
    engine = make_engine([_committee_workflow()])
    instance_id = await _start(engine)

    instance = await engine.approve_step(instance_id, "board_vote", "dir_a", "approved")
    assert instance.step_status("board_vote") == "started"

    instance = await engine.approve_step(instance_id, "board_vote", "dir_b", "approved")
    assert instance.step_status("board_vote") == "completed"
    assert instance.status == "in_progress"

    # the routing step can run now that the vote is in
    instance = await engine.execute_workflow_step(instance_id, "file_resolution", "system")
    assert instance.status == "completed"


@pytest.mark.asyncio
async def test_approval_requested_once_per_step(make_engine, transport):
    engine = make_engine([_committee_workflow()])
    instance_id = await _start(engine)

    await engine.approve_step(instance_id, "board_vote", "dir_a", "approved")
    await engine.execute_workflow_step(instance_id, "board_vote", "system")

    requested = transport.pending("approval-requested")
    assert len(requested) == 1
    assert requested[0].data.approvers == ["dir_a", "dir_b", "dir_c"]


@pytest.mark.asyncio
async def test_rejection_fails_instance_and_runs_failure_actions(engine, transport):
    [instance_id] = await engine.trigger_workflow(
        DocumentEvent(document_id="INV-9", amount=900000)
    )

    instance = await engine.approve_step(
        instance_id, "manager_approval", "alice", "rejected", comments="duplicate invoice"
    )

    assert instance.status == "failed"
    failed = [e for e in instance.history if e.step_id == "manager_approval" and e.status == "failed"]
    assert len(failed) == 1
    assert "duplicate invoice" in failed[0].notes
    assert transport.pending("notification-requested")[0].data.message == "approval_rejected"
    assert len(transport.pending("instance-failed")) == 1
    assert engine.get_analytics().failed_workflows == 1

    with pytest.raises(InvalidStateTransition):
        await engine.approve_step(instance_id, "partner_approval", "bob", "approved")


@pytest.mark.asyncio
async def test_roster_and_sequence_are_enforced(make_engine):
    engine = make_engine([_committee_workflow("sequential")])
    instance_id = await _start(engine)

    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "board_vote", "outsider", "approved")
    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "board_vote", "dir_b", "approved")

    await engine.approve_step(instance_id, "board_vote", "dir_a", "approved")
    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "board_vote", "dir_a", "approved")

    stored = await engine.get_workflow_instance(instance_id)
    assert [r.approver_id for r in stored.approvals] == ["dir_a"]


@pytest.mark.asyncio
async def test_delegation_reassigns_without_deciding(make_engine, transport):
    engine = make_engine([_committee_workflow("parallel")])
    instance_id = await _start(engine)

    instance = await engine.approve_step(
        instance_id, "board_vote", "dir_c", "delegated", delegated_to="alt_c"
    )
    assert instance.context.assignments["board_vote"] == "alt_c"
    assert instance.step_status("board_vote") is None
    assert transport.pending("approval-recorded")[0].data.delegated_to == "alt_c"

    for approver in ("dir_a", "dir_b", "alt_c"):
        instance = await engine.approve_step(instance_id, "board_vote", approver, "approved")
    assert instance.step_status("board_vote") == "completed"

    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "board_vote", "dir_a", "delegated")


@pytest.mark.asyncio
async def test_approval_on_non_approval_step_is_rejected(make_engine):
    engine = make_engine([_committee_workflow()])
    instance_id = await _start(engine)

    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "file_resolution", "dir_a", "approved")
    with pytest.raises(ApprovalError):
        await engine.approve_step(instance_id, "board_vote", "dir_a", "maybe")


@pytest.mark.asyncio
async def test_delegating_to_a_fellow_approver_keeps_quorum_reachable(make_engine):
    workflow = _committee_workflow("parallel")
    workflow["steps"][0]["config"]["approvers"] = ["dir_a", "dir_b"]
    engine = make_engine([workflow])
    instance_id = await _start(engine)

    with pytest.raises(ApprovalError):
        await engine.approve_step(
            instance_id, "board_vote", "dir_a", "delegated", delegated_to="dir_b"
        )

    await engine.approve_step(instance_id, "board_vote", "dir_b", "approved")
    instance = await engine.approve_step(instance_id, "board_vote", "dir_a", "approved")
    assert instance.step_status("board_vote") == "completed"
    assert [r.decision for r in instance.approvals] == ["approved", "approved"]


@pytest.mark.asyncio
async def test_rejected_step_kept_alive_can_be_approved_later(make_engine):
    engine = make_engine(
        [
            {
                "id": "expense_claim",
                "name": "Expense claim",
                "triggers": [{"type": "document_type", "condition": {"value": "expense"}}],
                "steps": [
                    {
                        "id": "manager_review",
                        "type": "approval",
                        "config": {"approval_type": "single", "approvers": ["MANAGER"]},
                        "on_failure": [
                            {"type": "update_status", "config": {"status": "in_progress"}}
                        ],
                    }
                ],
            }
        ]
    )
    instance_id = await _start(engine, category="expense")

    instance = await engine.approve_step(
        instance_id, "manager_review", "m1", "rejected", comments="missing receipt"
    )
    assert instance.status == "in_progress"
    assert instance.step_status("manager_review") == "failed"

    instance = await engine.approve_step(instance_id, "manager_review", "m2", "approved")
    assert instance.step_status("manager_review") == "completed"
    assert instance.status == "completed"
    assert len(instance.approvals) == 2
