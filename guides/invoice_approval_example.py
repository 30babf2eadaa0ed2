"""Example: a high-value invoice flowing through the built-in approval workflow."""

import asyncio

from docflow import DocumentEvent, WorkflowEngine
from docflow.transports.inmemory import InMemoryTransport


async def main():
    """Trigger, approve and inspect a workflow instance."""
    transport = InMemoryTransport()
    engine = WorkflowEngine.from_config(transport=transport)

    # Document produced by the upstream extraction pipeline
    event = DocumentEvent(
        document_id="INV-2024-0042",
        category="invoice",
        amount=250000,
        compliance_score=0.92,
        actor_id="ap_clerk",
        organization_id="acme",
    )

    instance_ids = await engine.trigger_workflow(event)
    print(f"✅ Started {len(instance_ids)} workflow(s): {instance_ids}")

    for instance_id in instance_ids:
        await engine.approve_step(instance_id, "manager_approval", "meera", "approved")
        instance = await engine.approve_step(
            instance_id, "partner_approval", "rahul", "approved", comments="Within budget"
        )
        print(f"📋 {instance.workflow_id}: {instance.status}")
        for entry in instance.history:
            print(f"   - {entry.step_id}: {entry.action} {entry.status} by {entry.actor_id}")

    # Side effects collaborators would pick up
    for topic in ("instance-started", "step-completed", "instance-completed"):
        print(f"🔗 {topic}: {len(transport.pending(topic))} event(s)")

    analytics = engine.get_analytics("acme")
    print(f"📈 Completion rate for acme: {analytics.completion_rate:.0%}")


if __name__ == "__main__":
    asyncio.run(main())
