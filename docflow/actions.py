"""Runs the ``on_success`` / ``on_failure`` actions attached to steps."""

from __future__ import annotations

import logging
import string
from typing import Any, Dict, Optional, Sequence

from .contracts import (
    DocumentRouted,
    EventLogged,
    NotificationRequested,
    TaskRequested,
    WebhookRequested,
)
from .models import Action, InstanceStatus, StepSpec, WorkflowInstance
from .publisher import EventPublisher

logger = logging.getLogger(__name__)

# update_status values that steer the instance lifecycle instead of the business status
REDIRECT_STATUSES = ("in_progress", "paused")


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def template_values(instance: WorkflowInstance) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    values.update(instance.context.document)
    values.update(instance.context.variables)
    values.update(
        document_id=instance.document_id,
        instance_id=instance.id,
        workflow_id=instance.workflow_id,
        workflow_name=instance.workflow_id,
        initiator=instance.initiated_by,
        organization_id=instance.organization_id,
    )
    return values


def render_template(template: str, instance: WorkflowInstance) -> str:
    """Substitute ``{placeholder}`` fields from the instance; unknown ones are kept."""
    try:
        return string.Formatter().vformat(template, (), _TemplateValues(template_values(instance)))
    except (ValueError, IndexError, AttributeError, KeyError):
        logger.warning(f"Could not render template {template!r} for instance_id={instance.id}")
        return template


class ActionRunner:
    """Executes step actions in order.

    Returns the lifecycle status an ``update_status`` action redirected the
    instance to, if any. Action events go out best-effort: the step they
    follow has already produced its side effect.
    """

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def run(
        self,
        actions: Sequence[Action],
        instance: WorkflowInstance,
        step: StepSpec,
    ) -> Optional[InstanceStatus]:
        redirect: Optional[InstanceStatus] = None
        for action in actions:
            result = await self._run_one(action, instance, step)
            if result is not None:
                redirect = result
        return redirect

    async def _run_one(
        self, action: Action, instance: WorkflowInstance, step: StepSpec
    ) -> Optional[InstanceStatus]:
        config = action.config
        logger.debug(f"Running {action.type} action for step {step.id} of {instance.id}")

        if action.type == "update_status":
            status = config.get("status")
            if status in REDIRECT_STATUSES:
                return status
            if status is not None:
                instance.context.variables["status"] = status

        elif action.type == "send_notification":
            template = config.get("template") or config.get("message") or step.id
            await self._publisher.emit_best_effort(
                instance,
                NotificationRequested(
                    step_id=step.id,
                    recipients=list(config.get("recipients", [])),
                    message=render_template(template, instance),
                ),
            )

        elif action.type == "create_task":
            template = config.get("template") or config.get("title") or step.id
            await self._publisher.emit_best_effort(
                instance,
                TaskRequested(
                    title=render_template(template, instance),
                    assignee=config.get("assignee") or instance.context.assignments.get(step.id),
                    document_id=instance.document_id,
                    instance_id=instance.id,
                    step_id=step.id,
                ),
            )

        elif action.type == "route_document":
            await self._publisher.emit_best_effort(
                instance,
                DocumentRouted(
                    step_id=step.id, document_id=instance.document_id, routing_config=dict(config)
                ),
            )

        elif action.type == "trigger_webhook":
            await self._publisher.emit_best_effort(
                instance,
                WebhookRequested(
                    step_id=step.id, url=config.get("url"), body=dict(config.get("body", {}))
                ),
            )

        elif action.type == "log_event":
            logger.info(f"Workflow event for instance_id={instance.id} step={step.id}: {config}")
            await self._publisher.emit_best_effort(instance, EventLogged(step_id=step.id, event=dict(config)))

        return None
