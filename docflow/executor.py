"""Step execution: preconditions, typed handlers, retries and result actions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from .actions import ActionRunner, render_template
from .approvals import evaluate_quorum
from .collaborators import ScriptRunner, Validator
from .contracts import (
    ApprovalRequested,
    DocumentRouted,
    Escalated,
    NotificationRequested,
    StepOutcome,
    TaskRequested,
)
from .errors import DependencyNotSatisfied, InvalidStateTransition, StepExecutionError
from .escalation import EscalationEvaluator
from .lifecycle import transition
from .models import (
    EXECUTABLE_STATUSES,
    ApprovalConfig,
    AutomationConfig,
    EscalationConfig,
    HistoryEntry,
    NotificationConfig,
    RoutingConfig,
    StepSpec,
    TaskConfig,
    ValidationConfig,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)
from .publisher import EventPublisher
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of one handler run."""

    success: bool
    pending: bool = False
    already_completed: bool = False
    result: Any = None
    error: Optional[str] = None


Handler = Callable[[WorkflowInstance, StepSpec, str], Awaitable[StepResult]]


def collaborator_context(instance: WorkflowInstance) -> Dict[str, Any]:
    """Plain data view of an instance handed to external collaborators."""
    return {
        "instance_id": instance.id,
        "workflow_id": instance.workflow_id,
        "document_id": instance.document_id,
        "organization_id": instance.organization_id,
        "document": instance.context.document,
        "variables": instance.context.variables,
        "compliance_score": instance.metrics.compliance_score,
    }


class StepExecutor:
    """Runs one step of an instance.

    The caller owns the per-instance lock and persists the instance
    afterwards; the executor only mutates the object it is given.
    """

    def __init__(
        self,
        publisher: EventPublisher,
        validator: Validator,
        script_runner: ScriptRunner,
        escalation: Optional[EscalationEvaluator] = None,
        clock: Callable[[], datetime] = utcnow,
        retry_base_delay: float = 0.5,
        retry_jitter: float = 0.1,
    ) -> None:
        self._publisher = publisher
        self._validator = validator
        self._script_runner = script_runner
        self._clock = clock
        self._escalation = escalation or EscalationEvaluator(clock)
        self._retry_base_delay = retry_base_delay
        self._retry_jitter = retry_jitter
        self.actions = ActionRunner(publisher)
        self._handlers: Dict[str, Handler] = {
            "approval": self._run_approval,
            "notification": self._run_notification,
            "document_routing": self._run_routing,
            "task_creation": self._run_task_creation,
            "validation": self._run_validation,
            "escalation": self._run_escalation,
            "automation": self._run_automation,
        }

    # ------------------------------------------------------------------
    # Entry point
    async def execute(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepSpec,
        actor_id: str,
    ) -> StepResult:
        if instance.step_status(step.id) == "completed":
            logger.info(f"Step {step.id} of {instance.id} already completed, skipping")
            return StepResult(success=True, already_completed=True)

        if instance.status not in EXECUTABLE_STATUSES:
            raise InvalidStateTransition(instance.id, instance.status, f"execute step {step.id}")

        done = instance.completed_steps()
        missing = [dep for dep in step.dependencies if dep not in done]
        if missing:
            raise DependencyNotSatisfied(instance.id, step.id, missing)

        now = self._clock()
        if instance.status == "pending":
            transition(instance, "in_progress", actor_id, now, notes=f"first step {step.id}")

        newly_started = instance.step_status(step.id) != "started"
        instance.current_step = step.id
        if newly_started:
            self._mark_started(instance, step, actor_id, now)

        result = await self._dispatch(instance, step, actor_id)

        if result.pending:
            if newly_started and isinstance(step.config, ApprovalConfig):
                await self._publisher.emit_best_effort(
                    instance,
                    ApprovalRequested(
                        step_id=step.id,
                        approvers=list(step.config.approvers),
                        approval_type=step.config.approval_type,
                    ),
                )
            return result

        if result.success:
            await self._on_success(instance, step, actor_id, result)
        else:
            await self._on_failure(instance, step, actor_id, result)
        return result

    def _mark_started(
        self, instance: WorkflowInstance, step: StepSpec, actor_id: str, now: datetime
    ) -> None:
        instance.history.append(
            HistoryEntry(
                step_id=step.id,
                action=step.type,
                timestamp=now,
                actor_id=actor_id,
                status="started",
            )
        )
        due_hours = getattr(step.config, "due_hours", None)
        if due_hours is not None:
            instance.context.deadlines[step.id] = now + timedelta(hours=due_hours)
        logger.info(f"Started step {step.id} ({step.type}) for instance_id={instance.id}")

    async def _dispatch(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        handler = self._handlers[step.type]
        attempt = 0
        while True:
            try:
                if step.timeout_seconds:
                    return await asyncio.wait_for(
                        handler(instance, step, actor_id), timeout=step.timeout_seconds
                    )
                return await handler(instance, step, actor_id)
            except asyncio.TimeoutError:
                error = f"step timed out after {step.timeout_seconds}s"
            except StepExecutionError as exc:
                error = exc.message

            if attempt >= step.max_retries:
                logger.error(
                    f"Step {step.id} failed for instance_id={instance.id} "
                    f"after {attempt + 1} attempt(s): {error}"
                )
                return StepResult(success=False, error=error)
            logger.warning(
                f"Step {step.id} attempt {attempt + 1} failed for instance_id={instance.id}: "
                f"{error}; retrying"
            )
            await schedule_retry(attempt, self._retry_base_delay, self._retry_jitter)
            attempt += 1

    async def _on_success(
        self, instance: WorkflowInstance, step: StepSpec, actor_id: str, result: StepResult
    ) -> None:
        now = self._clock()
        started = instance.step_started_at(step.id) or now
        duration = (now - started).total_seconds()
        instance.history.append(
            HistoryEntry(
                step_id=step.id,
                action=step.type,
                timestamp=now,
                actor_id=actor_id,
                status="completed",
                duration=duration,
            )
        )
        instance.metrics.step_durations[step.id] = duration
        if step.type == "approval":
            instance.metrics.approval_times[step.id] = duration
        logger.info(f"Completed step {step.id} for instance_id={instance.id}")

        redirect = await self.actions.run(step.on_success, instance, step)
        if redirect == "paused":
            transition(instance, "paused", actor_id, self._clock(), notes=f"requested by {step.id}")
        await self._publisher.emit_best_effort(
            instance, StepOutcome(kind="step-completed", step_id=step.id, result=result.result)
        )

    async def _on_failure(
        self, instance: WorkflowInstance, step: StepSpec, actor_id: str, result: StepResult
    ) -> None:
        now = self._clock()
        started = instance.step_started_at(step.id) or now
        duration = (now - started).total_seconds()
        instance.history.append(
            HistoryEntry(
                step_id=step.id,
                action=step.type,
                timestamp=now,
                actor_id=actor_id,
                status="failed",
                duration=duration,
                notes=result.error,
            )
        )
        instance.metrics.step_durations[step.id] = duration
        if step.type == "approval":
            instance.context.approval_rounds[step.id] = len(instance.approvals_for(step.id))

        redirect = await self.actions.run(step.on_failure, instance, step)
        await self._publisher.emit_best_effort(
            instance, StepOutcome(kind="step-failed", step_id=step.id, error=result.error)
        )
        if redirect == "in_progress":
            logger.info(f"Step {step.id} failed; instance_id={instance.id} kept in progress")
        elif redirect == "paused":
            transition(instance, "paused", actor_id, self._clock(), notes=result.error)
        else:
            transition(
                instance,
                "failed",
                actor_id,
                self._clock(),
                notes=f"{step.id}: {result.error}",
            )

    # ------------------------------------------------------------------
    # Handlers
    async def _run_approval(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: ApprovalConfig = step.config  # type: ignore[assignment]
        records = instance.open_approvals(step.id)
        state = evaluate_quorum(config, records)
        if state == "approved":
            approvers = sorted({r.approver_id for r in records if r.decision == "approved"})
            return StepResult(success=True, result={"decision": "approved", "approvers": approvers})
        if state == "rejected":
            comments = "; ".join(r.comments for r in records if r.decision == "rejected" and r.comments)
            return StepResult(success=False, error=f"Rejected: {comments}" if comments else "Rejected")
        return StepResult(success=False, pending=True, result={"decision": "pending"})

    async def _run_notification(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: NotificationConfig = step.config  # type: ignore[assignment]
        recipients = list(config.recipients)
        if not recipients and step.id in instance.context.assignments:
            recipients = [instance.context.assignments[step.id]]
        message = render_template(config.template, instance)
        await self._emit_side_effect(
            instance, step, NotificationRequested(step_id=step.id, recipients=recipients, message=message)
        )
        return StepResult(success=True, result={"recipients": recipients, "message": message})

    async def _run_routing(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: RoutingConfig = step.config  # type: ignore[assignment]
        routing = config.model_dump(exclude={"kind"})
        await self._emit_side_effect(
            instance,
            step,
            DocumentRouted(step_id=step.id, document_id=instance.document_id, routing_config=routing),
        )
        return StepResult(success=True, result=routing)

    async def _run_task_creation(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: TaskConfig = step.config  # type: ignore[assignment]
        task = TaskRequested(
            title=render_template(config.template, instance),
            assignee=config.assignee or instance.context.assignments.get(step.id),
            document_id=instance.document_id,
            instance_id=instance.id,
            step_id=step.id,
            due_at=instance.context.deadlines.get(step.id),
        )
        await self._emit_side_effect(instance, step, task)
        return StepResult(success=True, result=task.model_dump(mode="json", exclude={"kind"}))

    async def _run_validation(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: ValidationConfig = step.config  # type: ignore[assignment]
        try:
            results = await self._validator.run_validation(config.rules, collaborator_context(instance))
        except Exception as exc:
            raise StepExecutionError(
                f"validator failed: {exc}", instance_id=instance.id, step_id=step.id
            ) from exc
        failed = [r.rule for r in results if not r.passed]
        return StepResult(
            success=not failed,
            result=[r.model_dump() for r in results],
            error=f"validation failed: {', '.join(failed)}" if failed else None,
        )

    async def _run_escalation(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: EscalationConfig = step.config  # type: ignore[assignment]
        level = await self.escalate(instance, step.id, config.levels)
        return StepResult(success=True, result=level.model_dump() if level else None)

    async def _run_automation(self, instance: WorkflowInstance, step: StepSpec, actor_id: str) -> StepResult:
        config: AutomationConfig = step.config  # type: ignore[assignment]
        try:
            run = self._script_runner.run_script(config.script, collaborator_context(instance))
            if config.timeout_seconds:
                outcome = await asyncio.wait_for(run, timeout=config.timeout_seconds)
            else:
                outcome = await run
        except asyncio.TimeoutError as exc:
            raise StepExecutionError(
                f"automation timed out after {config.timeout_seconds}s",
                instance_id=instance.id,
                step_id=step.id,
            ) from exc
        except Exception as exc:
            raise StepExecutionError(
                f"automation runner failed: {exc}", instance_id=instance.id, step_id=step.id
            ) from exc
        return StepResult(success=outcome.success, result=outcome.output, error=outcome.error)

    # ------------------------------------------------------------------
    async def escalate(self, instance: WorkflowInstance, step_id: str, ladder) -> Any:
        """Evaluate a ladder and fire ``escalated`` for a newly reached level.

        Best-effort: a failure here is logged and reported as no escalation.
        """
        try:
            level = self._escalation.evaluate(instance, ladder, self._clock())
            if level is None or not self._escalation.is_new(instance, step_id, level):
                return level
            instance.context.escalations[step_id] = level.level
            instance.context.assignments[step_id] = level.assignee
            message = render_template(level.template, instance) if level.template else None
            await self._publisher.emit_best_effort(
                instance,
                Escalated(
                    instance_id=instance.id,
                    step_id=step_id,
                    level=level.level,
                    assignee=level.assignee,
                    message=message,
                ),
            )
            logger.info(
                f"Escalated step {step_id} of instance_id={instance.id} to level {level.level}"
            )
            return level
        except Exception:
            logger.exception(f"Escalation failed for step {step_id} of instance_id={instance.id}")
            return None

    async def _emit_side_effect(self, instance: WorkflowInstance, step: StepSpec, data) -> None:
        try:
            await self._publisher.emit(instance, data)
        except Exception as exc:
            raise StepExecutionError(
                f"could not publish {data.kind}: {exc}", instance_id=instance.id, step_id=step.id
            ) from exc
