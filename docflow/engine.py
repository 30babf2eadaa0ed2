"""Workflow engine: the in-process contract for triggering and driving workflows."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

from .analytics import AnalyticsAggregator, WorkflowAnalytics
from .approvals import check_eligible
from .builtin import builtin_workflows
from .catalog import WorkflowCatalog, load_definitions
from .collaborators import RuleRegistryValidator, ScriptRunner, SubprocessScriptRunner, Validator
from .config import DocflowConfig, EngineConfig, load_config
from .contracts import ApprovalRecorded, Escalated, InstanceLifecycle
from .errors import (
    ApprovalError,
    DependencyNotSatisfied,
    InstanceNotFound,
    InvalidStateTransition,
    StepNotFound,
)
from .escalation import EscalationEvaluator
from .executor import StepExecutor
from .lifecycle import detect_outcome, transition
from .locks import InstanceLocks
from .models import (
    LIFECYCLE_STEP_ID,
    ApprovalConfig,
    ApprovalRecord,
    DocumentEvent,
    EscalationConfig,
    EscalationLevel,
    HistoryEntry,
    StepSpec,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowMetrics,
    utcnow,
)
from .persistence import InMemoryInstanceStore, InstanceStore, get_instance_store
from .publisher import EventPublisher
from .transports import BaseTransport, InMemoryTransport, get_transport
from .triggers import TriggerEvaluator

logger = logging.getLogger(__name__)

_LIFECYCLE_EVENTS = {
    "completed": "instance-completed",
    "failed": "instance-failed",
    "paused": "instance-paused",
    "cancelled": "instance-cancelled",
}


class WorkflowEngine:
    """Document workflow orchestration engine.

    All mutations of an instance happen under that instance's lock and are
    persisted with a single ``save`` before lifecycle events go out, so a
    failed operation leaves the stored instance untouched.
    """

    def __init__(
        self,
        catalog: Optional[WorkflowCatalog] = None,
        store: Optional[InstanceStore] = None,
        transport: Optional[BaseTransport] = None,
        validator: Optional[Validator] = None,
        script_runner: Optional[ScriptRunner] = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[EngineConfig] = None,
        analytics: Optional[AnalyticsAggregator] = None,
    ) -> None:
        self.settings = settings or EngineConfig()
        self.catalog = catalog or WorkflowCatalog()
        self.store = store or InMemoryInstanceStore()
        self.publisher = EventPublisher(transport or InMemoryTransport())
        self.analytics = analytics or AnalyticsAggregator()
        self.triggers = TriggerEvaluator()
        self.escalation = EscalationEvaluator(clock)
        self._clock = clock
        self._locks = InstanceLocks()
        self._executor = StepExecutor(
            self.publisher,
            validator or RuleRegistryValidator(),
            script_runner or SubprocessScriptRunner(),
            escalation=self.escalation,
            clock=clock,
            retry_base_delay=self.settings.retry_base_delay,
            retry_jitter=self.settings.retry_jitter,
        )

    @classmethod
    def from_config(cls, config: Optional[DocflowConfig] = None, **kwargs: Any) -> "WorkflowEngine":
        """Build an engine with catalog, store and transport taken from configuration."""
        config = config or load_config()
        catalog = WorkflowCatalog(
            builtin_workflows() if config.engine.load_builtin_workflows else ()
        )
        for path in config.engine.catalog_paths:
            for definition in load_definitions(path):
                catalog.create(definition)
        if "store" not in kwargs:
            kwargs["store"] = get_instance_store(config=config)
        if "transport" not in kwargs:
            kwargs["transport"] = get_transport(config=config)
        return cls(catalog=catalog, settings=config.engine, **kwargs)

    # ------------------------------------------------------------------
    # Catalog management
    def create_workflow(self, definition: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
        return self.catalog.create(definition)

    def update_workflow(self, workflow_id: str, patch: Mapping[str, Any]) -> WorkflowDefinition:
        return self.catalog.update(workflow_id, patch)

    def delete_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.catalog.delete(workflow_id)

    def get_workflows(
        self, category: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        return self.catalog.list(category=category, is_active=is_active)

    def match_triggers(self, event: DocumentEvent) -> List[WorkflowDefinition]:
        return self.triggers.match_triggers(self.catalog.list(), event)

    # ------------------------------------------------------------------
    # Instance creation
    async def trigger_workflow(self, event: DocumentEvent) -> List[str]:
        """Start an instance of every active definition whose triggers match ``event``.

        Returns:
            Ids of the created instances, most urgent definition first.
        """
        instance_ids: List[str] = []
        for definition in self.match_triggers(event):
            instance = await self._start(definition, event)
            instance_ids.append(instance.id)
        logger.info(
            f"Document {event.document_id} triggered {len(instance_ids)} workflow(s)"
        )
        return instance_ids

    async def start_workflow(self, workflow_id: str, event: DocumentEvent) -> WorkflowInstance:
        """Explicitly start ``workflow_id`` for ``event`` regardless of its triggers."""
        definition = self.catalog.get(workflow_id)
        if not definition.is_active:
            raise InvalidStateTransition(workflow_id, "inactive", "start workflow")
        return await self._start(definition, event)

    async def _start(self, definition: WorkflowDefinition, event: DocumentEvent) -> WorkflowInstance:
        now = self._clock()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            workflow_version=definition.version,
            document_id=event.document_id,
            organization_id=event.organization_id,
            initiated_by=event.actor_id,
            status="pending",
            current_step=definition.steps[0].id,
            started_at=now,
            context=WorkflowContext(
                document=event.model_dump(mode="json"),
                assignments=_initial_assignments(definition.steps),
            ),
            metrics=WorkflowMetrics(
                compliance_score=event.compliance_score
                if event.compliance_score is not None
                else 1.0
            ),
        )
        instance.history.append(
            HistoryEntry(
                step_id=LIFECYCLE_STEP_ID,
                action="created",
                timestamp=now,
                actor_id=event.actor_id,
                status="started",
                metadata={"workflow_version": definition.version},
            )
        )
        await self.store.save(instance)
        logger.info(
            f"Started workflow {definition.id} instance_id={instance.id} "
            f"for document {event.document_id}"
        )
        await self.publisher.emit_best_effort(instance, InstanceLifecycle(kind="instance-started"))
        return instance

    # ------------------------------------------------------------------
    # Step execution and approvals
    async def execute_workflow_step(
        self, instance_id: str, step_id: str, actor_id: str
    ) -> WorkflowInstance:
        """Execute one step of an instance.

        Re-executing a completed step is a no-op returning the current state.

        Raises:
            InstanceNotFound, StepNotFound, DependencyNotSatisfied,
            InvalidStateTransition
        """
        async with self._locks.hold(instance_id):
            instance = await self._load(instance_id)
            definition = self._definition_for(instance)
            step = self._step(definition, step_id)
            before = instance.status

            result = await self._executor.execute(instance, definition, step, actor_id)
            if result.already_completed:
                return instance

            self._settle(instance, definition, actor_id)
            await self.store.save(instance)
        await self._announce(instance, before)
        return instance

    async def approve_step(
        self,
        instance_id: str,
        step_id: str,
        approver_id: str,
        decision: str,
        comments: Optional[str] = None,
        delegated_to: Optional[str] = None,
    ) -> WorkflowInstance:
        """Record an approval decision and resume the step when quorum is reached."""
        if decision not in ("approved", "rejected", "delegated"):
            raise ApprovalError(f"Unsupported decision {decision}", instance_id=instance_id, step_id=step_id)
        if decision == "delegated" and not delegated_to:
            raise ApprovalError("Delegation requires delegated_to", instance_id=instance_id, step_id=step_id)

        async with self._locks.hold(instance_id):
            instance = await self._load(instance_id)
            definition = self._definition_for(instance)
            step = self._step(definition, step_id)
            before = instance.status

            if not isinstance(step.config, ApprovalConfig):
                raise ApprovalError(
                    f"Step {step_id} is not an approval step", instance_id=instance_id, step_id=step_id
                )
            if instance.status not in ("pending", "in_progress"):
                raise InvalidStateTransition(instance_id, instance.status, "record approval")
            if instance.step_status(step_id) == "completed":
                raise ApprovalError(
                    f"Step {step_id} is already approved", instance_id=instance_id, step_id=step_id
                )
            missing = [d for d in step.dependencies if d not in instance.completed_steps()]
            if missing:
                raise DependencyNotSatisfied(instance_id, step_id, missing)
            try:
                check_eligible(
                    step.config,
                    instance.open_approvals(step_id),
                    approver_id,
                    decision,
                    delegated_to=delegated_to,
                )
            except ApprovalError as exc:
                exc.instance_id, exc.step_id = instance_id, step_id
                raise

            record = ApprovalRecord(
                step_id=step_id,
                approver_id=approver_id,
                decision=decision,
                timestamp=self._clock(),
                comments=comments,
                delegated_to=delegated_to,
            )
            instance.approvals.append(record)
            logger.info(
                f"{approver_id} {decision} step {step_id} of instance_id={instance_id}"
            )

            if decision == "delegated":
                instance.context.assignments[step_id] = delegated_to
            else:
                await self._executor.execute(instance, definition, step, approver_id)
                self._settle(instance, definition, approver_id)
            await self.store.save(instance)

        await self.publisher.emit_best_effort(
            instance,
            ApprovalRecorded(
                step_id=step_id,
                approver_id=approver_id,
                decision=decision,
                comments=comments,
                delegated_to=delegated_to,
            ),
        )
        await self._announce(instance, before)
        return instance

    # Aliases matching the inbound interface names
    record_approval = approve_step
    execute_step = execute_workflow_step

    # ------------------------------------------------------------------
    # Lifecycle operations
    async def pause_workflow(self, instance_id: str, actor_id: str = "system") -> WorkflowInstance:
        return await self._lifecycle(instance_id, "paused", actor_id, None, "pause")

    async def resume_workflow(self, instance_id: str, actor_id: str = "system") -> WorkflowInstance:
        return await self._lifecycle(instance_id, "in_progress", actor_id, None, "resume")

    async def cancel_workflow(
        self, instance_id: str, reason: Optional[str] = None, actor_id: str = "system"
    ) -> WorkflowInstance:
        return await self._lifecycle(instance_id, "cancelled", actor_id, reason, "cancel")

    async def _lifecycle(
        self,
        instance_id: str,
        target: str,
        actor_id: str,
        reason: Optional[str],
        operation: str,
    ) -> WorkflowInstance:
        async with self._locks.hold(instance_id):
            instance = await self._load(instance_id)
            before = instance.status
            if operation == "resume" and before != "paused":
                raise InvalidStateTransition(instance_id, before, operation)
            transition(instance, target, actor_id, self._clock(), notes=reason, operation=operation)
            if instance.is_terminal:
                self._record_analytics(instance)
            await self.store.save(instance)
        logger.info(f"Instance {instance_id} {before} -> {instance.status}")
        if target == "in_progress":
            await self.publisher.emit_best_effort(instance, InstanceLifecycle(kind="instance-resumed"))
        else:
            await self._announce(instance, before, reason)
        return instance

    # ------------------------------------------------------------------
    # Escalation
    async def sweep_escalations(self) -> List[Escalated]:
        """Evaluate escalation ladders for every active instance.

        Covers approval steps still awaiting a decision and escalation steps
        whose dependencies are met but which have not run. Meant to be called
        periodically by a scheduler outside the engine.
        """
        fired: List[Escalated] = []
        for snapshot in await self.store.list_active():
            try:
                fired.extend(await self._sweep_instance(snapshot.id))
            except Exception:
                logger.exception(f"Escalation sweep failed for instance_id={snapshot.id}")
        if fired:
            logger.info(f"Escalation sweep fired {len(fired)} escalation(s)")
        return fired

    async def _sweep_instance(self, instance_id: str) -> List[Escalated]:
        fired: List[Escalated] = []
        async with self._locks.hold(instance_id):
            instance = await self.store.get(instance_id)
            if instance is None or instance.status not in ("pending", "in_progress"):
                return fired
            definition = self._definition_for(instance)
            done = instance.completed_steps()
            for step in definition.steps:
                ladder = _pending_ladder(instance, step, done)
                if not ladder:
                    continue
                previous = instance.context.escalations.get(step.id, 0)
                level = await self._executor.escalate(instance, step.id, ladder)
                if level is not None and level.level > previous:
                    fired.append(
                        Escalated(
                            instance_id=instance.id,
                            step_id=step.id,
                            level=level.level,
                            assignee=level.assignee,
                        )
                    )
            if fired:
                await self.store.save(instance)
        return fired

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return await self.store.get(instance_id)

    async def get_active_workflows(self) -> List[WorkflowInstance]:
        return await self.store.list_active()

    def get_analytics(self, organization_id: Optional[str] = None) -> WorkflowAnalytics:
        return self.analytics.snapshot(organization_id)

    async def restore_analytics(self) -> int:
        """Rebuild analytics from the terminal instances held by the store."""
        instances = await self.store.list()
        recorded = self.analytics.rebuild(instances)
        logger.info(f"Restored analytics from {recorded} terminal instance(s)")
        return recorded

    # ------------------------------------------------------------------
    # Helpers
    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return self.catalog.get_version(instance.workflow_id, instance.workflow_version)

    @staticmethod
    def _step(definition: WorkflowDefinition, step_id: str) -> StepSpec:
        step = definition.step(step_id)
        if step is None:
            raise StepNotFound(definition.id, step_id)
        return step

    def _settle(self, instance: WorkflowInstance, definition: WorkflowDefinition, actor_id: str) -> None:
        """Completion/failure detection after a step transition."""
        if detect_outcome(instance, definition) == "completed":
            transition(instance, "completed", actor_id, self._clock())
            instance.current_step = None
            try:
                self.analytics.complete(instance, definition.metadata.estimated_duration)
            except Exception:
                logger.exception(f"Analytics update failed for instance_id={instance.id}")
            logger.info(f"Workflow {definition.id} instance_id={instance.id} completed")
        elif instance.status == "failed":
            self._record_analytics(instance)

    def _record_analytics(self, instance: WorkflowInstance) -> None:
        try:
            self.analytics.record(instance)
        except Exception:
            logger.exception(f"Analytics update failed for instance_id={instance.id}")

    async def _announce(
        self, instance: WorkflowInstance, before: str, reason: Optional[str] = None
    ) -> None:
        if instance.status == before:
            return
        kind = _LIFECYCLE_EVENTS.get(instance.status)
        if kind is not None:
            await self.publisher.emit_best_effort(
                instance, InstanceLifecycle(kind=kind, reason=reason)
            )


def _initial_assignments(steps: List[StepSpec]) -> dict[str, str]:
    return {
        step.id: step.assigned_to.target or step.assigned_to.fallback or ""
        for step in steps
        if step.assigned_to is not None
    }


def _pending_ladder(
    instance: WorkflowInstance, step: StepSpec, done: set[str]
) -> Optional[List[EscalationLevel]]:
    """Escalation ladder of a step that is waiting on someone, if any."""
    waiting = (
        step.id not in done
        and instance.step_status(step.id) != "failed"
        and all(dep in done for dep in step.dependencies)
    )
    if not waiting:
        return None
    if isinstance(step.config, ApprovalConfig):
        return step.config.escalation_levels
    if isinstance(step.config, EscalationConfig):
        return step.config.levels
    return None
