"""Running organisation-level workflow statistics."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import WorkflowInstance

logger = logging.getLogger(__name__)

# a step is an instance bottleneck when it took this much longer than the instance's mean step
BOTTLENECK_FACTOR = 1.5


class RunningMean(BaseModel):
    count: int = 0
    mean: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.mean += (value - self.mean) / self.count


class Bottleneck(BaseModel):
    workflow_id: str
    step: str
    frequency: int
    average_delay: float
    impact: Literal["low", "medium", "high", "critical"]


class WorkflowAnalytics(BaseModel):
    total_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    cancelled_workflows: int = 0
    completion_rate: float = 0.0
    average_duration: float = 0.0
    average_efficiency: float = 0.0
    average_compliance_score: float = 0.0
    bottlenecks: List[Bottleneck] = Field(default_factory=list)


class _Tally(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    duration: RunningMean = Field(default_factory=RunningMean)
    efficiency: RunningMean = Field(default_factory=RunningMean)
    compliance: RunningMean = Field(default_factory=RunningMean)

    def snapshot(self) -> WorkflowAnalytics:
        return WorkflowAnalytics(
            total_workflows=self.total,
            completed_workflows=self.completed,
            failed_workflows=self.failed,
            cancelled_workflows=self.cancelled,
            completion_rate=self.completed / self.total if self.total else 0.0,
            average_duration=self.duration.mean,
            average_efficiency=self.efficiency.mean,
            average_compliance_score=self.compliance.mean,
        )


def instance_bottlenecks(instance: WorkflowInstance) -> List[str]:
    durations = instance.metrics.step_durations
    if len(durations) < 2:
        return []
    mean = sum(durations.values()) / len(durations)
    return sorted(step for step, value in durations.items() if mean and value > mean * BOTTLENECK_FACTOR)


def instance_efficiency(instance: WorkflowInstance, estimated_minutes: float) -> float:
    """Estimated over actual duration, capped at 1."""
    actual = instance.metrics.total_duration
    if actual <= 0:
        return 1.0
    return min(1.0, (estimated_minutes * 60) / actual)


class AnalyticsAggregator:
    """Folds terminal instances into global and per-organisation statistics.

    Every terminal outcome counts towards ``total_workflows``; only completed
    instances feed the duration mean, which is updated incrementally.

    Tallies live in process memory. A process that starts against a durable
    store begins at zero until :meth:`rebuild` replays the stored terminal
    instances (``WorkflowEngine.restore_analytics`` does this).
    """

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._global = _Tally()
        self._by_org: Dict[str, _Tally] = defaultdict(_Tally)
        # workflow_id -> step_id -> running mean of step duration
        self._step_delays: Dict[str, Dict[str, RunningMean]] = defaultdict(
            lambda: defaultdict(RunningMean)
        )

    def record(self, instance: WorkflowInstance) -> None:
        """Fold a terminal instance in. Non-terminal instances are ignored."""
        if not instance.is_terminal:
            return
        for tally in (self._global, self._by_org[instance.organization_id]):
            tally.total += 1
            if instance.status == "completed":
                tally.completed += 1
                tally.duration.add(instance.metrics.total_duration)
                tally.efficiency.add(instance.metrics.efficiency)
                tally.compliance.add(instance.metrics.compliance_score)
            elif instance.status == "failed":
                tally.failed += 1
            else:
                tally.cancelled += 1

        if instance.status == "completed":
            steps = self._step_delays[instance.workflow_id]
            for step_id, duration in instance.metrics.step_durations.items():
                steps[step_id].add(duration)
        logger.debug(f"Recorded {instance.status} instance_id={instance.id} in analytics")

    def rebuild(self, instances: Iterable[WorkflowInstance]) -> int:
        """Discard current tallies and fold ``instances`` in again. Returns the count recorded."""
        self._reset()
        recorded = 0
        for instance in instances:
            if instance.is_terminal:
                self.record(instance)
                recorded += 1
        return recorded

    def complete(self, instance: WorkflowInstance, estimated_minutes: float) -> None:
        """Fill per-instance completion metrics, then record the instance."""
        instance.metrics.bottlenecks = instance_bottlenecks(instance)
        instance.metrics.efficiency = instance_efficiency(instance, estimated_minutes)
        self.record(instance)

    def bottleneck_analysis(self, workflow_id: Optional[str] = None, top: int = 5) -> List[Bottleneck]:
        """Rank steps by average delay across completed instances."""
        ranked: List[Bottleneck] = []
        for wf_id, steps in self._step_delays.items():
            if workflow_id is not None and wf_id != workflow_id:
                continue
            if not steps:
                continue
            overall = sum(m.mean for m in steps.values()) / len(steps)
            for step_id, delay in steps.items():
                ranked.append(
                    Bottleneck(
                        workflow_id=wf_id,
                        step=step_id,
                        frequency=delay.count,
                        average_delay=delay.mean,
                        impact=_impact(delay.mean, overall),
                    )
                )
        ranked.sort(key=lambda b: (-b.average_delay, b.workflow_id, b.step))
        return ranked[:top]

    def snapshot(self, organization_id: Optional[str] = None) -> WorkflowAnalytics:
        tally = self._global if organization_id is None else self._by_org.get(organization_id, _Tally())
        analytics = tally.snapshot()
        if organization_id is None:
            analytics.bottlenecks = self.bottleneck_analysis()
        return analytics


def _impact(delay: float, overall: float) -> Literal["low", "medium", "high", "critical"]:
    if overall <= 0:
        return "low"
    ratio = delay / overall
    if ratio >= 3:
        return "critical"
    if ratio >= 2:
        return "high"
    if ratio >= 1.2:
        return "medium"
    return "low"
