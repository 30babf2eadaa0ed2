"""Workflow catalog: versioned, validated workflow definitions."""

from __future__ import annotations

import logging
import re
import types
from collections import defaultdict, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pydantic
import yaml

from .errors import DefinitionNotFound, ValidationError
from .models import LIFECYCLE_STEP_ID, WorkflowDefinition
from .triggers import NUMERIC_OPERATORS

logger = logging.getLogger(__name__)


def validate_definition(definition: WorkflowDefinition) -> None:
    """Check structural invariants of a definition.

    Raises:
        ValidationError: naming the offending field.
    """
    if not definition.name or not definition.name.strip():
        raise ValidationError("Workflow name is required", field="name")

    if not definition.steps:
        raise ValidationError("Workflow must have at least one step", field="steps")

    step_ids: set[str] = set()
    for step in definition.steps:
        if step.id == LIFECYCLE_STEP_ID:
            raise ValidationError(
                f"Step id '{LIFECYCLE_STEP_ID}' is reserved", field=f"steps.{step.id}.id"
            )
        if step.id in step_ids:
            raise ValidationError(f"Duplicate step id {step.id}", field=f"steps.{step.id}.id")
        step_ids.add(step.id)
        if step.config.kind != step.type:
            raise ValidationError(
                f"Step {step.id} of type {step.type} has {step.config.kind} config",
                field=f"steps.{step.id}.config",
            )

    for step in definition.steps:
        for dep_id in step.dependencies:
            if dep_id == step.id:
                raise ValidationError(
                    f"Step {step.id} depends on itself",
                    field=f"steps.{step.id}.dependencies",
                )
            if dep_id not in step_ids:
                raise ValidationError(
                    f"Step {step.id} depends on non-existent step {dep_id}",
                    field=f"steps.{step.id}.dependencies",
                )

    _check_triggers(definition)
    _check_acyclic(definition)


def _check_triggers(definition: WorkflowDefinition) -> None:
    for index, trigger in enumerate(definition.triggers):
        field = f"triggers.{index}.condition"
        condition = trigger.condition
        if trigger.type in ("amount_threshold", "compliance_flag"):
            if trigger.type == "amount_threshold" and condition.operator not in NUMERIC_OPERATORS:
                raise ValidationError(
                    "Operator must be greater_than, less_than or equals",
                    field=f"{field}.operator",
                )
            if condition.operator not in (None, *NUMERIC_OPERATORS):
                raise ValidationError(
                    f"Operator {condition.operator} is not numeric", field=f"{field}.operator"
                )
            try:
                float(condition.value)
            except (TypeError, ValueError):
                raise ValidationError("Threshold must be numeric", field=f"{field}.value") from None
        elif trigger.type == "keyword_match":
            if not condition.value:
                raise ValidationError("Keyword is required", field=f"{field}.value")
            if condition.operator == "regex":
                try:
                    re.compile(str(condition.value))
                except re.error as exc:
                    raise ValidationError(
                        f"Invalid pattern: {exc}", field=f"{field}.value"
                    ) from None
        elif trigger.type == "document_type" and condition.value is None:
            raise ValidationError("Document category is required", field=f"{field}.value")


def _check_acyclic(definition: WorkflowDefinition) -> None:
    """Kahn's algorithm over step dependencies."""
    in_degree: dict[str, int] = {step.id: len(set(step.dependencies)) for step in definition.steps}
    dependents: dict[str, list[str]] = defaultdict(list)
    for step in definition.steps:
        for dep in set(step.dependencies):
            dependents[dep].append(step.id)

    queue: deque[str] = deque(sid for sid, degree in in_degree.items() if degree == 0)
    visited = 0
    while queue:
        sid = queue.popleft()
        visited += 1
        for dependent in dependents[sid]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if visited != len(in_degree):
        cyclic = sorted(sid for sid, degree in in_degree.items() if degree > 0)
        raise ValidationError(
            f"Cycle detected in step dependencies involving: {', '.join(cyclic)}",
            field="steps.dependencies",
        )


def parse_definition(data: Mapping[str, Any]) -> WorkflowDefinition:
    """Build and validate a definition from plain data (YAML, JSON, API body)."""
    try:
        definition = WorkflowDefinition.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "definition"
        raise ValidationError(error["msg"], field=field) from exc
    validate_definition(definition)
    return definition


def _bump_patch(version: str) -> str:
    parts = version.split(".")
    try:
        parts[-1] = str(int(parts[-1]) + 1)
    except ValueError:
        return f"{version}.1"
    return ".".join(parts)


class WorkflowCatalog:
    """Holds the published workflow definitions.

    Writers build a new mapping and swap it in with a single assignment, so
    readers always see a complete snapshot and never a half-applied update.
    """

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Mapping[str, WorkflowDefinition] = types.MappingProxyType({})
        # every version ever published, so running instances keep their definition
        self._versions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        for definition in definitions:
            self.create(definition)

    def _check_unpublished(self, definition: WorkflowDefinition) -> None:
        if (definition.id, definition.version) in self._versions:
            raise ValidationError(
                f"Workflow {definition.id} v{definition.version} was already published",
                field="version",
            )

    def _publish(
        self,
        definitions: Dict[str, WorkflowDefinition],
        changed: Optional[WorkflowDefinition] = None,
    ) -> None:
        if changed is not None:
            self._check_unpublished(changed)
            self._versions[(changed.id, changed.version)] = changed
        self._definitions = types.MappingProxyType(definitions)

    def create(self, definition: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
        """Validate and publish a new definition."""
        if not isinstance(definition, WorkflowDefinition):
            definition = parse_definition(definition)
        else:
            validate_definition(definition)
        if definition.id in self._definitions:
            raise ValidationError(f"Workflow {definition.id} already exists", field="id")

        self._publish({**self._definitions, definition.id: definition}, definition)
        logger.info(f"Created workflow {definition.id} v{definition.version}")
        return definition

    def update(self, workflow_id: str, patch: Mapping[str, Any]) -> WorkflowDefinition:
        """Apply ``patch`` to a definition and publish it under a bumped version."""
        current = self.get(workflow_id)
        if "id" in patch and patch["id"] != workflow_id:
            raise ValidationError("Workflow id cannot be changed", field="id")

        data = current.model_dump()
        data.update(patch)
        data["version"] = patch.get("version") or _bump_patch(current.version)
        data["created_at"] = current.created_at
        data["last_modified"] = datetime.now(timezone.utc)
        updated = parse_definition(data)

        self._publish({**self._definitions, workflow_id: updated}, updated)
        logger.info(f"Updated workflow {workflow_id} to v{updated.version}")
        return updated

    def delete(self, workflow_id: str) -> WorkflowDefinition:
        current = self.get(workflow_id)
        definitions = dict(self._definitions)
        del definitions[workflow_id]
        self._publish(definitions)
        logger.info(f"Deleted workflow {workflow_id}")
        return current

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_id]
        except KeyError:
            raise DefinitionNotFound(workflow_id) from None

    def find(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(workflow_id)

    def get_version(self, workflow_id: str, version: str) -> WorkflowDefinition:
        """Return a specific published version, even if since updated or deleted."""
        try:
            return self._versions[(workflow_id, version)]
        except KeyError:
            raise DefinitionNotFound(f"{workflow_id} v{version}") from None

    def list(
        self, category: Optional[str] = None, is_active: Optional[bool] = None
    ) -> List[WorkflowDefinition]:
        snapshot = self._definitions
        return [
            definition
            for definition in snapshot.values()
            if (category is None or definition.category == category)
            and (is_active is None or definition.is_active == is_active)
        ]

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def load_definitions(path: str | Path) -> List[WorkflowDefinition]:
    """Load workflow definitions from a YAML file or a directory of YAML files.

    A file may contain a single definition mapping or a list of them, or a
    mapping with a top-level ``workflows`` list.
    """
    path = Path(path)
    files = sorted(path.glob("*.y*ml")) if path.is_dir() else [path]

    definitions: List[WorkflowDefinition] = []
    for file in files:
        with open(file) as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, dict):
            data = data.get("workflows", [data])
        for item in data:
            definitions.append(parse_definition(item))
        logger.debug(f"Loaded {len(data)} workflow definition(s) from {file}")
    return definitions
