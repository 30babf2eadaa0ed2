"""Docflow: document-centric workflow orchestration."""

from .catalog import WorkflowCatalog, load_definitions
from .config import load_config
from .contracts import EngineEvent
from .engine import WorkflowEngine
from .errors import (
    ApprovalError,
    DefinitionNotFound,
    DependencyNotSatisfied,
    InstanceNotFound,
    InvalidStateTransition,
    StepExecutionError,
    StepNotFound,
    ValidationError,
    WorkflowError,
)
from .models import DocumentEvent, WorkflowDefinition, WorkflowInstance
from .persistence import get_instance_store
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "WorkflowEngine",
    "WorkflowCatalog",
    "WorkflowDefinition",
    "WorkflowInstance",
    "DocumentEvent",
    "EngineEvent",
    "load_config",
    "load_definitions",
    "get_instance_store",
    "get_transport",
    "WorkflowError",
    "ValidationError",
    "DefinitionNotFound",
    "InstanceNotFound",
    "StepNotFound",
    "DependencyNotSatisfied",
    "InvalidStateTransition",
    "StepExecutionError",
    "ApprovalError",
]
