"""
Stageflow - Template-driven Workflow Engine

Instantiate workflow templates (ordered stages of activities) into running
workflows, validate their input against per-template schemas, and advance
them by dispatching activities to registered executors.
"""

from stageflow.backend import BackendType
from stageflow.client import Client
from stageflow.config import Settings, load_settings
from stageflow.domain.entity import (
    ActivityTemplate,
    AdvanceResult,
    StageTemplate,
    StartWorkflowResult,
    Workflow,
    WorkflowTemplate,
)
from stageflow.domain.error import (
    DispatchError,
    NotFoundError,
    SchemaValidationError,
    StageflowError,
    ValidationError,
)
from stageflow.domain.port import ExecutorBase
from stageflow.domain.value_object import RequestContext
from stageflow.factory import create
from stageflow.infrastructure.provider import load_executors

__all__ = [
    "Client",
    "BackendType",
    "create",
    "ExecutorBase",
    "RequestContext",
    "Settings",
    "load_settings",
    "load_executors",
    "WorkflowTemplate",
    "StageTemplate",
    "ActivityTemplate",
    "Workflow",
    "StartWorkflowResult",
    "AdvanceResult",
    "StageflowError",
    "ValidationError",
    "SchemaValidationError",
    "NotFoundError",
    "DispatchError",
]
