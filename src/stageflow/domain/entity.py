from datetime import datetime
from typing import Any

import msgspec

from stageflow.domain.value_object import ActivityStatus, StageStatus, WorkflowStatus


class WorkflowTemplate(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Reusable definition of a business process.

    ``input_schema`` is a JSON Schema object (or the simple field format) that
    caller input is validated against when a workflow starts.
    """

    id: str
    name: str
    input_schema: dict[str, Any] | None = None
    workspace_id: str | None = None
    description: str | None = None
    version: int = 1
    active: bool = True


class StageTemplate(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """A phase of a workflow template. ``order_index`` defines instantiation order."""

    id: str
    workflow_template_id: str
    order_index: int | None = 0
    name: str = ""


class ActivityTemplate(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """A unit of work inside a stage template.

    ``use_case_code`` is the key looked up in the executor registry and
    ``parameters`` maps request fields to path expressions into the workflow
    context. Activities with ``requires_input`` wait for a human submission.
    """

    id: str
    stage_template_id: str
    order_index: int | None = 0
    use_case_code: str | None = None
    name: str = ""
    parameters: dict[str, Any] = {}
    output_mapping: dict[str, Any] | None = None
    input_schema: dict[str, Any] | None = None
    requires_input: bool = False


class Workflow(msgspec.Struct, kw_only=True):
    """One execution of a workflow template, carrying its context document."""

    id: str
    workflow_template_id: str
    name: str
    context: dict[str, Any]
    current_stage_index: int = 0
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    workspace_id: str | None = None
    active: bool = True
    created_at: datetime
    updated_at: datetime | None = None
    error: str | None = None


class Stage(msgspec.Struct, kw_only=True):
    """A materialized phase of a workflow."""

    id: str
    workflow_id: str
    stage_template_id: str
    order_index: int = 0
    status: StageStatus = StageStatus.PENDING
    created_at: datetime
    completed_at: datetime | None = None


class Activity(msgspec.Struct, kw_only=True):
    """A materialized unit of work inside a stage."""

    id: str
    stage_id: str
    activity_template_id: str
    name: str = ""
    order_index: int | None = 0
    status: ActivityStatus = ActivityStatus.PENDING
    result: Any = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ActivityDefinition(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Activity template as written inside a workflow definition document."""

    id: str
    use_case_code: str | None = None
    name: str = ""
    order_index: int | None = None
    parameters: dict[str, Any] = {}
    output_mapping: dict[str, Any] | None = None
    input_schema: dict[str, Any] | None = None
    requires_input: bool = False


class StageDefinition(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Stage template as written inside a workflow definition document."""

    id: str
    name: str = ""
    order_index: int | None = None
    activities: list[ActivityDefinition] = []


class WorkflowDefinition(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """A complete nested template definition: workflow, stages and activities.

    Order indexes default to the position in the list when omitted.
    """

    id: str
    name: str
    input_schema: dict[str, Any] | None = None
    workspace_id: str | None = None
    description: str | None = None
    version: int = 1
    stages: list[StageDefinition] = []

    def to_yaml(self) -> str:
        """Convert the definition to a YAML string."""
        return msgspec.yaml.encode(self).decode()


class RepositoryResult(msgspec.Struct, kw_only=True):
    """Uniform return shape of repository calls: affected records plus a success flag."""

    data: list[Any] = []
    success: bool = True

    def first(self) -> Any:
        """Return the first record, or None when the result is empty."""
        return self.data[0] if self.data else None


class StartWorkflowRequest(msgspec.Struct, kw_only=True):
    workflow_template_id: str
    input_json: str | dict[str, Any] = ""
    name: str | None = None
    workspace_id: str | None = None


class StartWorkflowResult(msgspec.Struct, kw_only=True):
    """Result of starting a workflow.

    ``warnings`` lists non-fatal failures of secondary writes; a workflow whose
    initial stage could not be created is returned with ``success`` set and a
    warning describing the failure.
    """

    workflow: Workflow
    success: bool = True
    stage: Stage | None = None
    warnings: list[str] = []

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def to_dict(self):
        """Convert the result to a dictionary."""
        return msgspec.to_builtins(self)


class AdvanceResult(msgspec.Struct, kw_only=True):
    """Result of one advancement call on a workflow."""

    workflow: Workflow
    stage: Stage | None = None
    activities: list[Activity] = []
    advanced: bool = False
    waiting_on: str | None = None

    def to_dict(self):
        """Convert the result to a dictionary."""
        return msgspec.to_builtins(self)
