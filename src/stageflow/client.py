import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from stageflow.application.cache import CacheStats, TemplateCache
from stageflow.application.port import ExecutorRegistry, Repositories, Repository
from stageflow.application.service import StageAdvancer, WorkflowInstantiator, expand_definition, load_definition
from stageflow.domain.entity import (
    Activity,
    ActivityTemplate,
    AdvanceResult,
    Stage,
    StageTemplate,
    StartWorkflowRequest,
    StartWorkflowResult,
    Workflow,
    WorkflowDefinition,
    WorkflowTemplate,
)
from stageflow.domain.error import NotFoundError
from stageflow.domain.port import ExecutorBase
from stageflow.domain.value_object import RequestContext, WorkflowStatus

logger = logging.getLogger(__name__)


class Client:
    """
    Unified client façade for the workflow engine.

    The Client is the only thing users interact with. It registers executors,
    saves templates (keeping the template cache consistent), starts workflows
    and drives them forward. It holds a reference to the chosen backend's
    repositories under the hood.
    """

    def __init__(
        self,
        repositories: Repositories,
        executor_registry: ExecutorRegistry,
        cache: TemplateCache,
        instantiator: WorkflowInstantiator,
        advancer: StageAdvancer,
        on_close: Callable[[], None] | None = None,
    ):
        """
        Initialize the client with backend components.

        :param repositories: The backend's repositories
        :type repositories: Repositories
        :param executor_registry: Registry resolving use-case codes to executors
        :type executor_registry: ExecutorRegistry
        :param cache: The template cache shared by the use cases
        :type cache: TemplateCache
        :param instantiator: Starts workflows
        :type instantiator: WorkflowInstantiator
        :param advancer: Advances, continues and cancels workflows
        :type advancer: StageAdvancer
        :param on_close: Optional hook releasing backend resources
        """
        self.repositories = repositories
        self.executor_registry = executor_registry
        self.cache = cache
        self.instantiator = instantiator
        self.advancer = advancer
        self._on_close = on_close

    def executor(self, code_or_executor: str | type[ExecutorBase], executor: Any = None) -> "Client":
        """
        Register an executor; returns the client so calls can be chained.

        ``client.executor(MyExecutor)`` registers the class under ``MyExecutor.code()``;
        ``client.executor("code", obj)`` registers an instance, class or callable.
        """
        if executor is None:
            if not (isinstance(code_or_executor, type) and issubclass(code_or_executor, ExecutorBase)):
                raise TypeError("An executor is required when registering by code")
            self.executor_registry.register(code_or_executor.code(), code_or_executor)
        else:
            self.executor_registry.register(code_or_executor, executor)
        return self

    def save_workflow_template(self, template: WorkflowTemplate, ctx: RequestContext | None = None) -> WorkflowTemplate:
        ctx = ctx or RequestContext()
        _put(self.repositories.workflow_template, ctx, template)
        self.cache.invalidate_workflow_template(template.id)
        return template

    def save_stage_template(self, template: StageTemplate, ctx: RequestContext | None = None) -> StageTemplate:
        ctx = ctx or RequestContext()
        _put(self.repositories.stage_template, ctx, template)
        self.cache.invalidate(template.id)
        self.cache.invalidate(template.workflow_template_id)
        return template

    def save_activity_template(self, template: ActivityTemplate, ctx: RequestContext | None = None) -> ActivityTemplate:
        ctx = ctx or RequestContext()
        _put(self.repositories.activity_template, ctx, template)
        self.cache.invalidate(template.id)
        self.cache.invalidate(template.stage_template_id)
        return template

    def load_definition(
        self, data: Mapping[str, Any] | WorkflowDefinition, ctx: RequestContext | None = None
    ) -> WorkflowDefinition:
        """
        Save a nested workflow definition as workflow, stage and activity templates.

        :param data: The definition as a dictionary or WorkflowDefinition instance
        :type data: Mapping[str, Any] | WorkflowDefinition
        :returns: The validated definition
        :rtype: WorkflowDefinition
        :raises ValidationError: If the definition is malformed
        """
        definition = load_definition(data)
        workflow_template, stage_templates, activity_templates = expand_definition(definition)
        self.save_workflow_template(workflow_template, ctx)
        for stage_template in stage_templates:
            self.save_stage_template(stage_template, ctx)
        for activity_template in activity_templates:
            self.save_activity_template(activity_template, ctx)
        logger.info("Loaded workflow definition %s (%d stages)", definition.id, len(stage_templates))
        return definition

    def start_workflow(
        self,
        workflow_template_id: str,
        input_json: str | Mapping[str, Any] = "",
        *,
        name: str | None = None,
        workspace_id: str | None = None,
        ctx: RequestContext | None = None,
    ) -> StartWorkflowResult:
        """
        Start a workflow from a template.

        :param workflow_template_id: The template to instantiate
        :type workflow_template_id: str
        :param input_json: Caller input, as JSON text or a mapping
        :param name: Optional display name
        :param workspace_id: Optional workspace; defaults to the template's
        :returns: The created workflow, its initial stage and any warnings
        :rtype: StartWorkflowResult
        """
        request = StartWorkflowRequest(
            workflow_template_id=workflow_template_id,
            input_json=dict(input_json) if isinstance(input_json, Mapping) else input_json,
            name=name,
            workspace_id=workspace_id,
        )
        return self.instantiator.start_workflow(ctx, request)

    def advance(self, workflow_id: str, ctx: RequestContext | None = None) -> AdvanceResult:
        return self.advancer.advance(ctx, workflow_id)

    def continue_workflow(
        self,
        workflow_id: str,
        activity_id: str,
        input_json: str | Mapping[str, Any] = "",
        ctx: RequestContext | None = None,
    ) -> AdvanceResult:
        return self.advancer.continue_workflow(ctx, workflow_id, activity_id, input_json)

    def cancel_workflow(self, workflow_id: str, ctx: RequestContext | None = None) -> Workflow:
        return self.advancer.cancel(ctx, workflow_id)

    def run(
        self,
        workflow_template_id: str,
        input_json: str | Mapping[str, Any] = "",
        ctx: RequestContext | None = None,
    ) -> AdvanceResult:
        """
        Start a workflow and advance it until it finishes, fails or waits for input.

        :param workflow_template_id: The template to instantiate
        :type workflow_template_id: str
        :param input_json: Caller input, as JSON text or a mapping
        :returns: The result of the last advancement
        :rtype: AdvanceResult
        """
        started = self.start_workflow(workflow_template_id, input_json, ctx=ctx)
        result = AdvanceResult(workflow=started.workflow, stage=started.stage)
        while result.workflow.status == WorkflowStatus.IN_PROGRESS and result.waiting_on is None:
            result = self.advance(result.workflow.id, ctx)
        return result

    def get_workflow(self, workflow_id: str, ctx: RequestContext | None = None) -> Workflow:
        """
        :raises NotFoundError: If the workflow does not exist
        """
        ctx = ctx or RequestContext()
        workflow = self.repositories.workflow.read(ctx, workflow_id).first()
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    def list_workflows(self, ctx: RequestContext | None = None, **filters: Any) -> list[Workflow]:
        return self.repositories.workflow.list(ctx or RequestContext(), **filters).data

    def list_stages(self, workflow_id: str, ctx: RequestContext | None = None) -> list[Stage]:
        stages = self.repositories.stage.list(ctx or RequestContext(), workflow_id=workflow_id).data
        return sorted(stages, key=lambda s: s.order_index)

    def list_activities(self, stage_id: str, ctx: RequestContext | None = None) -> list[Activity]:
        activities = self.repositories.activity.list(ctx or RequestContext(), stage_id=stage_id).data
        return sorted(activities, key=lambda a: (a.order_index is None, a.order_index or 0))

    def preload(self, workflow_template_ids: Iterable[str], ctx: RequestContext | None = None) -> int:
        return self.cache.preload(ctx or RequestContext(), workflow_template_ids)

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _put(repository: Repository, ctx: RequestContext, record: Any) -> None:
    if repository.read(ctx, record.id).first() is None:
        repository.create(ctx, record)
    else:
        repository.update(ctx, record)
