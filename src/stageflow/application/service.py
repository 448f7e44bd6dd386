import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import msgspec

from stageflow.application.adapter import ExecutorTaskRunner, ParameterBinder
from stageflow.application.cache import TemplateCache
from stageflow.application.port import ExecutorRegistry, IDGenerator, Repositories, Repository, TransactionService
from stageflow.application.schema import SchemaProcessor
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
from stageflow.domain.error import (
    DeadlineExceededError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StageflowError,
    ValidationError,
)
from stageflow.domain.service import is_terminal, sort_by_order_index, transition
from stageflow.domain.value_object import ActivityStatus, RequestContext, StageStatus, WorkflowStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_definition(data: Mapping[str, Any] | WorkflowDefinition) -> WorkflowDefinition:
    """
    Decodes and validates a nested workflow template definition.

    :param data: The definition as a dictionary or WorkflowDefinition instance
    :type data: Mapping[str, Any] | WorkflowDefinition
    :returns: The validated definition
    :rtype: WorkflowDefinition
    :raises ValidationError: If the definition is malformed or ids are not unique
    """
    if isinstance(data, WorkflowDefinition):
        definition = data
    else:
        try:
            definition = msgspec.convert(data, type=WorkflowDefinition)
        except msgspec.ValidationError as e:
            raise ValidationError(f"Invalid workflow definition: {e}") from e

    seen: set[str] = {definition.id}
    for stage in definition.stages:
        if stage.id in seen:
            raise ValidationError(f"Duplicate template id '{stage.id}' in definition '{definition.id}'")
        seen.add(stage.id)
        for activity in stage.activities:
            if activity.id in seen:
                raise ValidationError(f"Duplicate template id '{activity.id}' in definition '{definition.id}'")
            seen.add(activity.id)
            if not activity.use_case_code and not activity.requires_input:
                raise ValidationError(f"Activity '{activity.id}' needs a use_case_code or requires_input")
    return definition


def expand_definition(
    definition: WorkflowDefinition,
) -> tuple[WorkflowTemplate, list[StageTemplate], list[ActivityTemplate]]:
    """
    Flattens a definition into the three template kinds. Missing order
    indexes take the item's position in its list.

    :param definition: A validated workflow definition
    :type definition: WorkflowDefinition
    :returns: The workflow template, its stage templates and all activity templates
    :rtype: tuple[WorkflowTemplate, list[StageTemplate], list[ActivityTemplate]]
    """
    workflow_template = WorkflowTemplate(
        id=definition.id,
        name=definition.name,
        input_schema=definition.input_schema,
        workspace_id=definition.workspace_id,
        description=definition.description,
        version=definition.version,
    )
    stage_templates: list[StageTemplate] = []
    activity_templates: list[ActivityTemplate] = []
    for i, stage in enumerate(definition.stages):
        stage_templates.append(
            StageTemplate(
                id=stage.id,
                workflow_template_id=definition.id,
                order_index=i if stage.order_index is None else stage.order_index,
                name=stage.name,
            )
        )
        for j, activity in enumerate(stage.activities):
            activity_templates.append(
                ActivityTemplate(
                    id=activity.id,
                    stage_template_id=stage.id,
                    order_index=j if activity.order_index is None else activity.order_index,
                    use_case_code=activity.use_case_code,
                    name=activity.name,
                    parameters=dict(activity.parameters),
                    output_mapping=activity.output_mapping,
                    input_schema=activity.input_schema,
                    requires_input=activity.requires_input,
                )
            )
    return workflow_template, stage_templates, activity_templates


def _save(repository: Repository, ctx: RequestContext, record: Any) -> Any:
    ctx.check()
    result = repository.update(ctx, record)
    if not result.success or result.first() is None:
        raise PersistenceError(f"{type(record).__name__} '{record.id}' could not be saved")
    return record


class WorkflowInstantiator:
    """Creates a running workflow and its initial stage from a workflow template.

    The workflow write is the primary write and any failure there is returned
    to the caller. The initial stage write is best effort: when it fails the
    workflow is still returned, with the failure listed in ``warnings``.
    """

    def __init__(
        self,
        repositories: Repositories,
        cache: TemplateCache,
        schema_processor: SchemaProcessor,
        id_generator: IDGenerator,
        transaction_service: TransactionService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repositories = repositories
        self.cache = cache
        self.schema_processor = schema_processor
        self.id_generator = id_generator
        self.transaction_service = transaction_service
        self.clock = clock

    def start_workflow(self, ctx: RequestContext | None, request: StartWorkflowRequest | None) -> StartWorkflowResult:
        """
        Start a workflow from a template.

        :param ctx: The caller's request context
        :type ctx: RequestContext | None
        :param request: The template id, the raw input and optional overrides
        :type request: StartWorkflowRequest | None
        :returns: The created workflow, its initial stage and any warnings
        :rtype: StartWorkflowResult
        :raises ValidationError: If the request or template id is missing
        :raises NotFoundError: If the template does not exist
        :raises SchemaValidationError: If the input violates the template schema
        :raises PersistenceError: If the workflow cannot be written
        """
        ctx = ctx or RequestContext()
        if request is None:
            raise ValidationError("A start workflow request is required")
        if not request.workflow_template_id or not request.workflow_template_id.strip():
            raise ValidationError("workflow_template_id is required")

        template = self.cache.get_workflow_template(ctx, request.workflow_template_id)
        if not template.active:
            raise ValidationError(f"Workflow template '{template.id}' is not active")

        if template.input_schema:
            finalized = self.schema_processor.validate(request.input_json, template.input_schema)
        else:
            finalized = self.schema_processor.parse_input(request.input_json)

        now = self.clock()
        workflow = Workflow(
            id=self.id_generator.generate(),
            workflow_template_id=template.id,
            name=request.name or f"{template.name} — {now.isoformat(timespec='seconds')}",
            context={"input": finalized},
            current_stage_index=0,
            status=WorkflowStatus.IN_PROGRESS,
            workspace_id=request.workspace_id or ctx.workspace_id or template.workspace_id,
            active=True,
            created_at=now,
            updated_at=now,
        )

        # Cache loads must not run while a transaction holds the database.
        stage_templates: list[StageTemplate] = []
        lookup_error: StageflowError | None = None
        try:
            stage_templates = self.cache.get_stage_templates(ctx, template.id)
        except DeadlineExceededError:
            raise
        except StageflowError as e:
            lookup_error = e

        if self.transaction_service is not None and self.transaction_service.supports_transactions():
            with self.transaction_service.transaction(ctx):
                return self._persist(ctx, template, workflow, stage_templates, lookup_error)
        return self._persist(ctx, template, workflow, stage_templates, lookup_error)

    def _persist(
        self,
        ctx: RequestContext,
        template: WorkflowTemplate,
        workflow: Workflow,
        stage_templates: list[StageTemplate],
        lookup_error: StageflowError | None,
    ) -> StartWorkflowResult:
        ctx.check()
        created = self.repositories.workflow.create(ctx, workflow)
        if not created.success:
            raise PersistenceError(f"Workflow '{workflow.id}' could not be created")
        workflow = created.first() or workflow
        logger.info("Workflow %s started from template %s", workflow.id, template.id)

        warnings: list[str] = []
        stage = None
        error = lookup_error
        if error is None and stage_templates:
            try:
                stage = self._create_initial_stage(ctx, workflow, stage_templates[0])
            except StageflowError as e:
                error = e
        if error is not None:
            logger.warning("Workflow %s created without its initial stage: %s", workflow.id, error)
            warnings.append(f"Initial stage was not created: {error}")

        return StartWorkflowResult(workflow=workflow, success=True, stage=stage, warnings=warnings)

    def _create_initial_stage(self, ctx: RequestContext, workflow: Workflow, stage_template: StageTemplate) -> Stage:
        stage = Stage(
            id=self.id_generator.generate(),
            workflow_id=workflow.id,
            stage_template_id=stage_template.id,
            order_index=0,
            status=StageStatus.PENDING,
            created_at=workflow.created_at,
        )
        ctx.check()
        result = self.repositories.stage.create(ctx, stage)
        if not result.success:
            raise PersistenceError(f"Stage for template '{stage_template.id}' could not be created")
        return result.first() or stage


class StageAdvancer:
    """Runs the activities of a workflow's current stage, one stage per call.

    Each activity's parameters are bound against the workflow context, the
    executor registered for its use-case code is run, and the response is
    stored at ``context["activities"][<activity template id>]["output"]``.

    A failed activity fails its stage and the workflow; the activities after
    it stay pending. Activity failures never raise out of :meth:`advance`.
    """

    def __init__(
        self,
        repositories: Repositories,
        cache: TemplateCache,
        executor_registry: ExecutorRegistry,
        id_generator: IDGenerator,
        schema_processor: SchemaProcessor | None = None,
        binder: ParameterBinder | None = None,
        task_runner: ExecutorTaskRunner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repositories = repositories
        self.cache = cache
        self.executor_registry = executor_registry
        self.id_generator = id_generator
        self.schema_processor = schema_processor or SchemaProcessor()
        self.binder = binder or ParameterBinder()
        self.task_runner = task_runner or ExecutorTaskRunner()
        self.clock = clock

    def advance(self, ctx: RequestContext | None, workflow_id: str) -> AdvanceResult:
        """
        Run the current stage of a workflow.

        :param ctx: The caller's request context
        :type ctx: RequestContext | None
        :param workflow_id: The workflow to advance
        :type workflow_id: str
        :returns: The workflow state after this call
        :rtype: AdvanceResult
        :raises NotFoundError: If the workflow does not exist
        :raises InvalidTransitionError: If the workflow is not in progress
        """
        ctx = ctx or RequestContext()
        workflow = self._load_workflow(ctx, workflow_id)
        stage_templates = self.cache.get_stage_templates(ctx, workflow.workflow_template_id)

        if workflow.current_stage_index >= len(stage_templates):
            self._finish_workflow(ctx, workflow)
            return AdvanceResult(workflow=workflow)

        stage = self._current_stage(ctx, workflow, stage_templates)
        return self._run_stage(ctx, workflow, stage, stage_templates)

    def continue_workflow(
        self,
        ctx: RequestContext | None,
        workflow_id: str,
        activity_id: str,
        input_json: str | Mapping[str, Any] = "",
    ) -> AdvanceResult:
        """
        Submit input for an activity waiting on it, then continue its stage.

        :param ctx: The caller's request context
        :type ctx: RequestContext | None
        :param workflow_id: The workflow the activity belongs to
        :type workflow_id: str
        :param activity_id: The waiting activity
        :type activity_id: str
        :param input_json: The submitted input, as JSON text or a mapping
        :returns: The workflow state after this call
        :rtype: AdvanceResult
        :raises InvalidTransitionError: If the activity is not waiting for input in the current stage
        :raises SchemaValidationError: If the input violates the activity's input schema
        """
        ctx = ctx or RequestContext()
        workflow = self._load_workflow(ctx, workflow_id)

        ctx.check()
        activity = self.repositories.activity.read(ctx, activity_id).first()
        if activity is None:
            raise NotFoundError("Activity", activity_id)
        ctx.check()
        stage = self.repositories.stage.read(ctx, activity.stage_id).first()
        if stage is None or stage.workflow_id != workflow.id:
            raise InvalidTransitionError(f"Activity '{activity_id}' does not belong to workflow '{workflow_id}'")
        if stage.order_index != workflow.current_stage_index or is_terminal(stage.status):
            raise InvalidTransitionError(f"Activity '{activity_id}' is not part of the current stage")
        if activity.status != ActivityStatus.PENDING:
            raise InvalidTransitionError(f"Activity '{activity_id}' is {activity.status.value}, not waiting for input")
        open_activities = [
            a for a in self._stage_activities(ctx, stage, None) if a.status != ActivityStatus.COMPLETED
        ]
        if not open_activities or open_activities[0].id != activity.id:
            raise InvalidTransitionError(f"Activity '{activity_id}' is not the next activity of its stage")

        template = self.cache.get_activity_template(ctx, activity.activity_template_id)
        if not template.requires_input:
            raise InvalidTransitionError(f"Activity '{activity_id}' does not take input")

        if template.input_schema:
            submitted = self.schema_processor.validate(input_json, template.input_schema)
        else:
            submitted = self.schema_processor.parse_input(input_json)

        self._activity_entry(workflow, template)["input"] = submitted
        stage_templates = self.cache.get_stage_templates(ctx, workflow.workflow_template_id)

        if stage.status == StageStatus.PENDING:
            stage.status = transition(stage.status, StageStatus.IN_PROGRESS)
            _save(self.repositories.stage, ctx, stage)

        if not self._execute(ctx, workflow, activity, template, default_output=submitted):
            self._fail(ctx, workflow, stage, activity)
            return AdvanceResult(workflow=workflow, stage=stage, activities=self._stage_activities(ctx, stage, None))

        return self._run_stage(ctx, workflow, stage, stage_templates)

    def cancel(self, ctx: RequestContext | None, workflow_id: str) -> Workflow:
        """
        Cancel an in-progress workflow.

        :raises InvalidTransitionError: If the workflow already reached a terminal status
        """
        ctx = ctx or RequestContext()
        workflow = self._load_workflow(ctx, workflow_id, require_in_progress=False)
        workflow.status = transition(workflow.status, WorkflowStatus.CANCELLED)
        workflow.updated_at = self.clock()
        _save(self.repositories.workflow, ctx, workflow)
        logger.info("Workflow %s cancelled", workflow.id)
        return workflow

    def _load_workflow(self, ctx: RequestContext, workflow_id: str, require_in_progress: bool = True) -> Workflow:
        if not workflow_id:
            raise ValidationError("workflow_id is required")
        ctx.check()
        workflow = self.repositories.workflow.read(ctx, workflow_id).first()
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        if require_in_progress and workflow.status != WorkflowStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Workflow '{workflow_id}' is {workflow.status.value}, not in progress")
        return workflow

    def _current_stage(self, ctx: RequestContext, workflow: Workflow, stage_templates: list[StageTemplate]) -> Stage:
        ctx.check()
        stages = self.repositories.stage.list(ctx, workflow_id=workflow.id).data
        for stage in stages:
            if stage.order_index == workflow.current_stage_index:
                return stage

        # Repairs a workflow whose stage write failed at start.
        logger.info("Materializing missing stage %d of workflow %s", workflow.current_stage_index, workflow.id)
        return self._create_stage(ctx, workflow, stage_templates[workflow.current_stage_index])

    def _create_stage(self, ctx: RequestContext, workflow: Workflow, stage_template: StageTemplate) -> Stage:
        stage = Stage(
            id=self.id_generator.generate(),
            workflow_id=workflow.id,
            stage_template_id=stage_template.id,
            order_index=workflow.current_stage_index,
            status=StageStatus.PENDING,
            created_at=self.clock(),
        )
        ctx.check()
        result = self.repositories.stage.create(ctx, stage)
        if not result.success:
            raise PersistenceError(f"Stage for template '{stage_template.id}' could not be created")
        return result.first() or stage

    def _stage_activities(
        self, ctx: RequestContext, stage: Stage, stage_template: StageTemplate | None
    ) -> list[Activity]:
        ctx.check()
        activities = self.repositories.activity.list(ctx, stage_id=stage.id).data
        if stage_template is not None:
            activities += self._create_missing_activities(ctx, stage, stage_template, activities)
        return sorted(activities, key=lambda a: (a.order_index is None, a.order_index or 0))

    def _create_missing_activities(
        self, ctx: RequestContext, stage: Stage, stage_template: StageTemplate, existing: list[Activity]
    ) -> list[Activity]:
        # Also completes a materialization that failed partway through.
        present = {a.activity_template_id for a in existing}
        created: list[Activity] = []
        now = self.clock()
        for position, template in enumerate(self.cache.get_activity_templates(ctx, stage_template.id)):
            if template.id in present:
                continue
            activity = Activity(
                id=self.id_generator.generate(),
                stage_id=stage.id,
                activity_template_id=template.id,
                name=template.name,
                order_index=position,
                status=ActivityStatus.PENDING,
                created_at=now,
            )
            ctx.check()
            result = self.repositories.activity.create(ctx, activity)
            if not result.success:
                raise PersistenceError(f"Activity for template '{template.id}' could not be created")
            created.append(result.first() or activity)
        return created

    def _run_stage(
        self,
        ctx: RequestContext,
        workflow: Workflow,
        stage: Stage,
        stage_templates: list[StageTemplate],
    ) -> AdvanceResult:
        stage_template = stage_templates[workflow.current_stage_index]
        if stage.status == StageStatus.PENDING:
            stage.status = transition(stage.status, StageStatus.IN_PROGRESS)
            _save(self.repositories.stage, ctx, stage)

        activities = self._stage_activities(ctx, stage, stage_template)
        for activity in activities:
            if activity.status == ActivityStatus.COMPLETED:
                continue
            template = self.cache.get_activity_template(ctx, activity.activity_template_id)
            if template.requires_input and activity.status == ActivityStatus.PENDING:
                self._touch(ctx, workflow)
                logger.info("Workflow %s waiting on input for activity %s", workflow.id, activity.id)
                return AdvanceResult(workflow=workflow, stage=stage, activities=activities, waiting_on=activity.id)
            if not self._execute(ctx, workflow, activity, template):
                self._fail(ctx, workflow, stage, activity)
                return AdvanceResult(workflow=workflow, stage=stage, activities=activities)

        # A stage saved as completed before its workflow was updated only needs the index moved on.
        if stage.status != StageStatus.COMPLETED:
            stage.status = transition(stage.status, StageStatus.COMPLETED)
            stage.completed_at = self.clock()
            _save(self.repositories.stage, ctx, stage)

        workflow.current_stage_index += 1
        if workflow.current_stage_index < len(stage_templates):
            self._create_stage(ctx, workflow, stage_templates[workflow.current_stage_index])
            self._touch(ctx, workflow)
        else:
            self._finish_workflow(ctx, workflow)
        logger.info("Workflow %s finished stage %s", workflow.id, stage.stage_template_id)
        return AdvanceResult(workflow=workflow, stage=stage, activities=activities, advanced=True)

    def _execute(
        self,
        ctx: RequestContext,
        workflow: Workflow,
        activity: Activity,
        template: ActivityTemplate,
        default_output: Any = None,
    ) -> bool:
        """Run one activity; returns False when it failed."""
        try:
            executor = None
            request: dict[str, Any] = {}
            if template.use_case_code:
                request = self.binder.bind(workflow.context, template.parameters)
                executor = self.executor_registry.resolve(template.use_case_code)
        except StageflowError as e:
            self._mark_failed(ctx, activity, e)
            return False

        if activity.status == ActivityStatus.PENDING:
            activity.status = transition(activity.status, ActivityStatus.IN_PROGRESS)
            _save(self.repositories.activity, ctx, activity)

        output = default_output if default_output is not None else {}
        if executor is not None:
            try:
                ctx.check()
                output = self.task_runner.run(executor, ctx, request)
                if template.output_mapping:
                    output = self.binder.bind(output, template.output_mapping)
            except DeadlineExceededError:
                raise
            except Exception as e:
                # Executors are arbitrary business code; their failures are scoped to the activity.
                self._mark_failed(ctx, activity, e)
                return False

        self._activity_entry(workflow, template)["output"] = output
        activity.result = output
        activity.status = transition(activity.status, ActivityStatus.COMPLETED)
        activity.completed_at = self.clock()
        _save(self.repositories.activity, ctx, activity)
        return True

    def _mark_failed(self, ctx: RequestContext, activity: Activity, error: Exception) -> None:
        logger.warning("Activity %s (%s) failed: %s", activity.id, activity.activity_template_id, error)
        activity.status = transition(activity.status, ActivityStatus.FAILED)
        activity.error = str(error) or type(error).__name__
        activity.completed_at = self.clock()
        _save(self.repositories.activity, ctx, activity)

    def _fail(self, ctx: RequestContext, workflow: Workflow, stage: Stage, activity: Activity) -> None:
        stage.status = transition(stage.status, StageStatus.FAILED)
        stage.completed_at = self.clock()
        _save(self.repositories.stage, ctx, stage)

        workflow.status = transition(workflow.status, WorkflowStatus.FAILED)
        workflow.error = f"Activity '{activity.name or activity.activity_template_id}' failed: {activity.error}"
        self._touch(ctx, workflow)
        logger.warning("Workflow %s failed at stage %s", workflow.id, stage.stage_template_id)

    def _finish_workflow(self, ctx: RequestContext, workflow: Workflow) -> None:
        workflow.status = transition(workflow.status, WorkflowStatus.COMPLETED)
        self._touch(ctx, workflow)
        logger.info("Workflow %s completed", workflow.id)

    def _touch(self, ctx: RequestContext, workflow: Workflow) -> None:
        workflow.updated_at = self.clock()
        _save(self.repositories.workflow, ctx, workflow)

    @staticmethod
    def _activity_entry(workflow: Workflow, template: ActivityTemplate) -> dict[str, Any]:
        activities = workflow.context.setdefault("activities", {})
        return activities.setdefault(template.id, {"name": template.name})
