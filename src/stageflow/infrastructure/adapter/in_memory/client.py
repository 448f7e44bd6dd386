from stageflow.application.cache import TemplateCache
from stageflow.application.port import IDGenerator, Repositories
from stageflow.application.schema import SchemaProcessor
from stageflow.application.service import StageAdvancer, WorkflowInstantiator, utcnow
from stageflow.client import Client
from stageflow.config import Settings
from stageflow.domain.port import ExecutorBase
from stageflow.infrastructure.adapter.in_memory.executor_registry import InMemoryExecutorRegistry
from stageflow.infrastructure.adapter.in_memory.id_generator import UUIDGenerator
from stageflow.infrastructure.adapter.in_memory.repository import (
    InMemoryActivityRepository,
    InMemoryActivityTemplateRepository,
    InMemoryStageRepository,
    InMemoryStageTemplateRepository,
    InMemoryWorkflowRepository,
    InMemoryWorkflowTemplateRepository,
)


class InMemoryClient(Client):
    pass


def create(
    executors: list[type[ExecutorBase]],
    settings: Settings | None = None,
    id_generator: IDGenerator | None = None,
    clock=utcnow,
    strict_input: bool = False,
) -> InMemoryClient:
    """
    Creates an InMemoryClient with the specified executors.

    :param executors: Executor classes to register under their codes
    :type executors: list[type[ExecutorBase]]
    :param settings: Engine settings; defaults apply when omitted
    :type settings: Settings | None
    :param id_generator: ID generator; UUID4 when omitted
    :type id_generator: IDGenerator | None
    :param clock: Returns the current time as an aware datetime
    :param strict_input: Reject input fields not described by a schema
    :type strict_input: bool
    :returns: Configured InMemoryClient instance
    :rtype: InMemoryClient
    """
    settings = settings or Settings()
    id_generator = id_generator or UUIDGenerator()
    repositories = Repositories(
        workflow_template=InMemoryWorkflowTemplateRepository(),
        stage_template=InMemoryStageTemplateRepository(),
        activity_template=InMemoryActivityTemplateRepository(),
        workflow=InMemoryWorkflowRepository(),
        stage=InMemoryStageRepository(),
        activity=InMemoryActivityRepository(),
    )
    registry = InMemoryExecutorRegistry(executors)
    cache = TemplateCache(repositories, ttl_seconds=settings.cache_ttl_seconds)
    schema_processor = SchemaProcessor(strict=strict_input)

    return InMemoryClient(
        repositories=repositories,
        executor_registry=registry,
        cache=cache,
        instantiator=WorkflowInstantiator(
            repositories=repositories,
            cache=cache,
            schema_processor=schema_processor,
            id_generator=id_generator,
            clock=clock,
        ),
        advancer=StageAdvancer(
            repositories=repositories,
            cache=cache,
            executor_registry=registry,
            id_generator=id_generator,
            schema_processor=schema_processor,
            clock=clock,
        ),
    )
