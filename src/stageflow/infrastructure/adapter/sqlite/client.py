from stageflow.application.cache import TemplateCache
from stageflow.application.port import IDGenerator, Repositories
from stageflow.application.schema import SchemaProcessor
from stageflow.application.service import StageAdvancer, WorkflowInstantiator, utcnow
from stageflow.client import Client
from stageflow.config import Settings
from stageflow.domain.port import ExecutorBase
from stageflow.infrastructure.adapter.in_memory.executor_registry import InMemoryExecutorRegistry
from stageflow.infrastructure.adapter.in_memory.id_generator import UUIDGenerator
from stageflow.infrastructure.adapter.sqlite.repository import (
    SQLiteActivityRepository,
    SQLiteActivityTemplateRepository,
    SQLiteDatabase,
    SQLiteStageRepository,
    SQLiteStageTemplateRepository,
    SQLiteTransactionService,
    SQLiteWorkflowRepository,
    SQLiteWorkflowTemplateRepository,
)


class SQLiteClient(Client):
    """SQLite-based workflow client."""

    pass


def create(
    executors: list[type[ExecutorBase]],
    db_path: str | None = None,
    settings: Settings | None = None,
    id_generator: IDGenerator | None = None,
    clock=utcnow,
    strict_input: bool = False,
) -> SQLiteClient:
    """
    Creates a SQLiteClient with the specified executors and database path.

    :param executors: Executor classes to register under their codes
    :type executors: list[type[ExecutorBase]]
    :param db_path: Path to SQLite database file; overrides ``settings.database_path``
    :type db_path: str | None
    :param settings: Engine settings; defaults apply when omitted
    :type settings: Settings | None
    :param id_generator: ID generator; UUID4 when omitted
    :type id_generator: IDGenerator | None
    :param clock: Returns the current time as an aware datetime
    :param strict_input: Reject input fields not described by a schema
    :type strict_input: bool
    :returns: Configured SQLiteClient instance
    :rtype: SQLiteClient
    """
    settings = settings or Settings()
    id_generator = id_generator or UUIDGenerator()
    database = SQLiteDatabase(db_path=db_path or settings.database_path)
    repositories = Repositories(
        workflow_template=SQLiteWorkflowTemplateRepository(database),
        stage_template=SQLiteStageTemplateRepository(database),
        activity_template=SQLiteActivityTemplateRepository(database),
        workflow=SQLiteWorkflowRepository(database),
        stage=SQLiteStageRepository(database),
        activity=SQLiteActivityRepository(database),
    )
    registry = InMemoryExecutorRegistry(executors)
    cache = TemplateCache(repositories, ttl_seconds=settings.cache_ttl_seconds)
    schema_processor = SchemaProcessor(strict=strict_input)

    return SQLiteClient(
        repositories=repositories,
        executor_registry=registry,
        cache=cache,
        instantiator=WorkflowInstantiator(
            repositories=repositories,
            cache=cache,
            schema_processor=schema_processor,
            id_generator=id_generator,
            transaction_service=SQLiteTransactionService(database),
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
        on_close=database.close,
    )
