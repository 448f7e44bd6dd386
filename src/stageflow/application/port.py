from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any, Generic, TypeVar

from stageflow.domain.entity import (
    Activity,
    ActivityTemplate,
    RepositoryResult,
    Stage,
    StageTemplate,
    Workflow,
    WorkflowTemplate,
)
from stageflow.domain.port import ExecutorBase
from stageflow.domain.value_object import RequestContext

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Abstract persistence port keyed by record id.

    Every call returns a :class:`RepositoryResult`. A missing record is an empty
    result, never an exception; transport and storage failures raise
    :class:`~stageflow.domain.error.PersistenceError`.
    """

    @abstractmethod
    def create(self, ctx: RequestContext, record: T) -> RepositoryResult:
        """
        Persist a new record.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param record: The record to store
        :returns: Result holding the stored record
        :rtype: RepositoryResult
        :raises PersistenceError: If the record cannot be written or the id already exists
        """

    @abstractmethod
    def read(self, ctx: RequestContext, record_id: str) -> RepositoryResult:
        """
        Read a record by id.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param record_id: The record identifier
        :type record_id: str
        :returns: Result holding the record, or an empty result when absent
        :rtype: RepositoryResult
        """

    @abstractmethod
    def update(self, ctx: RequestContext, record: T) -> RepositoryResult:
        """
        Replace an existing record.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param record: The new record state
        :returns: Result holding the stored record, or an empty result when absent
        :rtype: RepositoryResult
        """

    @abstractmethod
    def list(self, ctx: RequestContext, **filters: Any) -> RepositoryResult:
        """
        List records whose attributes equal every given filter value.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param filters: Attribute equality filters, e.g. ``workflow_id="wf-1"``
        :returns: Result holding the matching records in insertion order
        :rtype: RepositoryResult
        """


class WorkflowTemplateRepository(Repository[WorkflowTemplate], ABC):
    pass


class StageTemplateRepository(Repository[StageTemplate], ABC):
    pass


class ActivityTemplateRepository(Repository[ActivityTemplate], ABC):
    pass


class WorkflowRepository(Repository[Workflow], ABC):
    pass


class StageRepository(Repository[Stage], ABC):
    pass


class ActivityRepository(Repository[Activity], ABC):
    pass


class IDGenerator(ABC):
    """Produces globally unique identifiers without external coordination."""

    @abstractmethod
    def generate(self) -> str:
        """
        Generate a unique identifier.

        :returns: A unique identifier string
        :rtype: str
        """


class ExecutorRegistry(ABC):
    """Maps use-case codes to executors."""

    @abstractmethod
    def register(self, use_case_code: str, executor: ExecutorBase | type[ExecutorBase] | Callable) -> None:
        """
        Register an executor under a use-case code, replacing any previous one.

        :param use_case_code: The opaque key referenced by activity templates
        :type use_case_code: str
        :param executor: An executor instance, an executor class, or a ``(ctx, request)`` callable
        :raises TypeError: If ``executor`` does not have the executor shape
        """

    @abstractmethod
    def resolve(self, use_case_code: str) -> ExecutorBase:
        """
        Resolve the executor registered for a use-case code.

        :param use_case_code: The code to look up
        :type use_case_code: str
        :returns: The registered executor
        :rtype: ExecutorBase
        :raises ExecutorNotRegisteredError: If nothing is registered for the code
        """

    @abstractmethod
    def is_registered(self, use_case_code: str) -> bool: ...

    @abstractmethod
    def unregister(self, use_case_code: str) -> bool: ...

    @abstractmethod
    def codes(self) -> list[str]: ...


class TransactionService(ABC):
    """Optional unit-of-work port. Engines run without one when it is absent."""

    @abstractmethod
    def supports_transactions(self) -> bool: ...

    @abstractmethod
    def transaction(self, ctx: RequestContext) -> AbstractContextManager[None]:
        """
        Open a transaction scope; commit on normal exit, roll back on exception.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        """


class Repositories:
    """Groups the repository ports the engine depends on."""

    def __init__(
        self,
        workflow_template: WorkflowTemplateRepository,
        stage_template: StageTemplateRepository,
        activity_template: ActivityTemplateRepository,
        workflow: WorkflowRepository,
        stage: StageRepository,
        activity: ActivityRepository,
    ):
        self.workflow_template = workflow_template
        self.stage_template = stage_template
        self.activity_template = activity_template
        self.workflow = workflow
        self.stage = stage
        self.activity = activity
