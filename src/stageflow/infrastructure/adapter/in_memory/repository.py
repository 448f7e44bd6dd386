import copy
import threading
from typing import Any, Generic, TypeVar

from stageflow.application.port import (
    ActivityRepository,
    ActivityTemplateRepository,
    Repository,
    StageRepository,
    StageTemplateRepository,
    WorkflowRepository,
    WorkflowTemplateRepository,
)
from stageflow.domain.entity import RepositoryResult
from stageflow.domain.error import PersistenceError
from stageflow.domain.value_object import RequestContext

T = TypeVar("T")


class InMemoryRepository(Repository[T], Generic[T]):
    """Dictionary-backed repository. Records are copied in and out, so callers
    never share state with the store."""

    def __init__(self, records=None):
        """
        :param records: Optional records to seed the store with
        """
        self._lock = threading.RLock()
        self._records: dict[str, T] = {}
        for record in records or ():
            self._records[record.id] = copy.deepcopy(record)

    def create(self, ctx: RequestContext, record: T) -> RepositoryResult:
        with self._lock:
            if record.id in self._records:
                raise PersistenceError(f"{type(record).__name__} '{record.id}' already exists")
            self._records[record.id] = copy.deepcopy(record)
        return RepositoryResult(data=[copy.deepcopy(record)])

    def read(self, ctx: RequestContext, record_id: str) -> RepositoryResult:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return RepositoryResult(data=[])
            return RepositoryResult(data=[copy.deepcopy(record)])

    def update(self, ctx: RequestContext, record: T) -> RepositoryResult:
        with self._lock:
            if record.id not in self._records:
                return RepositoryResult(data=[])
            self._records[record.id] = copy.deepcopy(record)
        return RepositoryResult(data=[copy.deepcopy(record)])

    def list(self, ctx: RequestContext, **filters: Any) -> RepositoryResult:
        with self._lock:
            matches = [
                copy.deepcopy(record)
                for record in self._records.values()
                if all(getattr(record, key, None) == value for key, value in filters.items())
            ]
        return RepositoryResult(data=matches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryWorkflowTemplateRepository(InMemoryRepository, WorkflowTemplateRepository):
    pass


class InMemoryStageTemplateRepository(InMemoryRepository, StageTemplateRepository):
    pass


class InMemoryActivityTemplateRepository(InMemoryRepository, ActivityTemplateRepository):
    pass


class InMemoryWorkflowRepository(InMemoryRepository, WorkflowRepository):
    pass


class InMemoryStageRepository(InMemoryRepository, StageRepository):
    pass


class InMemoryActivityRepository(InMemoryRepository, ActivityRepository):
    pass
