from datetime import datetime, timezone

import pytest

from stageflow.application.port import IDGenerator, Repositories
from stageflow.domain.value_object import RequestContext
from stageflow.infrastructure.adapter.in_memory.repository import (
    InMemoryActivityRepository,
    InMemoryActivityTemplateRepository,
    InMemoryStageRepository,
    InMemoryStageTemplateRepository,
    InMemoryWorkflowRepository,
    InMemoryWorkflowTemplateRepository,
)

FIXED_NOW = datetime(2024, 5, 17, 9, 30, 0, tzinfo=timezone.utc)


class SequentialIDGenerator(IDGenerator):
    """Deterministic ids: id-1, id-2, ..."""

    def __init__(self, prefix: str = "id"):
        self.prefix = prefix
        self.count = 0

    def generate(self) -> str:
        self.count += 1
        return f"{self.prefix}-{self.count}"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def ctx():
    return RequestContext()


@pytest.fixture
def repositories():
    return Repositories(
        workflow_template=InMemoryWorkflowTemplateRepository(),
        stage_template=InMemoryStageTemplateRepository(),
        activity_template=InMemoryActivityTemplateRepository(),
        workflow=InMemoryWorkflowRepository(),
        stage=InMemoryStageRepository(),
        activity=InMemoryActivityRepository(),
    )


@pytest.fixture
def id_generator():
    return SequentialIDGenerator()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fixed_now():
    return FIXED_NOW
