"""
Tests for the in-memory repositories.
"""

import threading

import pytest

from stageflow.domain.entity import Stage, StageTemplate
from stageflow.domain.error import PersistenceError
from stageflow.domain.value_object import StageStatus
from stageflow.infrastructure.adapter.in_memory.repository import (
    InMemoryStageRepository,
    InMemoryStageTemplateRepository,
)


class TestInMemoryRepository:
    """Test cases for InMemoryRepository."""

    def setup_method(self):
        """Setup test fixtures."""
        self.repository = InMemoryStageTemplateRepository()

    def test_create_and_read(self, ctx):
        """Test creating and reading a record."""
        template = StageTemplate(id="s1", workflow_template_id="t1", name="Intake")

        created = self.repository.create(ctx, template)

        assert created.success is True
        assert created.first() == template
        assert self.repository.read(ctx, "s1").first() == template

    def test_read_missing_is_empty(self, ctx):
        """Test that a missing record is an empty result, not an error."""
        result = self.repository.read(ctx, "missing")

        assert result.success is True
        assert result.data == []

    def test_duplicate_create(self, ctx):
        """Test that creating an existing id fails."""
        self.repository.create(ctx, StageTemplate(id="s1", workflow_template_id="t1"))

        with pytest.raises(PersistenceError, match="already exists"):
            self.repository.create(ctx, StageTemplate(id="s1", workflow_template_id="t1"))

    def test_update(self, ctx):
        """Test replacing a record and updating a missing one."""
        self.repository.create(ctx, StageTemplate(id="s1", workflow_template_id="t1", name="Old"))

        self.repository.update(ctx, StageTemplate(id="s1", workflow_template_id="t1", name="New"))

        assert self.repository.read(ctx, "s1").first().name == "New"
        assert self.repository.update(ctx, StageTemplate(id="s9", workflow_template_id="t1")).data == []

    def test_list_filters(self, ctx):
        """Test equality filters and insertion order."""
        for stage_id, owner in [("s2", "t1"), ("s1", "t1"), ("s3", "t2")]:
            self.repository.create(ctx, StageTemplate(id=stage_id, workflow_template_id=owner))

        assert [s.id for s in self.repository.list(ctx, workflow_template_id="t1").data] == ["s2", "s1"]
        assert len(self.repository.list(ctx).data) == 3

    def test_records_are_copied(self, ctx):
        """Test that callers never share state with the store."""
        template = StageTemplate(id="s1", workflow_template_id="t1", name="Intake")
        self.repository.create(ctx, template)

        template.name = "Changed"
        self.repository.read(ctx, "s1").first().name = "Also changed"

        assert self.repository.read(ctx, "s1").first().name == "Intake"

    def test_seed_records(self, ctx):
        """Test seeding a repository at construction."""
        repository = InMemoryStageTemplateRepository([StageTemplate(id="s1", workflow_template_id="t1")])

        assert len(repository) == 1

    def test_status_filter_matches_enum_value(self, ctx, fixed_now):
        """Test filtering by a status string."""
        repository = InMemoryStageRepository()
        repository.create(ctx, Stage(id="st1", workflow_id="w1", stage_template_id="s1", created_at=fixed_now))
        repository.create(
            ctx,
            Stage(id="st2", workflow_id="w1", stage_template_id="s2", status=StageStatus.COMPLETED, created_at=fixed_now),
        )

        assert [s.id for s in repository.list(ctx, status="completed").data] == ["st2"]

    def test_concurrent_creates(self, ctx):
        """Test that concurrent creates are all stored."""

        def worker(n):
            for i in range(50):
                self.repository.create(ctx, StageTemplate(id=f"s-{n}-{i}", workflow_template_id="t1"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(self.repository) == 200
