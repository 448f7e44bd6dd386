"""
Tests for the Client façade.

This module tests executor registration, template saving with cache
invalidation, and the workflow operations exposed by the client.
"""

import pytest

from stageflow import BackendType, create
from stageflow.domain.entity import StageTemplate, WorkflowTemplate
from stageflow.domain.error import InvalidTransitionError, NotFoundError, PreloadError, ValidationError
from stageflow.domain.port import ExecutorBase
from stageflow.domain.value_object import ActivityStatus, RequestContext, StageStatus, WorkflowStatus


class SendWelcome(ExecutorBase, register=False):
    use_case_code = "send_welcome"

    def execute(self, ctx, request):
        return {"sent_to": request["email"]}


REVIEW_DEFINITION = {
    "id": "review",
    "name": "Review",
    "stages": [
        {
            "id": "intake",
            "activities": [
                {"id": "approve", "requires_input": True},
                {"id": "welcome", "use_case_code": "send_welcome", "parameters": {"email": "input.email"}},
            ],
        },
        {"id": "archive"},
    ],
}


class TestClient:
    """Test cases for Client."""

    def setup_method(self):
        """Setup test fixtures."""
        self.client = create(BackendType.IN_MEMORY)

    def test_executor_chaining(self):
        """Test that executor registration returns the client."""
        result = self.client.executor(SendWelcome).executor("ping", lambda ctx, request: {"pong": True})

        assert result is self.client
        assert self.client.executor_registry.codes() == ["ping", "send_welcome"]

    def test_executor_requires_class_or_value(self):
        """Test that a bare code without an executor is rejected."""
        with pytest.raises(TypeError):
            self.client.executor("ping")

    def test_load_definition_saves_templates(self):
        """Test that a definition becomes workflow, stage and activity templates."""
        definition = self.client.load_definition(REVIEW_DEFINITION)

        assert definition.id == "review"
        assert len(self.client.list_workflows()) == 0
        assert self.client.preload(["review"]) == 1
        stats = self.client.cache_stats()
        assert stats.workflow_templates == 1
        assert stats.activity_template_lists == 2

    def test_load_definition_twice_replaces(self):
        """Test that loading a definition again updates the saved templates."""
        self.client.load_definition(REVIEW_DEFINITION)

        self.client.load_definition({**REVIEW_DEFINITION, "name": "Second review"})

        started = self.client.start_workflow("review", name="x")
        assert started.workflow.name == "x"
        assert self.client.cache.get_workflow_template(RequestContext(), "review").name == "Second review"

    def test_saving_template_invalidates_cache(self):
        """Test that a saved workflow template is seen by the next start."""
        self.client.load_definition(REVIEW_DEFINITION)
        self.client.start_workflow("review")

        self.client.save_workflow_template(WorkflowTemplate(id="review", name="Review", active=False))

        with pytest.raises(ValidationError, match="not active"):
            self.client.start_workflow("review")

    def test_saving_stage_template_invalidates_stage_list(self):
        """Test that a new stage template is picked up after the list was cached."""
        self.client.load_definition({"id": "empty", "name": "Empty"})
        assert self.client.start_workflow("empty").stage is None

        self.client.save_stage_template(StageTemplate(id="first", workflow_template_id="empty", order_index=0))

        assert self.client.start_workflow("empty").stage.stage_template_id == "first"

    def test_start_and_get_workflow(self):
        """Test starting a workflow and reading it back."""
        self.client.load_definition(REVIEW_DEFINITION)

        started = self.client.start_workflow("review", {"email": "a@example.com"}, workspace_id="ws-1")
        workflow = self.client.get_workflow(started.workflow.id)

        assert workflow.context == {"input": {"email": "a@example.com"}}
        assert workflow.workspace_id == "ws-1"
        assert started.success is True
        assert started.warnings == []

    def test_get_unknown_workflow(self):
        """Test that an unknown workflow raises NotFoundError."""
        with pytest.raises(NotFoundError):
            self.client.get_workflow("missing")

    def test_run_waits_then_continue(self):
        """Test running until input is needed, then continuing to completion."""
        self.client.executor(SendWelcome)
        self.client.load_definition(REVIEW_DEFINITION)

        waiting = self.client.run("review", {"email": "a@example.com"})
        assert waiting.waiting_on is not None
        assert waiting.workflow.status == WorkflowStatus.IN_PROGRESS

        continued = self.client.continue_workflow(waiting.workflow.id, waiting.waiting_on, {"approved": True})
        assert continued.workflow.current_stage_index == 1

        finished = self.client.advance(continued.workflow.id)
        assert finished.workflow.status == WorkflowStatus.COMPLETED
        assert finished.workflow.context["activities"]["welcome"]["output"] == {"sent_to": "a@example.com"}

        stages = self.client.list_stages(finished.workflow.id)
        assert [s.stage_template_id for s in stages] == ["intake", "archive"]
        assert all(s.status == StageStatus.COMPLETED for s in stages)
        activities = self.client.list_activities(stages[0].id)
        assert [a.activity_template_id for a in activities] == ["approve", "welcome"]
        assert all(a.status == ActivityStatus.COMPLETED for a in activities)

    def test_cancel_workflow(self):
        """Test cancelling a workflow and rejecting a second cancel."""
        self.client.load_definition(REVIEW_DEFINITION)
        started = self.client.start_workflow("review")

        cancelled = self.client.cancel_workflow(started.workflow.id)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert self.client.list_workflows(status=WorkflowStatus.CANCELLED)[0].id == started.workflow.id
        with pytest.raises(InvalidTransitionError):
            self.client.cancel_workflow(started.workflow.id)

    def test_preload_unknown_template(self):
        """Test that preloading a missing template reports it."""
        with pytest.raises(PreloadError):
            self.client.preload(["nope"])

    def test_close_hook(self):
        """Test that close calls the backend hook once per call."""
        calls = []
        self.client._on_close = lambda: calls.append(True)

        with self.client:
            pass

        assert calls == [True]
