"""
Tests for domain services.

This module tests the lifecycle state machine and template ordering.
"""

import pytest

from stageflow.domain.entity import ActivityTemplate, StageTemplate
from stageflow.domain.error import InvalidTransitionError, ValidationError
from stageflow.domain.service import can_transition, is_terminal, sort_by_order_index, transition
from stageflow.domain.value_object import ActivityStatus, StageStatus, WorkflowStatus


class TestTransition:
    """Test cases for lifecycle transitions."""

    @pytest.mark.parametrize(
        "target", [WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED]
    )
    def test_workflow_leaves_in_progress(self, target):
        """Test that an in-progress workflow may reach every terminal status."""
        assert transition(WorkflowStatus.IN_PROGRESS, target) is target

    def test_stage_lifecycle(self):
        """Test the normal stage lifecycle."""
        status = transition(StageStatus.PENDING, StageStatus.IN_PROGRESS)
        status = transition(status, StageStatus.COMPLETED)

        assert status is StageStatus.COMPLETED

    def test_activity_pending_to_failed_allowed(self):
        """Test that an activity can fail before it starts."""
        assert can_transition(ActivityStatus.PENDING, ActivityStatus.FAILED)

    def test_activity_cannot_skip_to_completed(self):
        """Test that a pending activity cannot complete without running."""
        with pytest.raises(InvalidTransitionError, match="pending -> completed"):
            transition(ActivityStatus.PENDING, ActivityStatus.COMPLETED)

    @pytest.mark.parametrize("status", [WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED])
    def test_terminal_workflow_never_changes(self, status):
        """Test that terminal workflow statuses are final."""
        assert is_terminal(status)
        with pytest.raises(InvalidTransitionError):
            transition(status, WorkflowStatus.IN_PROGRESS)

    def test_mixed_enum_types_rejected(self):
        """Test that a status cannot move to a status of another entity kind."""
        with pytest.raises(InvalidTransitionError):
            transition(StageStatus.PENDING, ActivityStatus.IN_PROGRESS)

    def test_invalid_transition_is_validation_error(self):
        """Test that transition errors belong to the validation family."""
        with pytest.raises(ValidationError):
            transition(StageStatus.COMPLETED, StageStatus.FAILED)

    def test_non_terminal(self):
        """Test that pending and in-progress are not terminal."""
        assert not is_terminal(StageStatus.PENDING)
        assert not is_terminal(ActivityStatus.IN_PROGRESS)
        assert not is_terminal(WorkflowStatus.IN_PROGRESS)


class TestSortByOrderIndex:
    """Test cases for template ordering."""

    def test_sorts_ascending_regardless_of_input_order(self):
        """Test that templates come back ascending by order index."""
        templates = [
            StageTemplate(id="c", workflow_template_id="t", order_index=2),
            StageTemplate(id="a", workflow_template_id="t", order_index=0),
            StageTemplate(id="b", workflow_template_id="t", order_index=1),
        ]

        assert [t.id for t in sort_by_order_index(templates)] == ["a", "b", "c"]

    def test_ties_broken_by_id(self):
        """Test that equal order indexes are ordered by id."""
        templates = [
            ActivityTemplate(id="zeta", stage_template_id="s", order_index=1),
            ActivityTemplate(id="alpha", stage_template_id="s", order_index=1),
        ]

        assert [t.id for t in sort_by_order_index(templates)] == ["alpha", "zeta"]

    def test_missing_index_sorts_last(self):
        """Test that templates without an order index go to the end."""
        templates = [
            StageTemplate(id="none", workflow_template_id="t", order_index=None),
            StageTemplate(id="late", workflow_template_id="t", order_index=9),
            StageTemplate(id="negative", workflow_template_id="t", order_index=-1),
        ]

        assert [t.id for t in sort_by_order_index(templates)] == ["negative", "late", "none"]

    def test_returns_new_list(self):
        """Test that the input list is not reordered in place."""
        templates = [
            StageTemplate(id="b", workflow_template_id="t", order_index=1),
            StageTemplate(id="a", workflow_template_id="t", order_index=0),
        ]

        sort_by_order_index(templates)

        assert [t.id for t in templates] == ["b", "a"]
