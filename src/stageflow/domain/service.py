from collections.abc import Iterable
from enum import Enum
from typing import TypeVar

from stageflow.domain.error import InvalidTransitionError
from stageflow.domain.value_object import ActivityStatus, StageStatus, WorkflowStatus

S = TypeVar("S", bound=Enum)

WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.IN_PROGRESS: frozenset(
        {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}

STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS, StageStatus.FAILED}),
    StageStatus.IN_PROGRESS: frozenset({StageStatus.COMPLETED, StageStatus.FAILED}),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.FAILED: frozenset(),
}

ACTIVITY_TRANSITIONS: dict[ActivityStatus, frozenset[ActivityStatus]] = {
    ActivityStatus.PENDING: frozenset({ActivityStatus.IN_PROGRESS, ActivityStatus.FAILED}),
    ActivityStatus.IN_PROGRESS: frozenset({ActivityStatus.COMPLETED, ActivityStatus.FAILED}),
    ActivityStatus.COMPLETED: frozenset(),
    ActivityStatus.FAILED: frozenset(),
}

_TABLES = {
    WorkflowStatus: WORKFLOW_TRANSITIONS,
    StageStatus: STAGE_TRANSITIONS,
    ActivityStatus: ACTIVITY_TRANSITIONS,
}


def can_transition(current: S, target: S) -> bool:
    table = _TABLES[type(current)]
    return target in table[current]


def transition(current: S, target: S) -> S:
    """
    Validates a lifecycle status change and returns the new status.

    :param current: The current status
    :param target: The requested status
    :returns: ``target`` when the move is allowed
    :raises InvalidTransitionError: If the move is not allowed (terminal states never change)
    """
    if type(current) is not type(target):
        raise InvalidTransitionError(f"Cannot move {type(current).__name__} to {type(target).__name__}")
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Invalid {type(current).__name__} transition: {current.value} -> {target.value}"
        )
    return target


def is_terminal(status: Enum) -> bool:
    return not _TABLES[type(status)][status]


T = TypeVar("T")


def sort_by_order_index(templates: Iterable[T]) -> list[T]:
    """
    Sorts templates ascending by ``order_index``; ties are broken by ``id`` and
    templates without an order index are placed at the end.

    :param templates: Stage or activity templates in backing-store order
    :returns: A new, sorted list
    """
    return sorted(
        templates,
        key=lambda t: (t.order_index is None, t.order_index if t.order_index is not None else 0, t.id),
    )
