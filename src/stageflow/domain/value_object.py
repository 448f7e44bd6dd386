import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stageflow.domain.error import DeadlineExceededError


class WorkflowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivityStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RequestContext:
    """Per-call context passed unchanged to every repository and executor call.

    ``deadline`` is a :func:`time.monotonic` timestamp; ``None`` means no deadline.
    """

    deadline: float | None = None
    workspace_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs) -> "RequestContext":
        """
        Build a context whose deadline is ``seconds`` from now.

        :param seconds: Time budget for the whole call
        :type seconds: float
        :returns: A new RequestContext
        :rtype: RequestContext
        """
        return cls(deadline=time.monotonic() + seconds, **kwargs)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise DeadlineExceededError if the deadline has passed."""
        if self.expired:
            raise DeadlineExceededError("Request deadline exceeded")
