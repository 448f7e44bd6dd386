from typing import Any

import msgspec


class StageflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(StageflowError, ValueError):
    """Raised when a request is malformed or misses required fields."""


class FieldError(msgspec.Struct, frozen=True, kw_only=True):
    """A single field-level schema violation."""

    path: str
    constraint: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message} ({self.constraint})"


class SchemaValidationError(ValidationError):
    """Raised when input does not satisfy a template-declared schema.

    :param errors: The field-level violations, ordered by field path
    :type errors: list[FieldError]
    """

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        detail = "; ".join(str(e) for e in self.errors)
        super().__init__(f"Input validation failed: {detail}")

    def to_dict(self) -> dict[str, Any]:
        return {"errors": msgspec.to_builtins(self.errors)}


class InvalidTransitionError(ValidationError):
    """Raised when a lifecycle status change is not permitted."""


class NotFoundError(StageflowError, LookupError):
    """Raised when a template or referenced entity does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def __str__(self) -> str:
        return self.args[0]


class PersistenceError(StageflowError):
    """Raised when a repository operation fails for transport or storage reasons."""


class DispatchError(StageflowError):
    """Raised when an activity cannot be dispatched to its executor."""


class ExecutorNotRegisteredError(DispatchError, LookupError):
    """Raised when no executor is registered for a use-case code."""

    def __init__(self, use_case_code: str):
        self.use_case_code = use_case_code
        super().__init__(f"No executor registered for use case '{use_case_code}'")

    def __str__(self) -> str:
        return self.args[0]


class BindingError(DispatchError):
    """Raised when a parameter binding cannot be resolved against the workflow context."""


class DeadlineExceededError(StageflowError, TimeoutError):
    """Raised when the caller's deadline has passed before an I/O step."""


class PreloadError(StageflowError):
    """Raised when cache preloading failed for one or more templates."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        super().__init__(f"Preload encountered {len(self.errors)} errors: {[str(e) for e in self.errors]}")
