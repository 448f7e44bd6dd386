from collections.abc import Callable, Mapping
from typing import Any, ClassVar

from stageflow.domain.value_object import RequestContext


class ExecutorBase:
    """Base class for all business-operation executors.

    Enforces an ``execute`` method and records every subclass so hosts can
    register them in bulk.
    """

    _executors: ClassVar[list[type["ExecutorBase"]]] = []

    #: Registry key; defaults to the class name when not set.
    use_case_code: ClassVar[str | None] = None
    #: Optional type the request mapping is converted to before ``execute``.
    request_type: ClassVar[Any] = None

    def __init_subclass__(cls, register: bool = True, **kwargs):
        """
        Registers subclass and ensures 'execute' method is defined.

        :param register: Whether to record the subclass in the executor list
        :type register: bool
        :param kwargs: Additional keyword arguments passed to super().__init_subclass__
        :raises TypeError: If the subclass doesn't define an 'execute' method
        """
        super().__init_subclass__(**kwargs)

        if "execute" not in cls.__dict__ and not any("execute" in base.__dict__ for base in cls.__mro__[1:-2]):
            raise TypeError(f"{cls.__name__} must define a 'execute' method")

        if register:
            ExecutorBase._executors.append(cls)

    @classmethod
    def code(cls) -> str:
        return cls.use_case_code or cls.__name__

    def execute(self, ctx: RequestContext, request: Any) -> Mapping[str, Any]:
        """
        Run the business operation.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param request: The bound request, converted to ``request_type`` when one is declared
        :type request: Any
        :returns: The operation's response document
        :rtype: Mapping[str, Any]
        :raises NotImplementedError: Must be implemented by subclasses
        """
        raise NotImplementedError("Executors must implement the execute method")


class FunctionExecutor(ExecutorBase, register=False):
    """Adapts a plain ``(ctx, request) -> mapping`` callable to the executor shape."""

    def __init__(self, func: Callable[[RequestContext, Any], Mapping[str, Any]], request_type: Any = None):
        if not callable(func):
            raise TypeError(f"Executor function must be callable, got {type(func).__name__}")
        self._func = func
        if request_type is not None:
            self.request_type = request_type

    def execute(self, ctx: RequestContext, request: Any) -> Mapping[str, Any]:
        return self._func(ctx, request)

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self._func, '__name__', self._func)!r})"
