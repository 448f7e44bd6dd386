import threading
from collections.abc import Callable

from stageflow.application.port import ExecutorRegistry
from stageflow.domain.error import ExecutorNotRegisteredError, ValidationError
from stageflow.domain.port import ExecutorBase, FunctionExecutor


class InMemoryExecutorRegistry(ExecutorRegistry):
    """Resolves executors from an in-memory registry."""

    def __init__(self, executors: list[type[ExecutorBase]] | None = None):
        """
        Initializes registry with optional executor classes.

        :param executors: Executor classes to register under their ``code()``
        :type executors: list[type[ExecutorBase]] | None
        """
        self._lock = threading.Lock()
        self._registry: dict[str, ExecutorBase] = {}
        for cls in executors or []:
            self.register(cls.code(), cls)

    def register(self, use_case_code: str, executor: ExecutorBase | type[ExecutorBase] | Callable) -> None:
        if not isinstance(use_case_code, str) or not use_case_code.strip():
            raise ValidationError("use_case_code must be a non-empty string")
        instance = self._coerce(executor)
        with self._lock:
            self._registry[use_case_code] = instance

    def resolve(self, use_case_code: str) -> ExecutorBase:
        """
        Returns the executor registered for the given code.

        :param use_case_code: The use-case code of the activity
        :type use_case_code: str
        :returns: The registered executor
        :rtype: ExecutorBase
        :raises ExecutorNotRegisteredError: If no executor is registered for the given code
        """
        with self._lock:
            try:
                return self._registry[use_case_code]
            except KeyError:
                raise ExecutorNotRegisteredError(use_case_code) from None

    def is_registered(self, use_case_code: str) -> bool:
        with self._lock:
            return use_case_code in self._registry

    def unregister(self, use_case_code: str) -> bool:
        with self._lock:
            return self._registry.pop(use_case_code, None) is not None

    def codes(self) -> list[str]:
        with self._lock:
            return sorted(self._registry)

    @staticmethod
    def _coerce(executor) -> ExecutorBase:
        if isinstance(executor, ExecutorBase):
            return executor
        if isinstance(executor, type):
            if issubclass(executor, ExecutorBase):
                return executor()
            raise TypeError(f"{executor.__name__} is not an ExecutorBase subclass")
        if callable(executor):
            return FunctionExecutor(executor)
        raise TypeError(f"Cannot register {type(executor).__name__} as an executor")
