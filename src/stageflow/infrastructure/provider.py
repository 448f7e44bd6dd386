from stageflow.domain.port import ExecutorBase


def load_executors() -> list[type[ExecutorBase]]:
    """Returns a list of all registered executor classes."""
    return list(ExecutorBase._executors)
