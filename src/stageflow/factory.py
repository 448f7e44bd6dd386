from stageflow.backend import BackendType
from stageflow.client import Client
from stageflow.config import Settings, configure_logging
from stageflow.domain.port import ExecutorBase
from stageflow.infrastructure.adapter.in_memory.client import create as create_in_memory_client
from stageflow.infrastructure.adapter.sqlite.client import create as create_sqlite_client


def create(
    backend: BackendType | str | None = None,
    executors: list[type[ExecutorBase]] | None = None,
    settings: Settings | None = None,
    **kwargs,
) -> Client:
    """
    Factory function to create a Client with the specified backend.

    :param backend: The persistence backend; ``settings.backend`` when omitted
    :type backend: BackendType | str | None
    :param executors: Optional list of executor classes to pre-register
    :type executors: list[type[ExecutorBase]] | None
    :param settings: Engine settings; defaults apply when omitted
    :type settings: Settings | None
    :param kwargs: Additional backend-specific options (``db_path``, ``id_generator``,
        ``clock``, ``strict_input``)
    :returns: A configured Client instance
    :rtype: Client
    :raises ValueError: If the backend type is unsupported
    """
    settings = settings or Settings()
    executors = executors or []
    backend = BackendType(backend) if backend is not None else settings.backend
    configure_logging(settings)

    if backend == BackendType.IN_MEMORY:
        return create_in_memory_client(executors, settings=settings, **kwargs)

    elif backend == BackendType.SQLITE:
        return create_sqlite_client(executors, settings=settings, **kwargs)

    else:
        raise ValueError(f"Unsupported backend: {backend}")
