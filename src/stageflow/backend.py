from enum import Enum


class BackendType(str, Enum):
    """Supported persistence backends."""

    IN_MEMORY = "in_memory"
    SQLITE = "sqlite"
