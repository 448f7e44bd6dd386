import logging
import os

import msgspec

from stageflow.backend import BackendType
from stageflow.domain.error import ValidationError

DEFAULT_CONFIG_PATH = "stageflow.yaml"
DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Engine settings."""

    backend: BackendType = BackendType.IN_MEMORY
    database_path: str = ":memory:"
    cache_ttl_seconds: float = 300.0
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT


def load_settings(path: str | None = None) -> Settings:
    """
    Load settings from a YAML file, then apply environment overrides.

    Falls back to the ``STAGEFLOW_CONFIG`` environment variable or
    ``stageflow.yaml`` in the current directory; a missing file means defaults.
    ``STAGEFLOW_BACKEND``, ``STAGEFLOW_DATABASE_PATH``, ``STAGEFLOW_CACHE_TTL``
    and ``STAGEFLOW_LOG_LEVEL`` override the file.

    :param path: Optional path to the config file
    :type path: str | None
    :returns: The loaded settings
    :rtype: Settings
    :raises ValidationError: If the file or an override holds an invalid value
    """
    config_path = path or os.getenv("STAGEFLOW_CONFIG", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path, "rb") as f:
            raw = f.read()
        try:
            settings = msgspec.yaml.decode(raw, type=Settings) if raw.strip() else Settings()
        except msgspec.ValidationError as e:
            raise ValidationError(f"Invalid settings in {config_path}: {e}") from e
    else:
        settings = Settings()

    try:
        if os.getenv("STAGEFLOW_BACKEND"):
            settings.backend = BackendType(os.environ["STAGEFLOW_BACKEND"].strip().lower())
        if os.getenv("STAGEFLOW_DATABASE_PATH"):
            settings.database_path = os.environ["STAGEFLOW_DATABASE_PATH"]
        if os.getenv("STAGEFLOW_CACHE_TTL"):
            settings.cache_ttl_seconds = float(os.environ["STAGEFLOW_CACHE_TTL"])
    except ValueError as e:
        raise ValidationError(f"Invalid environment override: {e}") from e
    if os.getenv("STAGEFLOW_LOG_LEVEL"):
        settings.log_level = os.environ["STAGEFLOW_LOG_LEVEL"].strip().upper()

    if settings.cache_ttl_seconds <= 0:
        raise ValidationError(f"cache_ttl_seconds must be positive, got {settings.cache_ttl_seconds}")
    return settings


def configure_logging(settings: Settings) -> None:
    """Configure the ``stageflow`` logger hierarchy from settings."""
    logger = logging.getLogger("stageflow")
    logger.setLevel(settings.log_level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(settings.log_format))
        logger.addHandler(handler)
