"""
export_config -- single public entrypoint for pipeline settings.

Responsibility:
    ``get_settings()`` is the only way runtime code obtains configuration.
    It loads the packaged ``defaults.yaml``, applies the override file named
    by ``EXPENSE_EXPORT_CONFIG`` and the ``DATABASE_URL`` environment
    variable, and caches the resulting ``PipelineSettings``.

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``KeyError`` / ``ValueError`` -- schema violations.
"""

from __future__ import annotations

import os
import threading

from export_config.loader import compute_checksum, load_settings
from export_config.schema import (
    ArtifactSettings,
    DatabaseSettings,
    ExpenseTypeDef,
    LoggingSettings,
    PipelineSettings,
)
from export_kernel.logging_config import get_logger

logger = get_logger("config")

_settings: PipelineSettings | None = None
_lock = threading.Lock()


def get_settings() -> PipelineSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings(environ=os.environ)
            logger.info(
                "settings_loaded",
                extra={
                    "config_version": _settings.config_version,
                    "checksum": _settings.checksum,
                    "source_types": list(_settings.source_types),
                },
            )
        return _settings


def reset_settings() -> None:
    """Forget cached settings. FOR TESTING ONLY."""
    global _settings
    with _lock:
        _settings = None


__all__ = [
    "ArtifactSettings",
    "DatabaseSettings",
    "ExpenseTypeDef",
    "LoggingSettings",
    "PipelineSettings",
    "compute_checksum",
    "get_settings",
    "load_settings",
    "reset_settings",
]
