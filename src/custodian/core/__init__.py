"""Custodian Core - configuration, errors, logging, clocks and database access."""

from .clock import Clock, FixedClock, SystemClock
from .config import CoreSettings, clear_config_cache, get_config, set_config
from .exceptions import (
    ArtifactExpired,
    ConfigException,
    ConflictError,
    CustodianException,
    DeletionExecutionError,
    DuplicateActiveRequest,
    ExportNotReady,
    ExportProcessingError,
    ExportRateLimited,
    GracePeriodNotElapsed,
    IntegrityException,
    InvalidToken,
    NoActiveRequest,
    NotFoundError,
    NotInGracePeriod,
    StateGuardError,
    StorageException,
    ValidationError,
)
from .logging import configure_logging, correlation_context, get_logger, sanitize

__all__ = [
    # Clock
    "Clock",
    "FixedClock",
    "SystemClock",
    # Config
    "CoreSettings",
    "get_config",
    "set_config",
    "clear_config_cache",
    # Exceptions
    "CustodianException",
    "ConfigException",
    "IntegrityException",
    "StorageException",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "StateGuardError",
    "DuplicateActiveRequest",
    "InvalidToken",
    "NoActiveRequest",
    "NotInGracePeriod",
    "GracePeriodNotElapsed",
    "ExportRateLimited",
    "ExportNotReady",
    "ArtifactExpired",
    "DeletionExecutionError",
    "ExportProcessingError",
    # Logging
    "configure_logging",
    "correlation_context",
    "get_logger",
    "sanitize",
]
