"""
Common Utilities

Shared modules used across the API and the workflow engine:
- config.py - Settings and the entity key
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .config import (
    CLOSED_STATE,
    DEFAULT_MESSAGE_BODY,
    EntityId,
    MonitorSettings,
    load_settings,
)
from .exceptions import (
    MonitorError,
    ConfigError,
    ConfigurationMissing,
    LockingViolation,
    EntityOperationError,
    NotificationFailure,
    OrchestrationError,
    InstanceNotFound,
    OrchestratorNotRegistered,
    ActivityFailed,
    NonDeterminismError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_levels,
    log_notification,
)

__all__ = [
    # Config
    "CLOSED_STATE",
    "DEFAULT_MESSAGE_BODY",
    "EntityId",
    "MonitorSettings",
    "load_settings",
    # Exceptions
    "MonitorError",
    "ConfigError",
    "ConfigurationMissing",
    "LockingViolation",
    "EntityOperationError",
    "NotificationFailure",
    "OrchestrationError",
    "InstanceNotFound",
    "OrchestratorNotRegistered",
    "ActivityFailed",
    "NonDeterminismError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_levels",
    "log_notification",
]
