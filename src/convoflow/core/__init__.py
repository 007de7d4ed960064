"""Core modules for convoflow.

This package contains the shared infrastructure:
- Configuration management
- Logging utilities
- Database connection, sessions and table mappings
- The exception hierarchy
"""

from .config import (
    ApiServerConfig,
    ConvoflowConfig,
    DatabaseConfig,
    DeliveryConfig,
    EngineConfig,
    GatewayConfig,
    LoggingConfig,
    RetryPolicyConfig,
    SchedulerConfig,
    TemplateConfig,
)
from .database import DatabaseManager, init_database
from .exceptions import (
    AutomationNotFound,
    ConcurrencyConflict,
    ConvoflowError,
    RunAlreadyActive,
    RunNotFound,
    SchedulerMissedWindow,
    SendError,
    TerminalSendError,
    TransientSendError,
    ValidationError,
    ValidationIssue,
)
from .logger import get_logger, setup_logging

__all__ = [
    "ApiServerConfig",
    "AutomationNotFound",
    "ConcurrencyConflict",
    "ConvoflowConfig",
    "ConvoflowError",
    "DatabaseConfig",
    "DatabaseManager",
    "DeliveryConfig",
    "EngineConfig",
    "GatewayConfig",
    "LoggingConfig",
    "RetryPolicyConfig",
    "RunAlreadyActive",
    "RunNotFound",
    "SchedulerConfig",
    "SchedulerMissedWindow",
    "SendError",
    "TemplateConfig",
    "TerminalSendError",
    "TransientSendError",
    "ValidationError",
    "ValidationIssue",
    "get_logger",
    "init_database",
    "setup_logging",
]
