"""
DevStack Common Utilities

Shared error types, results, decorators, logging and configuration.
"""

from .exceptions import (
    DevStackError, InstallCancelled, NetworkError, DownloadError,
    FilesystemError, ArchiveError, ChecksumError, ProcessError,
    ServiceStartError, ServiceAlreadyRunningError, ServiceStopError,
    DataInitError, ValidationError, UnknownAppError, InstallInProgressError,
    GroupConflictError, StateError, RegistryUnavailableError,
    StateTransitionError, ConfigError, InvalidConfigError, TemplateNotFoundError,
)
from .result import OperationResult
from .decorators import handle_errors, returns_result, retry, timed
from .logging_config import setup_logging, LogContext
from .config import DevStackConfig

__all__ = [
    # Exceptions
    "DevStackError", "InstallCancelled", "NetworkError", "DownloadError",
    "FilesystemError", "ArchiveError", "ChecksumError", "ProcessError",
    "ServiceStartError", "ServiceAlreadyRunningError", "ServiceStopError",
    "DataInitError", "ValidationError", "UnknownAppError", "InstallInProgressError",
    "GroupConflictError", "StateError", "RegistryUnavailableError",
    "StateTransitionError", "ConfigError", "InvalidConfigError", "TemplateNotFoundError",
    # Results
    "OperationResult",
    # Decorators
    "handle_errors", "returns_result", "retry", "timed",
    # Logging
    "setup_logging", "LogContext",
    # Configuration
    "DevStackConfig",
]
