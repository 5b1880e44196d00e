"""
DevStack Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, user feedback, and programmatic error handling.
"""

from typing import Optional, Dict, Any


class DevStackError(Exception):
    """
    Base exception for all DevStack errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class InstallCancelled(Exception):
    """Raised inside the install pipeline once the user cancelled.

    Deliberately not a DevStackError: cancellation is a terminal state of
    its own, not a failure.
    """

    def __init__(self, app_id: str):
        super().__init__(f"Installation of '{app_id}' cancelled")
        self.app_id = app_id


# =============================================================================
# Network errors
# =============================================================================

class NetworkError(DevStackError):
    """Base for timeouts, non-2xx responses and connection failures."""
    pass


class DownloadError(NetworkError):
    """Download failed."""
    def __init__(self, url: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to download: {reason}",
            code="DOWNLOAD_FAILED",
            details={"url": url, "reason": reason},
            cause=cause,
        )


# =============================================================================
# Filesystem errors
# =============================================================================

class FilesystemError(DevStackError):
    """Permission denied, missing path, disk full."""
    def __init__(self, path: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Filesystem error on {path}: {reason}",
            code="FILESYSTEM_ERROR",
            details={"path": path, "reason": reason},
            cause=cause,
        )


# =============================================================================
# Archive errors
# =============================================================================

class ArchiveError(DevStackError):
    """Corrupt entry or unsupported archive format."""
    def __init__(self, archive: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to extract {archive}: {reason}",
            code="ARCHIVE_ERROR",
            details={"archive": archive, "reason": reason},
            cause=cause,
        )


class ChecksumError(ArchiveError):
    """Checksum verification failed."""
    def __init__(self, filename: str, algorithm: str, expected: str, actual: str):
        DevStackError.__init__(
            self,
            f"Checksum mismatch for {filename}",
            code="CHECKSUM_MISMATCH",
            details={
                "filename": filename,
                "algorithm": algorithm,
                "expected": expected,
                "actual": actual,
            },
            recoverable=False,
        )


# =============================================================================
# Process errors
# =============================================================================

class ProcessError(DevStackError):
    """Base for spawn failures, immediate exits and kill failures."""
    pass


class ServiceStartError(ProcessError):
    """Service failed to spawn or exited during the grace period."""
    def __init__(self, app_id: str, reason: str, recent_logs: Optional[list] = None):
        super().__init__(
            f"Failed to start '{app_id}': {reason}",
            code="SERVICE_START_FAILED",
            details={"app_id": app_id, "reason": reason, "recent_logs": recent_logs or []},
        )


class ServiceAlreadyRunningError(ProcessError):
    """A tracked, live process already exists for the app."""
    def __init__(self, app_id: str, pid: int):
        super().__init__(
            "Service already running",
            code="SERVICE_ALREADY_RUNNING",
            details={"app_id": app_id, "pid": pid},
        )


class ServiceStopError(ProcessError):
    """Failed to stop a service."""
    def __init__(self, app_id: str, reason: str):
        super().__init__(
            f"Failed to stop '{app_id}': {reason}",
            code="SERVICE_STOP_FAILED",
            details={"app_id": app_id, "reason": reason},
        )


class DataInitError(ProcessError):
    """One-time data directory initialization failed."""
    def __init__(self, app_id: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to initialize database: {reason}",
            code="DATA_INIT_FAILED",
            details={"app_id": app_id, "reason": reason},
            cause=cause,
        )


# =============================================================================
# Validation errors
# =============================================================================

class ValidationError(DevStackError):
    """Base for requests rejected before any work starts."""
    pass


class UnknownAppError(ValidationError):
    """App id (or version) is not in the catalog or registry."""
    def __init__(self, app_id: str, version: Optional[str] = None):
        what = f"'{app_id}' version '{version}'" if version else f"'{app_id}'"
        super().__init__(
            f"App {what} not found",
            code="UNKNOWN_APP",
            details={"app_id": app_id, "version": version},
            recoverable=False,
        )


class InstallInProgressError(ValidationError):
    """An install for the same app id is already in flight."""
    def __init__(self, app_id: str):
        super().__init__(
            "Installation already in progress",
            code="INSTALL_IN_PROGRESS",
            details={"app_id": app_id},
        )


class GroupConflictError(ValidationError):
    """Another app of the same exclusive group is installed."""
    def __init__(self, app_id: str, group: str, conflict_id: str, conflict_name: str):
        super().__init__(
            f"Cannot install: {conflict_name} is already installed. "
            f"Only one {group} can be installed at a time.",
            code="GROUP_CONFLICT",
            details={"app_id": app_id, "group": group, "conflict": conflict_id},
        )


# =============================================================================
# State errors
# =============================================================================

class StateError(DevStackError):
    """Base for state-related errors."""
    pass


class RegistryUnavailableError(StateError):
    """The install registry database could not be opened or queried."""
    def __init__(self, path: str, cause: Optional[Exception] = None):
        super().__init__(
            "Database not initialized",
            code="REGISTRY_UNAVAILABLE",
            details={"path": path},
            cause=cause,
        )


class StateTransitionError(StateError):
    """Raised when an invalid pipeline state transition is attempted."""
    def __init__(self, app_id: str, current_state: str, target_state: str):
        super().__init__(
            f"Install of '{app_id}' cannot move from {current_state} to {target_state}",
            code="INVALID_STATE_TRANSITION",
            details={
                "app_id": app_id,
                "current_state": current_state,
                "target_state": target_state,
            },
            recoverable=False,
        )


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(DevStackError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )


class TemplateNotFoundError(ConfigError):
    """Config template not found."""
    def __init__(self, template_name: str):
        super().__init__(
            f"Template not found: {template_name}",
            code="TEMPLATE_NOT_FOUND",
            details={"template": template_name},
        )
