"""
Custom exceptions for browser session sync.

Local mutation entry points raise SessionNotFoundError and
ValidationError to their callers. Everything raised by the remote
session API is caught at the sync cycle boundary and reported in the
cycle's result instead of propagating.
"""


class SessionSyncError(Exception):
    """Base exception for all session sync errors."""

    # Whether retrying the same operation later can succeed.
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(SessionSyncError):
    """Raised when a mutation targets a record absent from the local cache."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class ValidationError(SessionSyncError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class NetworkUnavailableError(SessionSyncError):
    """Raised when the remote store cannot be reached.

    Transient: the operation stays queued and is retried on a later cycle.
    """

    retryable = True

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Network unavailable: {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class AuthenticationRequiredError(SessionSyncError):
    """Raised on a 401 response or when no credential is available.

    Aborts the current sync cycle. The engine does not schedule a retry;
    syncing resumes once re-authentication happens out-of-band.
    """

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication required for {endpoint}", details)
        self.endpoint = endpoint
        self.reason = reason


class ServerRejectedError(SessionSyncError):
    """Raised when the server rejects a request with a 4xx other than 401/404.

    The operation is dropped rather than retried, and the refused version
    of the record is held back from later pushes.
    """

    def __init__(self, endpoint: str, status: int, reason: str | None = None):
        details: dict = {"endpoint": endpoint, "status": status}
        if reason:
            details["reason"] = reason
        message = f"Server rejected request to {endpoint} ({status})"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status = status
        self.reason = reason


class RemoteSessionGoneError(SessionSyncError):
    """Raised when the server reports the target session no longer exists (404)."""

    def __init__(self, remote_id: str):
        super().__init__(f"Remote session not found: {remote_id}", {"remote_id": remote_id})
        self.remote_id = remote_id


class RemoteServerError(SessionSyncError):
    """Raised on a 5xx response. Transient: retried with backoff, never dropped."""

    retryable = True

    def __init__(self, endpoint: str, status: int):
        super().__init__(
            f"Server error from {endpoint} ({status})",
            {"endpoint": endpoint, "status": status},
        )
        self.endpoint = endpoint
        self.status = status


class StorageIOError(SessionSyncError):
    """Raised when a key-value storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class ConfigurationError(SessionSyncError):
    """Raised when sync configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        super().__init__(
            f"Invalid configuration for {setting}: {reason}",
            {"setting": setting, "reason": reason},
        )
        self.setting = setting
        self.reason = reason
