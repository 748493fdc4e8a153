"""
Controller errors.

Fatal errors are written to the Configuration status and returned to the
scheduler; NotCompletedError only asks for a delayed re-check.
"""


class TFControllerError(Exception):
    """Base exception for all controller errors."""
    pass


class ConfigurationError(TFControllerError):
    """Errors in the Configuration spec, e.g. conflicting or unsupported backends."""
    pass


class ParseError(ConfigurationError):
    """Exception raised when inline backend HCL cannot be parsed."""

    def __init__(self, message: str, source: str | None = None):
        self.message = message
        self.source = source

        error_msg = f"Parse error: {message}"
        if source:
            error_msg += f" in {source}"

        super().__init__(error_msg)


class NotCompletedError(TFControllerError):
    """The execution Job is still running; check again later."""
    pass


class CredentialResolutionError(TFControllerError):
    """Provider credentials could not be retrieved."""
    pass


class NoBackendError(TFControllerError):
    """Outputs were requested before a backend was resolved."""
    pass


class StorageNotFoundError(TFControllerError):
    """The state storage location exists but does not hold the state data."""
    pass


class StateDecodeError(TFControllerError):
    """The state payload could not be decoded."""
    pass


class OwnershipConflictError(TFControllerError):
    """The output Secret belongs to another Configuration."""
    pass


class ClusterError(TFControllerError):
    """Errors talking to the Kubernetes API server."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class NotFoundError(ClusterError):
    """The addressed object does not exist."""
    pass


class AlreadyExistsError(ClusterError):
    """The object to create already exists."""
    pass


class ConflictError(ClusterError):
    """An optimistic-concurrency update lost the race."""
    pass


class ReconcileError(TFControllerError):
    """A fatal error raised while reconciling one Configuration, with context."""

    def __init__(self, namespace: str, name: str, operation: str, cause: Exception):
        self.namespace = namespace
        self.name = name
        self.operation = operation
        self.cause = cause
        super().__init__(f"failed to {operation} Configuration {namespace}/{name}: {cause}")
