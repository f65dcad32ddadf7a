"""Custom exception hierarchy."""

class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class ValidationError(AppError):
    """Raised when input is malformed. Never retried."""
    pass


class CollaboratorUnavailable(AppError):
    """Raised when similarity search or persistence cannot be reached.

    The invoking job layer retries the whole invocation with backoff.
    """
    pass


class ConstraintViolation(AppError):
    """Raised when a uniqueness guarantee rejects a write."""
    pass


class NotFoundError(AppError):
    """Raised when a pack, version or baseline does not exist."""
    pass


class GraphIntegrityError(AppError):
    """Raised when a traceability graph edge references a missing node."""
    pass


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass
