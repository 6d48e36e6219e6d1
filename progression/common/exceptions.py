"""
Common Exception Classes

Errors raised by the progression engine. Every failure is scoped to a single
operation on a single user or leaderboard category; nothing here is fatal to
the process.
"""

from typing import Optional, Any, Dict


class BaseError(Exception):
    """Base class for all custom exceptions."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        """
        Initialize the exception.

        Args:
            message: Error message
            original_exception: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception


class ValidationError(BaseError):
    """
    Raised when an attempt event or request is malformed or out of range.

    Always raised before any state is touched, so the caller can correct the
    data and resubmit.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        """
        Initialize the validation error.

        Args:
            message: Error message
            errors: Mapping of field name to the problem with that field
        """
        super().__init__(f"Validation error: {message}")
        self.errors = errors or {}


class NotFoundError(BaseError):
    """Exception raised when a specific required resource does not exist."""

    def __init__(self, resource_type: str, resource_id: Any):
        """
        Initialize the not found error.

        Args:
            resource_type: Type of resource that wasn't found
            resource_id: ID of the resource that wasn't found
        """
        super().__init__(f"{resource_type} with ID {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class DuplicateError(BaseError):
    """Exception raised when an already-applied item is submitted again."""

    def __init__(self, resource_type: str, identifier: Any):
        """
        Initialize the duplicate error.

        Args:
            resource_type: Type of resource that was duplicated
            identifier: The identifier that caused the duplicate
        """
        super().__init__(f"Duplicate {resource_type} with identifier {identifier}")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(BaseError):
    """Raised by a versioned store when a save races with another writer."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None
    ):
        """
        Initialize the conflict error.

        Args:
            resource_type: Type of resource being saved
            resource_id: ID of the resource being saved
            expected_version: Version the writer based its update on
            actual_version: Version currently held by the store
        """
        super().__init__(
            f"Version conflict on {resource_type} {resource_id}: "
            f"expected {expected_version}, found {actual_version}"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StorageUnavailableError(BaseError):
    """Exception raised when the storage collaborator cannot be reached."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(f"Storage unavailable: {message}", original_exception)


class CacheError(BaseError):
    """Exception raised for cache-related errors."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        """
        Initialize the cache error.

        Args:
            message: Error message
            original_exception: Original cache exception
        """
        super().__init__(f"Cache error: {message}", original_exception)


class ConfigurationError(BaseError):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        """
        Initialize the configuration error.

        Args:
            message: Error message
            config_key: The configuration key that caused the error
        """
        super().__init__(f"Configuration error: {message}")
        self.config_key = config_key


class DegradedModeWarning(UserWarning):
    """
    Issued when a read is served from the last good snapshot because the
    cache or storage collaborator is unavailable.
    """
