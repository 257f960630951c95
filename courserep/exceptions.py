"""
Custom Exceptions for the Course Representative Engine

This module defines the exception taxonomy shared by the registry, the
request workflow, the announcement broadcaster and the document stores.
Each exception carries a stable error code that the HTTP layer exposes.
"""


class CourseRepException(Exception):
    """
    Base exception for the course representative engine

    All custom exceptions raised by the engine inherit from this class
    so callers can handle them uniformly.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize course representative exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class UnauthorizedException(CourseRepException):
    """
    Raised when the caller is not authenticated or lacks assigning authority
    """

    def __init__(self, reason: str = None):
        """
        Initialize unauthorized exception

        Args:
            reason: Optional explanation of why the caller was rejected
        """
        message = reason or "Caller is not authenticated"
        super().__init__(message, "UNAUTHORIZED")
        self.reason = reason


class ForbiddenException(CourseRepException):
    """
    Raised when an authenticated caller lacks the role or permission
    for a specific course, request or announcement
    """

    def __init__(self, user_id: str, action: str, reason: str):
        """
        Initialize forbidden exception

        Args:
            user_id: ID of the acting user
            action: The operation that was attempted
            reason: Why the operation is not allowed
        """
        message = f"User '{user_id}' may not {action}: {reason}"
        super().__init__(message, "FORBIDDEN")
        self.user_id = user_id
        self.action = action
        self.reason = reason


class NotFoundException(CourseRepException):
    """
    Raised when a referenced course, request or announcement does not exist
    """

    def __init__(self, resource: str, resource_id: str):
        """
        Initialize not found exception

        Args:
            resource: Kind of resource (collection name or entity name)
            resource_id: The ID that was not found
        """
        message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(message, "NOT_FOUND")
        self.resource = resource
        self.resource_id = resource_id


class VersionConflictException(CourseRepException):
    """
    Raised by a document store when a conditional update loses a race

    This is a retry signal for the services, not a user-facing error.
    """

    def __init__(self, collection: str, doc_id: str, expected_version: int, actual_version: int = None):
        """
        Initialize version conflict exception

        Args:
            collection: Collection holding the document
            doc_id: ID of the document
            expected_version: Version the writer read
            actual_version: Version found at write time, if known
        """
        message = (
            f"Version conflict on {collection}/{doc_id}: "
            f"expected {expected_version}, found {actual_version}"
        )
        super().__init__(message, "VERSION_CONFLICT")
        self.collection = collection
        self.doc_id = doc_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailableException(CourseRepException):
    """
    Raised when the document store cannot complete an operation

    Covers transient infrastructure failures and exhausted
    optimistic-concurrency retries. Callers may retry.
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize store unavailable exception

        Args:
            operation: The operation that failed (e.g., 'read', 'write')
            details: Detailed error information
        """
        message = f"Store unavailable during {operation}: {details}"
        super().__init__(message, "STORE_UNAVAILABLE")
        self.operation = operation
        self.details = details


class ValidationException(CourseRepException):
    """
    Raised when input data fails validation
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error
