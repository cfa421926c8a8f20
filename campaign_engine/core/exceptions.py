"""Custom exceptions for the campaign engine with detailed error information."""

from enum import Enum
from typing import Optional, Dict, Any, List

from .clock import utc_now


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all campaign engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class DefinitionValidationError(WorkflowEngineError):
    """Raised when a workflow definition fails structural validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NotFoundError(WorkflowEngineError):
    """Raised when a requested record does not exist for the tenant."""

    def __init__(self, message: str, resource: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        if resource:
            self.add_context(resource=resource)
        if resource_id:
            self.add_context(resource_id=resource_id)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing.

    Covers both application settings and workflow content that cannot be
    executed (unknown node, missing branch, bad timezone). Never retried.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class EnrollmentStateError(WorkflowEngineError):
    """Raised when an enrollment status change is not allowed."""

    def __init__(self, current: str, requested: str, enrollment_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Cannot move enrollment from '{current}' to '{requested}'",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.BUSINESS_LOGIC,
            **kwargs
        )
        self.current = current
        self.requested = requested
        self.add_details(current=current, requested=requested)
        if enrollment_id:
            self.add_context(enrollment_id=enrollment_id)


class ClaimLostError(WorkflowEngineError):
    """Raised when a worker writes to an enrollment it no longer holds."""

    def __init__(self, message: str, enrollment_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CONCURRENCY,
            **kwargs
        )
        if enrollment_id:
            self.add_context(enrollment_id=enrollment_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class TransientDeliveryError(TransientError):
    """Channel timeout, 5xx, connection failure or open circuit."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        if status_code is not None:
            self.add_details(status_code=status_code)


class PermanentDeliveryError(WorkflowEngineError):
    """Raised when the channel rejects a message for good (invalid recipient, policy)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.NETWORK,
            recoverable=False,
            **kwargs
        )
        if status_code is not None:
            self.add_details(status_code=status_code)


class ContactDirectoryError(TransientError):
    """Raised when contact data cannot be read or written."""

    def __init__(self, message: str, contact_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if contact_id:
            self.add_context(contact_id=contact_id)


class TemplateRenderError(ConfigurationError):
    """Raised when message content cannot be rendered."""

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)


class APIError(WorkflowEngineError):
    """Raised when API operations fail."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        endpoint: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            **kwargs
        )
        self.status_code = status_code
        if endpoint:
            self.add_context(endpoint=endpoint)
        self.add_details(status_code=status_code)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
