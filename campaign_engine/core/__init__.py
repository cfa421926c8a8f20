"""Core campaign engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionValidationError,
    NotFoundError,
    ConfigurationError,
    EnrollmentStateError,
    ClaimLostError,
    StorageError,
    TransientError,
    TransientDeliveryError,
    PermanentDeliveryError,
    ContactDirectoryError,
    TemplateRenderError,
    APIError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "DefinitionValidationError",
    "NotFoundError",
    "ConfigurationError",
    "EnrollmentStateError",
    "ClaimLostError",
    "StorageError",
    "TransientError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "ContactDirectoryError",
    "TemplateRenderError",
    "APIError",
    "setup_logging",
    "get_logger",
]
