"""Database models and storage layer."""

from .database import (
    Base,
    create_database_engine,
    get_database_engine,
    get_session_factory,
    create_tables,
    drop_tables,
)
from .models import (
    WorkflowDefinitionModel,
    EnrollmentModel,
    ExecutionAttemptModel,
    TriggerFiringModel,
)

__all__ = [
    "Base",
    "create_database_engine",
    "get_database_engine",
    "get_session_factory",
    "create_tables",
    "drop_tables",
    "WorkflowDefinitionModel",
    "EnrollmentModel",
    "ExecutionAttemptModel",
    "TriggerFiringModel",
]
