"""Data models for the campaign workflow engine."""

from .core import (
    ActionConfig,
    ActionNode,
    ActionType,
    AttemptOutcome,
    BusinessHours,
    ConditionClause,
    ConditionConfig,
    ConditionField,
    ConditionNode,
    ConditionOperator,
    ContactContext,
    ContactMutation,
    DelayConfig,
    DelayNode,
    DelayUnit,
    Enrollment,
    EnrollmentStatus,
    ExecutionAttempt,
    LogicalOperator,
    MessageConfig,
    MessageNode,
    NodeKind,
    RenderedContent,
    TriggerConfig,
    TriggerEvaluationResult,
    TriggerEvent,
    TriggerNode,
    TriggerType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowSettings,
    WorkflowStatus,
)

__all__ = [
    "ActionConfig",
    "ActionNode",
    "ActionType",
    "AttemptOutcome",
    "BusinessHours",
    "ConditionClause",
    "ConditionConfig",
    "ConditionField",
    "ConditionNode",
    "ConditionOperator",
    "ContactContext",
    "ContactMutation",
    "DelayConfig",
    "DelayNode",
    "DelayUnit",
    "Enrollment",
    "EnrollmentStatus",
    "ExecutionAttempt",
    "LogicalOperator",
    "MessageConfig",
    "MessageNode",
    "NodeKind",
    "RenderedContent",
    "TriggerConfig",
    "TriggerEvaluationResult",
    "TriggerEvent",
    "TriggerNode",
    "TriggerType",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowSettings",
    "WorkflowStatus",
]
