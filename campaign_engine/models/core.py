"""Core Pydantic models for the campaign workflow engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from croniter import croniter
from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator


_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_NODE_ID = re.compile(r"^[a-zA-Z0-9_.:-]+$")


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class NodeKind(str, Enum):
    """Kinds of nodes a workflow graph may contain."""
    TRIGGER = "trigger"
    MESSAGE = "message"
    DELAY = "delay"
    CONDITION = "condition"
    ACTION = "action"


class TriggerType(str, Enum):
    """External events (and the wall clock) that can start a workflow."""
    CONTACT_CREATED = "contact_created"
    TAG_APPLIED = "tag_applied"
    FIELD_CHANGED = "field_changed"
    INBOUND_MESSAGE = "inbound_message"
    WEBHOOK_RECEIVED = "webhook_received"
    DATE_TIME = "date_time"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ConditionField(str, Enum):
    TAG = "tag"
    CUSTOM_FIELD = "custom_field"
    LAST_MESSAGE_DATE = "last_message_date"
    CONTACT_STATUS = "contact_status"
    CONTACT_SOURCE = "contact_source"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    ADD_TO_LIST = "add_to_list"
    REMOVE_FROM_LIST = "remove_from_list"
    SEND_NOTIFICATION = "send_notification"


class EnrollmentStatus(str, Enum):
    """Enumeration of enrollment statuses."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    EnrollmentStatus.COMPLETED,
    EnrollmentStatus.FAILED,
    EnrollmentStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    EnrollmentStatus.PENDING,
    EnrollmentStatus.RUNNING,
    EnrollmentStatus.WAITING,
})


class AttemptOutcome(str, Enum):
    """Outcome of a single node evaluation."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


def _validate_time_of_day(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not _TIME_OF_DAY.match(value):
        raise ValueError(f"Time of day must use HH:MM format, got '{value}'")
    return value


class ValidationResult(BaseModel):
    """Result of workflow graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class BusinessHours(BaseModel):
    """Open window counted by business-hours-aware delays.

    ``days`` uses Python weekday numbers (Monday is 0, Sunday is 6).
    """
    start: str = Field(default="09:00", description="Window opening time (HH:MM)")
    end: str = Field(default="17:00", description="Window closing time (HH:MM)")
    days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4], description="Open weekdays")

    @field_validator("start", "end")
    @classmethod
    def validate_times(cls, value):
        return _validate_time_of_day(value)

    @field_validator("days")
    @classmethod
    def validate_days(cls, days):
        if not days:
            raise ValueError("Business hours need at least one open day")
        for day in days:
            if not 0 <= day <= 6:
                raise ValueError(f"Weekday must be between 0 and 6, got {day}")
        return sorted(set(days))

    @model_validator(mode="after")
    def validate_window(self):
        if self.start >= self.end:
            raise ValueError("Business hours must open before they close")
        return self


class WorkflowSettings(BaseModel):
    """Execution settings of a workflow."""
    max_executions_per_contact: Optional[int] = Field(None, description="Cap on enrollments per contact")
    allow_reentry: bool = Field(default=False, description="Allow concurrent enrollments of the same contact")
    stop_on_reply: bool = Field(default=False, description="Cancel enrollments when the contact replies")
    stop_on_error: bool = Field(default=False, description="Fail on the first node error instead of retrying")
    timezone: str = Field(default="UTC", description="IANA timezone for calendar-aware delays")
    business_hours: BusinessHours = Field(default_factory=BusinessHours)

    @field_validator("max_executions_per_contact")
    @classmethod
    def validate_cap(cls, value):
        if value is not None and value < 1:
            raise ValueError("max_executions_per_contact must be at least 1")
        return value


# -- node configurations ------------------------------------------------------

class TriggerConfig(BaseModel):
    trigger_type: TriggerType
    tag_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_value: Optional[Any] = None
    list_id: Optional[str] = None
    webhook_key: Optional[str] = None
    # date_time triggers
    scheduled_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    scheduled_time: Optional[str] = Field(None, description="HH:MM")
    timezone: Optional[str] = None
    interval_minutes: Optional[int] = Field(None, description="Recurrence interval for date_time triggers")
    cron_expression: Optional[str] = Field(None, description="Five-field cron schedule, local to the trigger zone")
    end_date: Optional[str] = Field(None, description="Last date a recurring trigger may fire")

    @field_validator("scheduled_time")
    @classmethod
    def validate_time(cls, value):
        return _validate_time_of_day(value)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, value):
        if value is None:
            return None
        value = " ".join(value.split())
        if len(value.split(" ")) != 5 or not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression '{value}', expected minute hour day month weekday")
        return value

    @model_validator(mode="after")
    def validate_schedule(self):
        if self.trigger_type == TriggerType.DATE_TIME and not (self.scheduled_date or self.cron_expression):
            raise ValueError("date_time triggers require scheduled_date or cron_expression")
        if self.interval_minutes is not None and self.interval_minutes < 1:
            raise ValueError("interval_minutes must be positive")
        if self.interval_minutes is not None and self.cron_expression:
            raise ValueError("interval_minutes and cron_expression are mutually exclusive")
        return self


class MessageConfig(BaseModel):
    custom_message: Optional[str] = None
    template_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    media_url: Optional[str] = None
    media_type: Optional[Literal["image", "video", "document", "audio"]] = None
    use_contact_name: bool = False
    fallback_name: Optional[str] = None
    max_retries: Optional[int] = Field(None, description="Per-node override of the retry cap")

    @model_validator(mode="after")
    def validate_content(self):
        if not self.custom_message and not self.template_id:
            raise ValueError("Message nodes need custom_message or template_id")
        return self


class DelayConfig(BaseModel):
    amount: int = Field(..., ge=0)
    unit: DelayUnit
    business_hours_only: bool = False
    skip_weekends: bool = False
    specific_time: Optional[str] = None

    @field_validator("specific_time")
    @classmethod
    def validate_time(cls, value):
        return _validate_time_of_day(value)


class ConditionClause(BaseModel):
    field: ConditionField
    field_name: Optional[str] = Field(None, description="Custom field key when field is custom_field")
    operator: ConditionOperator
    value: Optional[Any] = None
    logical_operator: Optional[LogicalOperator] = Field(
        None, description="How this clause combines with the running result"
    )


class ConditionConfig(BaseModel):
    clauses: List[ConditionClause] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def normalise_single_clause(cls, data):
        """Accept the authoring tool's {field, operator, value, conditions} shape."""
        if isinstance(data, dict) and "clauses" not in data and "field" in data:
            first = {
                key: data[key]
                for key in ("field", "field_name", "operator", "value")
                if key in data
            }
            return {"clauses": [first] + list(data.get("conditions") or [])}
        return data


class ActionConfig(BaseModel):
    action_type: ActionType
    tag_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_value: Optional[Any] = None
    list_id: Optional[str] = None
    notification_email: Optional[str] = None
    notification_message: Optional[str] = None

    @model_validator(mode="after")
    def validate_action(self):
        if self.action_type in (ActionType.ADD_TAG, ActionType.REMOVE_TAG) and not self.tag_ids:
            raise ValueError(f"{self.action_type.value} requires tag_ids")
        if self.action_type == ActionType.UPDATE_FIELD and not self.field_name:
            raise ValueError("update_field requires field_name")
        if self.action_type in (ActionType.ADD_TO_LIST, ActionType.REMOVE_FROM_LIST) and not self.list_id:
            raise ValueError(f"{self.action_type.value} requires list_id")
        return self


# -- nodes (tagged union over kind) -------------------------------------------

class _NodeBase(BaseModel):
    id: str = Field(..., description="Unique identifier for the node")
    label: str = Field(default="", description="Display label")

    @field_validator("id")
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _NODE_ID.match(id_value.strip()):
            raise ValueError("Node ID contains invalid characters")
        return id_value.strip()


class TriggerNode(_NodeBase):
    kind: Literal[NodeKind.TRIGGER] = NodeKind.TRIGGER
    config: TriggerConfig


class MessageNode(_NodeBase):
    kind: Literal[NodeKind.MESSAGE] = NodeKind.MESSAGE
    config: MessageConfig


class DelayNode(_NodeBase):
    kind: Literal[NodeKind.DELAY] = NodeKind.DELAY
    config: DelayConfig


class ConditionNode(_NodeBase):
    kind: Literal[NodeKind.CONDITION] = NodeKind.CONDITION
    config: ConditionConfig


class ActionNode(_NodeBase):
    kind: Literal[NodeKind.ACTION] = NodeKind.ACTION
    config: ActionConfig


WorkflowNode = Annotated[
    Union[TriggerNode, MessageNode, DelayNode, ConditionNode, ActionNode],
    Field(discriminator="kind"),
]


class WorkflowEdge(BaseModel):
    """Directed connection between two nodes."""
    id: Optional[str] = None
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Output handle on nodes with several outputs")
    label: Optional[str] = Field(None, description="Branch label, e.g. true/false")

    @field_validator("source", "target")
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @property
    def branch(self) -> Optional[str]:
        """Normalised branch name of the edge (``true``/``false`` for conditions)."""
        raw = self.source_handle or self.label
        if raw is None:
            return None
        raw = raw.strip().lower()
        return {"yes": "true", "no": "false"}.get(raw, raw)


class WorkflowDefinition(BaseModel):
    """Complete definition of one campaign workflow graph."""
    id: str = Field(..., description="Workflow ID")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(default="", description="Name of the workflow")
    description: str = Field(default="", description="Description of the workflow")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    version: int = Field(default=1)
    nodes: List[WorkflowNode] = Field(..., description="Ordered nodes of the graph")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="Edges connecting nodes")
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    _node_index: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _outgoing: Dict[str, List[WorkflowEdge]] = PrivateAttr(default_factory=dict)
    _incoming: Dict[str, List[WorkflowEdge]] = PrivateAttr(default_factory=dict)

    @field_validator("nodes")
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode="after")
    def validate_edge_references(self):
        """Validate edges and build the adjacency index."""
        if not self.nodes:
            raise ValueError("Workflow must contain at least one node")

        node_ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.source not in node_ids:
                raise ValueError(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                raise ValueError(f"Edge references non-existent target node: {edge.target}")

        self._node_index = {node.id: node for node in self.nodes}
        self._outgoing = {node.id: [] for node in self.nodes}
        self._incoming = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)
        return self

    # -- graph helpers -------------------------------------------------------

    def node(self, node_id: str):
        return self._node_index.get(node_id)

    def outgoing(self, node_id: str) -> List[WorkflowEdge]:
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> List[WorkflowEdge]:
        return list(self._incoming.get(node_id, []))

    @property
    def trigger_node(self) -> Optional[TriggerNode]:
        for node in self.nodes:
            if node.kind == NodeKind.TRIGGER:
                return node
        return None

    @property
    def entry_node_id(self) -> Optional[str]:
        """First node downstream of the trigger, where enrollments start."""
        trigger = self.trigger_node
        if trigger is None:
            return None
        edges = self.outgoing(trigger.id)
        return edges[0].target if edges else None

    def next_node_id(self, node_id: str) -> Optional[str]:
        """Target of the single forward edge, the first one when several exist."""
        edges = self.outgoing(node_id)
        return edges[0].target if edges else None

    def branch_target(self, node_id: str, outcome: bool) -> Optional[str]:
        """Target of the condition branch matching ``outcome``; first match wins."""
        wanted = "true" if outcome else "false"
        for edge in self.outgoing(node_id):
            if edge.branch == wanted:
                return edge.target
        return None

    # -- structural validation -----------------------------------------------

    def validate_structure(self) -> ValidationResult:
        """Check the invariants an active workflow must satisfy."""
        errors: List[str] = []
        warnings: List[str] = []

        triggers = [node for node in self.nodes if node.kind == NodeKind.TRIGGER]
        if len(triggers) != 1:
            errors.append(f"Workflow must have exactly one trigger node, found {len(triggers)}")
        for trigger in triggers:
            if self.incoming(trigger.id):
                errors.append(f"Trigger node '{trigger.id}' must not have incoming edges")
            if not self.outgoing(trigger.id):
                warnings.append(f"Trigger node '{trigger.id}' has no outgoing edge")

        for node in self.nodes:
            if node.kind != NodeKind.TRIGGER and not self.incoming(node.id):
                errors.append(f"Node '{node.id}' has no incoming edge")

        for edge in self.edges:
            if edge.source == edge.target:
                errors.append(f"Self-referencing edge not allowed: {edge.source}")

        if self._has_cycles():
            errors.append("Workflow graph contains a cycle; loops must be modelled as new enrollments")

        for node in self.nodes:
            outgoing = self.outgoing(node.id)
            if node.kind == NodeKind.CONDITION:
                seen: Set[str] = set()
                for edge in outgoing:
                    branch = edge.branch
                    if branch not in ("true", "false"):
                        errors.append(
                            f"Condition node '{node.id}' has an edge to '{edge.target}' "
                            f"without a true/false label"
                        )
                    elif branch in seen:
                        errors.append(f"Condition node '{node.id}' has more than one '{branch}' edge")
                    else:
                        seen.add(branch)
            elif len(outgoing) > 1:
                warnings.append(
                    f"Node '{node.id}' has {len(outgoing)} outgoing edges; only the first is followed"
                )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        visited: Set[str] = set()
        rec_stack: Set[str] = set()

        def has_cycle_util(node_id: str) -> bool:
            visited.add(node_id)
            rec_stack.add(node_id)
            for edge in self._outgoing.get(node_id, []):
                if edge.target not in visited:
                    if has_cycle_util(edge.target):
                        return True
                elif edge.target in rec_stack:
                    return True
            rec_stack.remove(node_id)
            return False

        for node in self.nodes:
            if node.id not in visited and has_cycle_util(node.id):
                return True
        return False


# -- runtime records -----------------------------------------------------------

class Enrollment(BaseModel):
    """One contact's progress through one workflow."""
    id: str
    tenant_id: str
    workflow_id: str
    contact_id: str
    status: EnrollmentStatus = EnrollmentStatus.PENDING
    current_node_id: Optional[str] = None
    execution_path: List[str] = Field(default_factory=list)
    node_entered_at: Optional[datetime] = None
    next_due_at: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    last_error: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    entry_number: int = 1
    version: int = 0
    claim_token: Optional[str] = None
    claimed_until: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExecutionAttempt(BaseModel):
    """Append-only audit record of one node evaluation."""
    id: Optional[int] = None
    tenant_id: str
    enrollment_id: str
    node_id: Optional[str] = None
    node_kind: Optional[NodeKind] = None
    outcome: AttemptOutcome
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class NodeAttemptCounts(BaseModel):
    """Attempt outcomes recorded for one node of a workflow."""
    node_id: Optional[str] = Field(None, description="None for attempts made after the last node")
    node_kind: Optional[NodeKind] = None
    success: int = 0
    failure: int = 0
    skipped: int = 0


class WorkflowStats(BaseModel):
    """Enrollment outcomes and per-node attempt counts of one workflow."""
    workflow_id: str
    since: Optional[datetime] = None
    total_enrollments: int = 0
    enrollments_by_status: Dict[str, int] = Field(default_factory=dict)
    completion_rate: float = Field(0.0, description="Completed share of all enrollments, in percent")
    nodes: List[NodeAttemptCounts] = Field(default_factory=list, description="In order of first attempt")


class TriggerEvent(BaseModel):
    """External event delivered to the trigger evaluator."""
    type: TriggerType
    tenant_id: str
    contact_id: str
    event_id: Optional[str] = Field(None, description="Producer-assigned id; redeliveries with the same id are ignored")
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    @field_validator("type")
    @classmethod
    def reject_clock_events(cls, value):
        if value == TriggerType.DATE_TIME:
            raise ValueError("date_time triggers are evaluated by the scheduler, not delivered as events")
        return value


class ContactContext(BaseModel):
    """Snapshot of a contact as read from the contact directory."""
    contact_id: str
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    last_message_at: Optional[datetime] = None
    status: Optional[str] = None
    source: Optional[str] = None


class ContactMutation(BaseModel):
    """Attribute change applied to a contact by an action node."""
    action_type: ActionType
    tag_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_value: Optional[Any] = None
    list_id: Optional[str] = None


class RenderedContent(BaseModel):
    """Message content handed to the delivery channel."""
    text: Optional[str] = None
    template_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    media_url: Optional[str] = None
    media_type: Optional[str] = None


class TriggerEvaluationResult(BaseModel):
    """Summary of what an event caused."""
    event_type: TriggerType
    matched_workflow_ids: List[str] = Field(default_factory=list)
    enrollment_ids: List[str] = Field(default_factory=list)
    cancelled_enrollment_ids: List[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict, description="workflow id to reason")
