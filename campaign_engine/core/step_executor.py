"""Step Executor: advances one enrollment by exactly one node."""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from ..integrations.base import ContactDirectory, MessageChannel, Notifier, SendResult
from ..models.core import (
    ActionNode,
    ActionType,
    AttemptOutcome,
    ConditionNode,
    ContactMutation,
    DelayNode,
    Enrollment,
    EnrollmentStatus,
    ExecutionAttempt,
    MessageNode,
    NodeKind,
    WorkflowDefinition,
    WorkflowStatus,
)
from . import enrollment_state
from .clock import ensure_utc, utc_now
from .condition_evaluator import evaluate_conditions
from .definition_store import DefinitionStore
from .delay_calculator import due_instant_for
from .enrollment_store import EnrollmentStore
from .error_recovery import ExponentialBackoff
from .exceptions import (
    ClaimLostError,
    ConfigurationError,
    NotFoundError,
    StorageError,
    TransientDeliveryError,
    TransientError,
    WorkflowEngineError,
)
from .logging import get_logger
from .templating import MessageRenderer

logger = get_logger(__name__)


class StepResult(BaseModel):
    """What one ``execute_step`` call did."""
    enrollment_id: str
    outcome: AttemptOutcome
    status: EnrollmentStatus
    node_id: Optional[str] = None
    next_node_id: Optional[str] = None
    due_at: Optional[datetime] = None
    error: Optional[str] = None


class _NodeFailure(Exception):
    """Carries a node error to the shared failure handling."""

    def __init__(self, error: Exception, retryable: bool):
        super().__init__(str(error))
        self.error = error
        self.retryable = retryable


class StepExecutor:
    """Evaluates the current node of a claimed enrollment and records the outcome."""

    def __init__(
        self,
        definition_store: DefinitionStore,
        enrollment_store: EnrollmentStore,
        channel: MessageChannel,
        directory: ContactDirectory,
        notifier: Notifier,
        renderer: Optional[MessageRenderer] = None,
        backoff: Optional[ExponentialBackoff] = None,
        send_timeout: float = 30.0,
        max_concurrent_sends: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the step executor.

        Args:
            definition_store: Source of workflow definitions
            enrollment_store: Durable enrollment state and audit trail
            channel: Outbound message delivery
            directory: Contact reads and mutations
            notifier: Team notifications for send_notification actions
            renderer: Message template renderer
            backoff: Retry schedule for transient node failures
            send_timeout: Upper bound in seconds on one channel call
            max_concurrent_sends: Size of the pool channel calls run on
            clock: Source of the current instant
        """
        self.definition_store = definition_store
        self.enrollment_store = enrollment_store
        self.channel = channel
        self.directory = directory
        self.notifier = notifier
        self.renderer = renderer or MessageRenderer()
        self.backoff = backoff or ExponentialBackoff()
        self.send_timeout = send_timeout
        self._clock = clock
        self._send_executor = ThreadPoolExecutor(max_workers=max_concurrent_sends,
                                                 thread_name_prefix="channel-send")

        self._handlers: Dict[NodeKind, Callable[..., Dict[str, Any]]] = {
            NodeKind.TRIGGER: self._run_trigger,
            NodeKind.MESSAGE: self._run_message,
            NodeKind.DELAY: self._run_delay,
            NodeKind.CONDITION: self._run_condition,
            NodeKind.ACTION: self._run_action,
        }
        missing = set(NodeKind) - set(self._handlers)
        if missing:
            raise ConfigurationError(f"No step handler for node kinds: {sorted(kind.value for kind in missing)}")

    def execute_step(self, enrollment_id: str, claim_token: str, now: Optional[datetime] = None) -> StepResult:
        """
        Evaluate exactly one node of a claimed enrollment.

        Args:
            enrollment_id: Enrollment to advance
            claim_token: Lease token returned by ``EnrollmentStore.claim``
            now: Evaluation instant; defaults to the executor's clock

        Returns:
            StepResult describing the transition

        Raises:
            ClaimLostError: If the lease was lost or the enrollment was
                cancelled while the step ran
            StorageError: If enrollment state cannot be read or written
        """
        now = ensure_utc(now) or self._clock()
        enrollment = self.enrollment_store.get_enrollment(enrollment_id)

        if enrollment.status.is_terminal:
            self._record_attempt(enrollment, None, AttemptOutcome.SKIPPED,
                                 details={"reason": f"enrollment is {enrollment.status.value}"}, now=now)
            return self._result(enrollment, AttemptOutcome.SKIPPED)

        if enrollment.claim_token != claim_token:
            raise ClaimLostError(f"Enrollment {enrollment_id} is not held by this claim", enrollment_id=enrollment_id)

        try:
            definition = self.definition_store.get_definition(enrollment.workflow_id)
        except NotFoundError as e:
            return self._fail_before_node(enrollment, claim_token, e, now)

        if definition.status != WorkflowStatus.ACTIVE:
            self._record_attempt(enrollment, None, AttemptOutcome.SKIPPED,
                                 details={"reason": f"workflow is {definition.status.value}"}, now=now)
            self.enrollment_store.release_claim(enrollment.id, claim_token)
            logger.info(f"Skipped enrollment {enrollment.id}: workflow '{definition.id}' is {definition.status.value}")
            return self._result(enrollment, AttemptOutcome.SKIPPED)

        if enrollment.status == EnrollmentStatus.PENDING:
            enrollment_state.start(enrollment, now)
        elif enrollment.status == EnrollmentStatus.WAITING:
            enrollment_state.resume(enrollment, now)

        node_id = enrollment.current_node_id
        if node_id is None:
            enrollment_state.complete(enrollment, now)
            self._save(enrollment, claim_token, None, AttemptOutcome.SUCCESS, {"reason": "no remaining nodes"}, now)
            logger.info(f"Enrollment {enrollment.id} completed")
            return self._result(enrollment, AttemptOutcome.SUCCESS)

        node = definition.node(node_id)
        error: Optional[Exception] = None
        details: Dict[str, Any] = {}
        try:
            if node is None:
                raise _NodeFailure(
                    ConfigurationError(f"Node '{node_id}' does not exist in workflow '{definition.id}'"),
                    retryable=False
                )
            details = self._run_handler(enrollment, definition, node, now)
            outcome = AttemptOutcome.SUCCESS
        except _NodeFailure as failure:
            error = failure.error
            outcome = AttemptOutcome.FAILURE
            details = self._handle_failure(enrollment, definition, node, failure, now)

        self._save(enrollment, claim_token, node, outcome, details, now, error=error)
        return self._result(enrollment, outcome, node_id=node_id, error=error)

    def shutdown(self):
        self._send_executor.shutdown(wait=True)

    # -- node handlers --------------------------------------------------------

    def _run_handler(self, enrollment: Enrollment, definition: WorkflowDefinition, node, now: datetime):
        """Dispatch to the node's handler, turning unexpected errors into node failures."""
        try:
            return self._handlers[node.kind](enrollment, definition, node, now)
        except (_NodeFailure, ClaimLostError, StorageError):
            raise
        except WorkflowEngineError as e:
            raise _NodeFailure(e, retryable=isinstance(e, TransientError))
        except Exception as e:
            logger.exception(f"Unexpected error on node '{node.id}' of enrollment {enrollment.id}")
            raise _NodeFailure(
                ConfigurationError(f"Unexpected {type(e).__name__} on node '{node.id}': {e}",
                                   error_code="UnexpectedError").add_context(node_id=node.id),
                retryable=False
            )

    def _run_trigger(self, enrollment: Enrollment, definition: WorkflowDefinition, node, now: datetime):
        next_node_id = definition.next_node_id(node.id)
        enrollment_state.advance_to(enrollment, next_node_id, now)
        return {"next_node_id": next_node_id}

    def _run_message(self, enrollment: Enrollment, definition: WorkflowDefinition, node: MessageNode,
                     now: datetime):
        try:
            contact = self.directory.get_contact_context(enrollment.tenant_id, enrollment.contact_id)
            content = self.renderer.render(node, contact, enrollment.context)
            visit = max(enrollment.execution_path.count(node.id), 1)
            idempotency_key = f"{enrollment.id}:{node.id}:{visit}"
            result = self._send_with_timeout(enrollment, content, idempotency_key)
        except TransientError as e:
            raise _NodeFailure(e, retryable=True)
        except WorkflowEngineError as e:
            raise _NodeFailure(e, retryable=False)

        enrollment.context = dict(enrollment.context)
        messages = dict(enrollment.context.get("messages") or {})
        messages[node.id] = result.external_message_id
        enrollment.context["messages"] = messages

        next_node_id = definition.next_node_id(node.id)
        enrollment_state.advance_to(enrollment, next_node_id, now)
        logger.info(f"Sent message node '{node.id}' to contact '{enrollment.contact_id}' "
                    f"as {result.external_message_id}")
        return {
            "external_message_id": result.external_message_id,
            "idempotency_key": idempotency_key,
            "next_node_id": next_node_id,
        }

    def _run_delay(self, enrollment: Enrollment, definition: WorkflowDefinition, node: DelayNode, now: datetime):
        try:
            due = due_instant_for(node.config, enrollment.node_entered_at or now, definition.settings)
        except ConfigurationError as e:
            raise _NodeFailure(e, retryable=False)

        if due > now:
            enrollment_state.wait_until(enrollment, due, now)
            logger.debug(f"Enrollment {enrollment.id} waiting on '{node.id}' until {due.isoformat()}")
            return {"due_at": due.isoformat()}

        next_node_id = definition.next_node_id(node.id)
        enrollment_state.advance_to(enrollment, next_node_id, now)
        return {"due_at": due.isoformat(), "next_node_id": next_node_id}

    def _run_condition(self, enrollment: Enrollment, definition: WorkflowDefinition, node: ConditionNode,
                       now: datetime):
        try:
            contact = self.directory.get_contact_context(enrollment.tenant_id, enrollment.contact_id)
        except TransientError as e:
            raise _NodeFailure(e, retryable=True)

        try:
            result = evaluate_conditions(node.config.clauses, contact, now)
        except ConfigurationError as e:
            raise _NodeFailure(e, retryable=False)

        next_node_id = definition.branch_target(node.id, result)
        if next_node_id is None:
            raise _NodeFailure(
                ConfigurationError(f"Condition '{node.id}' has no '{str(result).lower()}' branch"),
                retryable=False
            )

        enrollment.context = dict(enrollment.context)
        enrollment.context["contact"] = {
            **(enrollment.context.get("contact") or {}),
            **contact.model_dump(mode="json"),
        }
        conditions = dict(enrollment.context.get("conditions") or {})
        conditions[node.id] = result
        enrollment.context["conditions"] = conditions

        enrollment_state.advance_to(enrollment, next_node_id, now)
        return {"result": result, "next_node_id": next_node_id}

    def _run_action(self, enrollment: Enrollment, definition: WorkflowDefinition, node: ActionNode,
                    now: datetime):
        config = node.config
        try:
            if config.action_type == ActionType.SEND_NOTIFICATION:
                message = config.notification_message or (
                    f"Contact {enrollment.contact_id} reached '{node.label or node.id}' "
                    f"in workflow '{definition.name or definition.id}'"
                )
                self.notifier.notify(enrollment.tenant_id, config.notification_email, message)
            else:
                mutation = ContactMutation(
                    action_type=config.action_type,
                    tag_ids=config.tag_ids,
                    field_name=config.field_name,
                    field_value=config.field_value,
                    list_id=config.list_id,
                )
                self.directory.apply_mutation(enrollment.tenant_id, enrollment.contact_id, mutation)
        except WorkflowEngineError as e:
            # Actions are not idempotent, so they are never retried
            raise _NodeFailure(e, retryable=False)

        next_node_id = definition.next_node_id(node.id)
        enrollment_state.advance_to(enrollment, next_node_id, now)
        logger.info(f"Applied action '{config.action_type.value}' for contact '{enrollment.contact_id}'")
        return {"action_type": config.action_type.value, "next_node_id": next_node_id}

    # -- failure handling -----------------------------------------------------

    def _handle_failure(self, enrollment: Enrollment, definition: WorkflowDefinition, node,
                        failure: _NodeFailure, now: datetime) -> Dict[str, Any]:
        error = failure.error
        message = getattr(error, "message", str(error))
        node_label = node.id if node is not None else enrollment.current_node_id

        if not failure.retryable or definition.settings.stop_on_error:
            enrollment_state.fail(enrollment, message, now)
            logger.error(f"Enrollment {enrollment.id} failed at '{node_label}': {message}")
            return {"error_code": getattr(error, "error_code", type(error).__name__)}

        backoff = self.backoff
        if isinstance(node, MessageNode):
            backoff = backoff.with_max_retries(node.config.max_retries)

        enrollment.retry_count += 1
        if backoff.exhausted(enrollment.retry_count):
            enrollment_state.fail(enrollment, f"{message} (gave up after {enrollment.retry_count} attempts)", now)
            logger.error(f"Enrollment {enrollment.id} failed at '{node_label}' after "
                         f"{enrollment.retry_count} attempts: {message}")
            return {"retry_count": enrollment.retry_count, "exhausted": True}

        due = now + backoff.delay_for(enrollment.retry_count)
        enrollment_state.record_retry(enrollment, due, message, now)
        logger.warning(f"Enrollment {enrollment.id} will retry '{node_label}' at {due.isoformat()} "
                       f"(attempt {enrollment.retry_count}/{backoff.max_retries}): {message}")
        return {"retry_count": enrollment.retry_count, "retry_at": due.isoformat()}

    def _fail_before_node(self, enrollment: Enrollment, claim_token: str, error: WorkflowEngineError,
                          now: datetime) -> StepResult:
        if enrollment.status == EnrollmentStatus.WAITING:
            enrollment_state.resume(enrollment, now)
        enrollment_state.fail(enrollment, error.message, now)
        self._save(enrollment, claim_token, None, AttemptOutcome.FAILURE, {}, now, error=error)
        logger.error(f"Enrollment {enrollment.id} failed: {error.message}")
        return self._result(enrollment, AttemptOutcome.FAILURE, error=error)

    # -- helpers --------------------------------------------------------------

    def _send_with_timeout(self, enrollment: Enrollment, content, idempotency_key: str) -> SendResult:
        future = self._send_executor.submit(
            self.channel.send, enrollment.tenant_id, enrollment.contact_id, content, idempotency_key
        )
        try:
            return future.result(timeout=self.send_timeout)
        except FutureTimeoutError:
            raise TransientDeliveryError(f"Message channel did not answer within {self.send_timeout} seconds")

    def _save(self, enrollment: Enrollment, claim_token: str, node, outcome: AttemptOutcome,
              details: Dict[str, Any], now: datetime, error: Optional[Exception] = None):
        try:
            self.enrollment_store.save_step(enrollment, claim_token)
        except ClaimLostError:
            self._record_attempt(enrollment, node, outcome, error=error,
                                 details={**details, "discarded": True}, now=now)
            logger.warning(f"Discarded step of enrollment {enrollment.id}: claim lost or enrollment cancelled")
            raise
        self._record_attempt(enrollment, node, outcome, error=error, details=details, now=now)

    def _record_attempt(self, enrollment: Enrollment, node, outcome: AttemptOutcome,
                        error: Optional[Exception] = None, details: Optional[Dict[str, Any]] = None,
                        now: Optional[datetime] = None):
        attempt = ExecutionAttempt(
            tenant_id=enrollment.tenant_id,
            enrollment_id=enrollment.id,
            node_id=node.id if node is not None else enrollment.current_node_id,
            node_kind=node.kind if node is not None else None,
            outcome=outcome,
            error_code=getattr(error, "error_code", type(error).__name__) if error else None,
            error_detail=getattr(error, "message", str(error)) if error else None,
            details=details or {},
            created_at=now or self._clock(),
        )
        try:
            self.enrollment_store.append_attempt(attempt)
        except StorageError as e:
            # The audit trail must not block progress
            logger.warning(f"Could not record attempt for enrollment {enrollment.id}: {e.message}")

    @staticmethod
    def _result(enrollment: Enrollment, outcome: AttemptOutcome, node_id: Optional[str] = None,
                error: Optional[Exception] = None) -> StepResult:
        return StepResult(
            enrollment_id=enrollment.id,
            outcome=outcome,
            status=enrollment.status,
            node_id=node_id,
            next_node_id=enrollment.current_node_id if enrollment.current_node_id != node_id else None,
            due_at=enrollment.next_due_at,
            error=getattr(error, "message", str(error)) if error else None,
        )
