"""Durable enrollment state, scheduling leases and the execution audit trail."""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import (
    ACTIVE_STATUSES,
    AttemptOutcome,
    Enrollment,
    EnrollmentStatus,
    ExecutionAttempt,
    NodeAttemptCounts,
    NodeKind,
    TriggerType,
    WorkflowDefinition,
    WorkflowStats,
    WorkflowStatus,
)
from ..storage.database import get_session_factory
from ..storage.models import (
    EnrollmentModel,
    ExecutionAttemptModel,
    TriggerFiringModel,
    WorkflowDefinitionModel,
)
from .clock import ensure_utc, to_naive_utc, utc_now
from .error_recovery import RetryConfig, with_retry
from .exceptions import ClaimLostError, NotFoundError, StorageError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]
_READ_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0,
                          retryable_exceptions=[StorageError, TransientError])


def active_key_for(workflow_id: str, contact_id: str) -> str:
    return f"{workflow_id}:{contact_id}"


class EnrollmentStore:
    """Persists enrollments and arbitrates which worker may advance them.

    Every mutation is a single conditional UPDATE so that any number of
    scheduler processes can share one database without in-process locks.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    # -- creation -------------------------------------------------------------

    def create_enrollment(
        self,
        definition: WorkflowDefinition,
        contact_id: str,
        trigger_type: Optional[TriggerType] = None,
        trigger_payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> Optional[Enrollment]:
        """
        Enroll a contact at the workflow's entry node.

        Returns:
            The new enrollment, or None when the contact is already enrolled,
            the per-contact cap is reached or the event was already processed.

        Raises:
            StorageError: If the database fails for any other reason
        """
        now = ensure_utc(now) or utc_now()
        settings = definition.settings
        trigger = definition.trigger_node
        entry_node_id = definition.entry_node_id

        execution_path = [trigger.id] if trigger else []
        if entry_node_id:
            execution_path.append(entry_node_id)

        try:
            with self._session_factory() as db:
                if event_id is not None:
                    duplicate = db.query(EnrollmentModel.id).filter(
                        EnrollmentModel.workflow_id == definition.id,
                        EnrollmentModel.event_key == event_id
                    ).first()
                    if duplicate:
                        logger.debug(f"Event '{event_id}' already enrolled into '{definition.id}'")
                        return None

                if not settings.allow_reentry:
                    live = db.query(EnrollmentModel.id).filter(
                        EnrollmentModel.workflow_id == definition.id,
                        EnrollmentModel.contact_id == contact_id,
                        EnrollmentModel.status.in_(_ACTIVE_VALUES)
                    ).first()
                    if live:
                        logger.debug(f"Contact '{contact_id}' already active in '{definition.id}'")
                        return None

                previous = db.query(func.max(EnrollmentModel.entry_number)).filter(
                    EnrollmentModel.workflow_id == definition.id,
                    EnrollmentModel.contact_id == contact_id
                ).scalar() or 0
                cap = settings.max_executions_per_contact
                if cap is not None and previous >= cap:
                    logger.info(f"Contact '{contact_id}' reached the limit of {cap} runs of '{definition.id}'")
                    return None

                model = EnrollmentModel(
                    id=str(uuid.uuid4()),
                    tenant_id=definition.tenant_id,
                    workflow_id=definition.id,
                    contact_id=contact_id,
                    status=EnrollmentStatus.PENDING.value,
                    current_node_id=entry_node_id,
                    execution_path=execution_path,
                    node_entered_at=to_naive_utc(now),
                    context={},
                    retry_count=0,
                    trigger_type=TriggerType(trigger_type).value if trigger_type else None,
                    trigger_payload=trigger_payload or {},
                    event_key=event_id,
                    entry_number=previous + 1,
                    active_key=None if settings.allow_reentry else active_key_for(definition.id, contact_id),
                    version=0,
                    created_at=to_naive_utc(now),
                    updated_at=to_naive_utc(now),
                )
                db.add(model)
                try:
                    db.commit()
                except IntegrityError:
                    # A concurrent delivery enrolled the same contact first
                    db.rollback()
                    logger.debug(f"Concurrent enrollment of '{contact_id}' into '{definition.id}' ignored")
                    return None

                enrollment = self._to_enrollment(model)

            logger.info(f"Enrolled contact '{contact_id}' into workflow '{definition.id}' "
                        f"(enrollment {enrollment.id}, entry {enrollment.entry_number})")
            return enrollment

        except SQLAlchemyError as e:
            logger.error(f"Database error while creating enrollment: {str(e)}")
            raise StorageError(f"Failed to create enrollment: {str(e)}", operation="create_enrollment",
                               table="enrollments")

    # -- reads ----------------------------------------------------------------

    def get_enrollment(self, enrollment_id: str, tenant_id: Optional[str] = None) -> Enrollment:
        try:
            with self._session_factory() as db:
                model = db.get(EnrollmentModel, enrollment_id)
                if model is None or (tenant_id is not None and model.tenant_id != tenant_id):
                    raise NotFoundError(
                        f"Enrollment '{enrollment_id}' not found",
                        resource="enrollment",
                        resource_id=enrollment_id
                    )
                return self._to_enrollment(model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read enrollment: {str(e)}", operation="get_enrollment",
                               table="enrollments")

    def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Enrollment]:
        try:
            with self._session_factory() as db:
                query = db.query(EnrollmentModel)
                if workflow_id is not None:
                    query = query.filter(EnrollmentModel.workflow_id == workflow_id)
                if contact_id is not None:
                    query = query.filter(EnrollmentModel.contact_id == contact_id)
                if status is not None:
                    query = query.filter(EnrollmentModel.status == EnrollmentStatus(status).value)
                if tenant_id is not None:
                    query = query.filter(EnrollmentModel.tenant_id == tenant_id)
                models = query.order_by(EnrollmentModel.created_at, EnrollmentModel.entry_number).limit(limit).all()
                return [self._to_enrollment(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list enrollments: {str(e)}", operation="list_enrollments",
                               table="enrollments")

    @with_retry(_READ_RETRY)
    def find_due(self, now: datetime, limit: int = 100) -> List[Enrollment]:
        """Enrollments a worker may claim right now, oldest due first."""
        naive_now = to_naive_utc(now)
        try:
            with self._session_factory() as db:
                models = (
                    db.query(EnrollmentModel)
                    .join(WorkflowDefinitionModel, EnrollmentModel.workflow_id == WorkflowDefinitionModel.id)
                    .filter(WorkflowDefinitionModel.status == WorkflowStatus.ACTIVE.value)
                    .filter(or_(
                        EnrollmentModel.status.in_([EnrollmentStatus.PENDING.value, EnrollmentStatus.RUNNING.value]),
                        and_(
                            EnrollmentModel.status == EnrollmentStatus.WAITING.value,
                            EnrollmentModel.next_due_at <= naive_now
                        )
                    ))
                    .filter(or_(
                        EnrollmentModel.claim_token.is_(None),
                        EnrollmentModel.claimed_until <= naive_now
                    ))
                    .order_by(
                        func.coalesce(EnrollmentModel.next_due_at, EnrollmentModel.created_at),
                        EnrollmentModel.created_at
                    )
                    .limit(limit)
                    .all()
                )
                return [self._to_enrollment(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to select due enrollments: {str(e)}", operation="find_due",
                               table="enrollments")

    def count_by_status(self) -> Dict[str, int]:
        try:
            with self._session_factory() as db:
                rows = db.query(EnrollmentModel.status, func.count(EnrollmentModel.id)).group_by(
                    EnrollmentModel.status
                ).all()
                counts = {status.value: 0 for status in EnrollmentStatus}
                counts.update({status: count for status, count in rows})
                return counts
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count enrollments: {str(e)}", operation="count_by_status",
                               table="enrollments")

    # -- leases ---------------------------------------------------------------

    def claim(self, enrollment_id: str, expected_version: int, now: datetime,
              lease_seconds: float) -> Optional[str]:
        """
        Take the scheduling lease on an enrollment.

        Succeeds only if nobody changed the row since it was read and no
        unexpired lease is held. Returns the claim token, or None if another
        worker won.
        """
        naive_now = to_naive_utc(now)
        token = str(uuid.uuid4())
        stmt = (
            update(EnrollmentModel)
            .where(
                EnrollmentModel.id == enrollment_id,
                EnrollmentModel.version == expected_version,
                EnrollmentModel.status.in_(_ACTIVE_VALUES),
                or_(EnrollmentModel.claim_token.is_(None), EnrollmentModel.claimed_until <= naive_now)
            )
            .values(
                claim_token=token,
                claimed_until=naive_now + timedelta(seconds=lease_seconds),
                version=EnrollmentModel.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        if self._execute_update(stmt, "claim") == 0:
            logger.debug(f"Claim on enrollment {enrollment_id} lost (version {expected_version})")
            return None
        return token

    def renew_claim(self, enrollment_id: str, claim_token: str, now: datetime, lease_seconds: float) -> bool:
        naive_now = to_naive_utc(now)
        stmt = (
            update(EnrollmentModel)
            .where(EnrollmentModel.id == enrollment_id, EnrollmentModel.claim_token == claim_token)
            .values(claimed_until=naive_now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "renew_claim") > 0

    def release_claim(self, enrollment_id: str, claim_token: str) -> bool:
        stmt = (
            update(EnrollmentModel)
            .where(EnrollmentModel.id == enrollment_id, EnrollmentModel.claim_token == claim_token)
            .values(claim_token=None, claimed_until=None, version=EnrollmentModel.version + 1)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "release_claim") > 0

    # -- writes ---------------------------------------------------------------

    def save_step(self, enrollment: Enrollment, claim_token: str) -> Enrollment:
        """
        Persist the outcome of one step.

        Raises:
            ClaimLostError: If the lease moved to another worker or the
                enrollment was cancelled meanwhile
            StorageError: If the database fails
        """
        values = {
            "status": enrollment.status.value,
            "current_node_id": enrollment.current_node_id,
            "execution_path": list(enrollment.execution_path),
            "node_entered_at": to_naive_utc(enrollment.node_entered_at),
            "next_due_at": to_naive_utc(enrollment.next_due_at),
            "context": enrollment.context,
            "retry_count": enrollment.retry_count,
            "last_error": enrollment.last_error,
            "completed_at": to_naive_utc(enrollment.completed_at),
            "updated_at": to_naive_utc(enrollment.updated_at or utc_now()),
            "version": EnrollmentModel.version + 1,
        }
        if enrollment.status.is_terminal:
            values["active_key"] = None

        stmt = (
            update(EnrollmentModel)
            .where(
                EnrollmentModel.id == enrollment.id,
                EnrollmentModel.claim_token == claim_token,
                EnrollmentModel.status.in_(_ACTIVE_VALUES)
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self._execute_update(stmt, "save_step") == 0:
            raise ClaimLostError(
                f"Enrollment {enrollment.id} is no longer held by this worker",
                enrollment_id=enrollment.id
            )
        enrollment.version += 1
        return enrollment

    def cancel_enrollment(self, enrollment_id: str, reason: str, now: Optional[datetime] = None,
                          tenant_id: Optional[str] = None) -> bool:
        """Cancel a non-terminal enrollment regardless of who holds its lease.

        Returns False if it was already terminal.
        """
        naive_now = to_naive_utc(ensure_utc(now) or utc_now())
        conditions = [EnrollmentModel.id == enrollment_id, EnrollmentModel.status.in_(_ACTIVE_VALUES)]
        if tenant_id is not None:
            conditions.append(EnrollmentModel.tenant_id == tenant_id)
        stmt = (
            update(EnrollmentModel)
            .where(*conditions)
            .values(
                status=EnrollmentStatus.CANCELLED.value,
                cancel_reason=reason,
                next_due_at=None,
                active_key=None,
                completed_at=naive_now,
                updated_at=naive_now,
                version=EnrollmentModel.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        cancelled = self._execute_update(stmt, "cancel_enrollment") > 0
        if cancelled:
            logger.info(f"Cancelled enrollment {enrollment_id}: {reason}")
        return cancelled

    def cancel_active_for_contact(self, tenant_id: str, contact_id: str, workflow_ids: List[str],
                                  reason: str, now: Optional[datetime] = None) -> List[str]:
        if not workflow_ids:
            return []
        try:
            with self._session_factory() as db:
                candidate_ids = [
                    row.id for row in db.query(EnrollmentModel.id).filter(
                        EnrollmentModel.tenant_id == tenant_id,
                        EnrollmentModel.contact_id == contact_id,
                        EnrollmentModel.workflow_id.in_(workflow_ids),
                        EnrollmentModel.status.in_(_ACTIVE_VALUES)
                    ).all()
                ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to find enrollments to cancel: {str(e)}",
                               operation="cancel_active_for_contact", table="enrollments")

        return [
            enrollment_id for enrollment_id in candidate_ids
            if self.cancel_enrollment(enrollment_id, reason, now=now, tenant_id=tenant_id)
        ]

    # -- audit ----------------------------------------------------------------

    def append_attempt(self, attempt: ExecutionAttempt) -> ExecutionAttempt:
        try:
            with self._session_factory() as db:
                model = ExecutionAttemptModel(
                    tenant_id=attempt.tenant_id,
                    enrollment_id=attempt.enrollment_id,
                    node_id=attempt.node_id,
                    node_kind=attempt.node_kind.value if attempt.node_kind else None,
                    outcome=attempt.outcome.value,
                    error_code=attempt.error_code,
                    error_detail=attempt.error_detail,
                    details=attempt.details,
                    created_at=to_naive_utc(attempt.created_at),
                )
                db.add(model)
                db.commit()
                return attempt.model_copy(update={"id": model.id})
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to append execution attempt: {str(e)}", operation="append_attempt",
                               table="execution_attempts")

    def list_attempts(self, enrollment_id: str) -> List[ExecutionAttempt]:
        try:
            with self._session_factory() as db:
                models = db.query(ExecutionAttemptModel).filter(
                    ExecutionAttemptModel.enrollment_id == enrollment_id
                ).order_by(ExecutionAttemptModel.id).all()
                return [
                    ExecutionAttempt(
                        id=model.id,
                        tenant_id=model.tenant_id,
                        enrollment_id=model.enrollment_id,
                        node_id=model.node_id,
                        node_kind=model.node_kind,
                        outcome=model.outcome,
                        error_code=model.error_code,
                        error_detail=model.error_detail,
                        details=model.details or {},
                        created_at=ensure_utc(model.created_at),
                    )
                    for model in models
                ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list execution attempts: {str(e)}", operation="list_attempts",
                               table="execution_attempts")

    def summarize_attempts(self, workflow_id: str, tenant_id: Optional[str] = None,
                           since: Optional[datetime] = None) -> WorkflowStats:
        """
        Aggregate the audit trail of a workflow.

        Args:
            workflow_id: Workflow to summarize
            tenant_id: Restrict to this tenant's enrollments
            since: Only count enrollments created and attempts made from this instant

        Returns:
            WorkflowStats with enrollment counts by status and per-node
            success/failure/skipped attempt counts
        """
        naive_since = to_naive_utc(since) if since is not None else None
        try:
            with self._session_factory() as db:
                enrollments = db.query(EnrollmentModel.status, func.count(EnrollmentModel.id)).filter(
                    EnrollmentModel.workflow_id == workflow_id
                )
                attempts = db.query(
                    ExecutionAttemptModel.node_id,
                    ExecutionAttemptModel.outcome,
                    func.max(ExecutionAttemptModel.node_kind),
                    func.count(ExecutionAttemptModel.id),
                    func.min(ExecutionAttemptModel.id),
                ).join(
                    EnrollmentModel, ExecutionAttemptModel.enrollment_id == EnrollmentModel.id
                ).filter(EnrollmentModel.workflow_id == workflow_id)

                if tenant_id is not None:
                    enrollments = enrollments.filter(EnrollmentModel.tenant_id == tenant_id)
                    attempts = attempts.filter(EnrollmentModel.tenant_id == tenant_id)
                if naive_since is not None:
                    enrollments = enrollments.filter(EnrollmentModel.created_at >= naive_since)
                    attempts = attempts.filter(ExecutionAttemptModel.created_at >= naive_since)

                status_rows = enrollments.group_by(EnrollmentModel.status).all()
                attempt_rows = attempts.group_by(ExecutionAttemptModel.node_id, ExecutionAttemptModel.outcome).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to summarize execution attempts: {str(e)}", operation="summarize_attempts",
                               table="execution_attempts")

        by_status = {status.value: 0 for status in EnrollmentStatus}
        by_status.update({status: count for status, count in status_rows})
        total = sum(by_status.values())

        nodes: Dict[Optional[str], NodeAttemptCounts] = {}
        first_seen: Dict[Optional[str], int] = {}
        for node_id, outcome, node_kind, count, first_id in attempt_rows:
            counts = nodes.setdefault(node_id, NodeAttemptCounts(node_id=node_id))
            if counts.node_kind is None and node_kind:
                counts.node_kind = NodeKind(node_kind)
            setattr(counts, AttemptOutcome(outcome).value, count)
            first_seen[node_id] = min(first_seen.get(node_id, first_id), first_id)

        return WorkflowStats(
            workflow_id=workflow_id,
            since=ensure_utc(since),
            total_enrollments=total,
            enrollments_by_status=by_status,
            completion_rate=round(100.0 * by_status[EnrollmentStatus.COMPLETED.value] / total, 2) if total else 0.0,
            nodes=sorted(nodes.values(), key=lambda counts: first_seen[counts.node_id]),
        )

    # -- scheduled triggers ---------------------------------------------------

    def record_trigger_firing(self, workflow_id: str, scheduled_for: datetime, now: datetime) -> bool:
        """Reserve one date_time occurrence. Only the first caller gets True."""
        try:
            with self._session_factory() as db:
                db.add(TriggerFiringModel(
                    workflow_id=workflow_id,
                    scheduled_for=to_naive_utc(scheduled_for),
                    fired_at=to_naive_utc(now),
                    enrolled_count=0,
                ))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record trigger firing: {str(e)}", operation="record_trigger_firing",
                               table="trigger_firings")

    def update_trigger_firing(self, workflow_id: str, scheduled_for: datetime, enrolled_count: int):
        stmt = (
            update(TriggerFiringModel)
            .where(
                TriggerFiringModel.workflow_id == workflow_id,
                TriggerFiringModel.scheduled_for == to_naive_utc(scheduled_for)
            )
            .values(enrolled_count=enrolled_count)
            .execution_options(synchronize_session=False)
        )
        self._execute_update(stmt, "update_trigger_firing")

    def release_trigger_firing(self, workflow_id: str, scheduled_for: datetime):
        """Forget a reserved occurrence so a later tick can fire it again."""
        stmt = (
            delete(TriggerFiringModel)
            .where(
                TriggerFiringModel.workflow_id == workflow_id,
                TriggerFiringModel.scheduled_for == to_naive_utc(scheduled_for)
            )
            .execution_options(synchronize_session=False)
        )
        self._execute_update(stmt, "release_trigger_firing")

    # -- helpers --------------------------------------------------------------

    def _execute_update(self, stmt, operation: str) -> int:
        try:
            with self._session_factory() as db:
                result = db.execute(stmt)
                db.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation,
                               table="enrollments")

    @staticmethod
    def _to_enrollment(model: EnrollmentModel) -> Enrollment:
        return Enrollment(
            id=model.id,
            tenant_id=model.tenant_id,
            workflow_id=model.workflow_id,
            contact_id=model.contact_id,
            status=model.status,
            current_node_id=model.current_node_id,
            execution_path=list(model.execution_path or []),
            node_entered_at=ensure_utc(model.node_entered_at),
            next_due_at=ensure_utc(model.next_due_at),
            context=dict(model.context or {}),
            retry_count=model.retry_count or 0,
            last_error=model.last_error,
            trigger_type=model.trigger_type,
            trigger_payload=dict(model.trigger_payload or {}),
            entry_number=model.entry_number,
            version=model.version,
            claim_token=model.claim_token,
            claimed_until=ensure_utc(model.claimed_until),
            cancel_reason=model.cancel_reason,
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
            completed_at=ensure_utc(model.completed_at),
        )
