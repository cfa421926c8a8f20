"""Enrollment lifecycle transitions.

Pure functions over the ``Enrollment`` model; persistence is the store's job.

    pending  -> running | completed | failed | cancelled
    running  -> waiting | completed | failed | cancelled
    waiting  -> running | cancelled
    completed, failed, cancelled are terminal
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from ..models.core import Enrollment, EnrollmentStatus
from .exceptions import EnrollmentStateError


ALLOWED_TRANSITIONS: Dict[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    EnrollmentStatus.PENDING: frozenset({
        EnrollmentStatus.RUNNING,
        EnrollmentStatus.COMPLETED,
        EnrollmentStatus.FAILED,
        EnrollmentStatus.CANCELLED,
    }),
    EnrollmentStatus.RUNNING: frozenset({
        EnrollmentStatus.WAITING,
        EnrollmentStatus.COMPLETED,
        EnrollmentStatus.FAILED,
        EnrollmentStatus.CANCELLED,
    }),
    EnrollmentStatus.WAITING: frozenset({
        EnrollmentStatus.RUNNING,
        EnrollmentStatus.CANCELLED,
    }),
    EnrollmentStatus.COMPLETED: frozenset(),
    EnrollmentStatus.FAILED: frozenset(),
    EnrollmentStatus.CANCELLED: frozenset(),
}


def can_transition(current: EnrollmentStatus, target: EnrollmentStatus) -> bool:
    return EnrollmentStatus(target) in ALLOWED_TRANSITIONS[EnrollmentStatus(current)]


def _transition(enrollment: Enrollment, target: EnrollmentStatus, now: datetime) -> Enrollment:
    if not can_transition(enrollment.status, target):
        raise EnrollmentStateError(enrollment.status.value, target.value, enrollment_id=enrollment.id)
    enrollment.status = target
    enrollment.updated_at = now
    if target.is_terminal:
        enrollment.next_due_at = None
        enrollment.completed_at = now
    return enrollment


def start(enrollment: Enrollment, now: datetime) -> Enrollment:
    """Move a pending enrollment to running."""
    _transition(enrollment, EnrollmentStatus.RUNNING, now)
    enrollment.next_due_at = None
    return enrollment


def resume(enrollment: Enrollment, now: datetime) -> Enrollment:
    """Wake a waiting enrollment whose due time has passed."""
    _transition(enrollment, EnrollmentStatus.RUNNING, now)
    enrollment.next_due_at = None
    return enrollment


def wait_until(enrollment: Enrollment, due: datetime, now: datetime) -> Enrollment:
    """Park a running enrollment until ``due``."""
    _transition(enrollment, EnrollmentStatus.WAITING, now)
    enrollment.next_due_at = due
    return enrollment


def advance_to(enrollment: Enrollment, node_id: Optional[str], now: datetime) -> Enrollment:
    """Enter ``node_id``; with no next node the enrollment completes."""
    if enrollment.status != EnrollmentStatus.RUNNING:
        raise EnrollmentStateError(enrollment.status.value, "advance", enrollment_id=enrollment.id)
    if node_id is None:
        return complete(enrollment, now)
    enrollment.current_node_id = node_id
    enrollment.execution_path = list(enrollment.execution_path) + [node_id]
    enrollment.node_entered_at = now
    enrollment.retry_count = 0
    enrollment.last_error = None
    enrollment.updated_at = now
    return enrollment


def complete(enrollment: Enrollment, now: datetime) -> Enrollment:
    return _transition(enrollment, EnrollmentStatus.COMPLETED, now)


def fail(enrollment: Enrollment, error: str, now: datetime) -> Enrollment:
    _transition(enrollment, EnrollmentStatus.FAILED, now)
    enrollment.last_error = error
    return enrollment


def cancel(enrollment: Enrollment, reason: str, now: datetime) -> Enrollment:
    _transition(enrollment, EnrollmentStatus.CANCELLED, now)
    enrollment.cancel_reason = reason
    return enrollment


def record_retry(enrollment: Enrollment, due: datetime, error: str, now: datetime) -> Enrollment:
    """Park a running enrollment for another delivery attempt at ``due``.

    The caller has already counted the failure in ``retry_count``.
    """
    wait_until(enrollment, due, now)
    enrollment.last_error = error
    return enrollment
