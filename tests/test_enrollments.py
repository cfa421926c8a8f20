"""Tests for the enrollment lifecycle and its durable store."""

from datetime import datetime, timedelta, timezone

import pytest

from campaign_engine.core import enrollment_state
from campaign_engine.core.exceptions import ClaimLostError, EnrollmentStateError, NotFoundError
from campaign_engine.models.core import (
    AttemptOutcome,
    Enrollment,
    EnrollmentStatus,
    ExecutionAttempt,
    NodeKind,
    WorkflowStatus,
)

from workflow_builders import TENANT, delay, message, trigger

NOW = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


def new_enrollment(status=EnrollmentStatus.PENDING):
    return Enrollment(id="e-1", tenant_id=TENANT, workflow_id="wf", contact_id="c", status=status,
                      current_node_id="welcome", execution_path=["trigger", "welcome"])


class TestEnrollmentTransitions:
    """Test the lifecycle state machine."""

    def test_happy_path(self):
        """Test pending -> running -> waiting -> running -> completed."""
        enrollment = new_enrollment()
        enrollment_state.start(enrollment, NOW)
        assert enrollment.status == EnrollmentStatus.RUNNING

        due = NOW + timedelta(days=1)
        enrollment_state.wait_until(enrollment, due, NOW)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_due_at == due

        enrollment_state.resume(enrollment, due)
        assert enrollment.next_due_at is None

        enrollment_state.advance_to(enrollment, None, due)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.completed_at == due

    def test_advance_records_path_and_resets_retries(self):
        """Test entering a node."""
        enrollment = new_enrollment(EnrollmentStatus.RUNNING)
        enrollment.retry_count = 3
        enrollment.last_error = "timeout"

        enrollment_state.advance_to(enrollment, "wait", NOW)

        assert enrollment.current_node_id == "wait"
        assert enrollment.execution_path == ["trigger", "welcome", "wait"]
        assert enrollment.node_entered_at == NOW
        assert enrollment.retry_count == 0
        assert enrollment.last_error is None

    def test_waiting_cannot_complete_directly(self):
        """Test waiting enrollments must resume first."""
        enrollment = new_enrollment(EnrollmentStatus.WAITING)
        with pytest.raises(EnrollmentStateError):
            enrollment_state.complete(enrollment, NOW)

    @pytest.mark.parametrize("terminal", [
        EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED, EnrollmentStatus.CANCELLED
    ])
    def test_terminal_states_are_final(self, terminal):
        """Test nothing leaves a terminal status."""
        enrollment = new_enrollment(terminal)
        for target in EnrollmentStatus:
            assert not enrollment_state.can_transition(terminal, target)
        with pytest.raises(EnrollmentStateError):
            enrollment_state.cancel(enrollment, "operator", NOW)

    def test_cancel_clears_due_time(self):
        """Test cancellation of a waiting enrollment."""
        enrollment = new_enrollment(EnrollmentStatus.WAITING)
        enrollment.next_due_at = NOW + timedelta(hours=1)
        enrollment_state.cancel(enrollment, "stop_on_reply", NOW)
        assert enrollment.status == EnrollmentStatus.CANCELLED
        assert enrollment.next_due_at is None
        assert enrollment.cancel_reason == "stop_on_reply"


@pytest.fixture
def workflow(make_workflow):
    return make_workflow([trigger(), message(), delay()])


class TestEnrollmentCreation:
    """Test enrollment admission rules."""

    def test_enrollment_starts_at_entry_node(self, enrollment_store, workflow):
        """Test new enrollments point at the node after the trigger."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        assert enrollment.status == EnrollmentStatus.PENDING
        assert enrollment.current_node_id == "welcome"
        assert enrollment.execution_path == ["trigger", "welcome"]
        assert enrollment.entry_number == 1
        assert enrollment.node_entered_at == NOW

    def test_no_second_active_enrollment(self, enrollment_store, workflow):
        """Test a contact is enrolled at most once at a time."""
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is not None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is None
        assert enrollment_store.create_enrollment(workflow, "contact-bo", now=NOW) is not None

    def test_reentry_after_finish(self, enrollment_store, workflow):
        """Test a finished enrollment frees the contact."""
        first = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        enrollment_store.cancel_enrollment(first.id, "operator", now=NOW)

        second = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        assert second is not None
        assert second.entry_number == 2

    def test_concurrent_reentry_allowed(self, enrollment_store, make_workflow):
        """Test allow_reentry permits parallel enrollments."""
        workflow = make_workflow([trigger(), message()], allow_reentry=True)
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is not None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is not None

    def test_execution_cap(self, enrollment_store, make_workflow):
        """Test max_executions_per_contact counts every past enrollment."""
        workflow = make_workflow([trigger(), message()], allow_reentry=True, max_executions_per_contact=2)
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is not None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is not None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW) is None

    def test_duplicate_event_is_ignored(self, enrollment_store, make_workflow):
        """Test redelivered events enroll once."""
        workflow = make_workflow([trigger(), message()], allow_reentry=True)
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW, event_id="evt-1") is not None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW, event_id="evt-1") is None
        assert enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW, event_id="evt-2") is not None

    def test_tenant_scoped_reads(self, enrollment_store, workflow):
        """Test enrollments are invisible to other tenants."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        assert enrollment_store.get_enrollment(enrollment.id, tenant_id=TENANT).id == enrollment.id
        with pytest.raises(NotFoundError):
            enrollment_store.get_enrollment(enrollment.id, tenant_id="tenant-2")
        assert enrollment_store.list_enrollments(tenant_id="tenant-2") == []


class TestClaims:
    """Test lease arbitration between workers."""

    def test_only_one_claim_wins(self, enrollment_store, workflow):
        """Test two workers claiming the same read of an enrollment."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        first = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        second = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)

        assert first is not None
        assert second is None

    def test_expired_lease_can_be_taken_over(self, enrollment_store, workflow):
        """Test a crashed worker's lease expires."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        assert enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)

        current = enrollment_store.get_enrollment(enrollment.id)
        assert enrollment_store.claim(current.id, current.version, NOW + timedelta(seconds=30), 60) is None
        assert enrollment_store.claim(current.id, current.version, NOW + timedelta(seconds=61), 60) is not None

    def test_claimed_enrollments_are_not_due(self, enrollment_store, workflow):
        """Test find_due skips held leases."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        assert enrollment_store.find_due(NOW) == []

        enrollment_store.release_claim(enrollment.id, token)
        assert [e.id for e in enrollment_store.find_due(NOW)] == [enrollment.id]

    def test_waiting_enrollment_due_only_after_due_time(self, enrollment_store, workflow):
        """Test future due times are not selected."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        held = enrollment_store.get_enrollment(enrollment.id)
        enrollment_state.start(held, NOW)
        enrollment_state.wait_until(held, NOW + timedelta(hours=2), NOW)
        enrollment_store.save_step(held, token)
        enrollment_store.release_claim(enrollment.id, token)

        assert enrollment_store.find_due(NOW + timedelta(hours=1)) == []
        assert len(enrollment_store.find_due(NOW + timedelta(hours=2))) == 1

    def test_paused_workflow_enrollments_are_not_due(self, enrollment_store, definition_store, workflow):
        """Test pausing a workflow holds its enrollments."""
        enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        definition_store.set_status(workflow.id, WorkflowStatus.PAUSED)
        assert enrollment_store.find_due(NOW) == []

        definition_store.set_status(workflow.id, WorkflowStatus.ACTIVE)
        assert len(enrollment_store.find_due(NOW)) == 1

    def test_save_after_cancel_is_rejected(self, enrollment_store, workflow):
        """Test a cancellation wins over a step in flight."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        held = enrollment_store.get_enrollment(enrollment.id)

        assert enrollment_store.cancel_enrollment(enrollment.id, "operator", now=NOW)

        enrollment_state.start(held, NOW)
        enrollment_state.advance_to(held, "wait", NOW)
        with pytest.raises(ClaimLostError):
            enrollment_store.save_step(held, token)
        assert enrollment_store.get_enrollment(enrollment.id).status == EnrollmentStatus.CANCELLED

    def test_cancel_is_idempotent(self, enrollment_store, workflow):
        """Test cancelling a finished enrollment reports False."""
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        assert enrollment_store.cancel_enrollment(enrollment.id, "operator", now=NOW) is True
        assert enrollment_store.cancel_enrollment(enrollment.id, "operator", now=NOW) is False

    def test_count_by_status(self, enrollment_store, workflow):
        """Test status counters include every status."""
        enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        counts = enrollment_store.count_by_status()
        assert counts["pending"] == 1
        assert counts["completed"] == 0


class TestAttemptSummary:
    """Test per-workflow aggregation of the audit trail."""

    def record(self, enrollment_store, enrollment, node_id, outcome, at=NOW, node_kind=NodeKind.MESSAGE):
        enrollment_store.append_attempt(ExecutionAttempt(
            tenant_id=enrollment.tenant_id,
            enrollment_id=enrollment.id,
            node_id=node_id,
            node_kind=node_kind if node_id else None,
            outcome=outcome,
            created_at=at,
        ))

    def test_counts_per_node_and_status(self, enrollment_store, make_workflow, workflow):
        """Test outcomes are counted per node in the order nodes were first reached."""
        ana = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        bo = enrollment_store.create_enrollment(workflow, "contact-bo", now=NOW)
        other = make_workflow([trigger(), message()], workflow_id="wf-other")
        elsewhere = enrollment_store.create_enrollment(other, "contact-ana", now=NOW)

        self.record(enrollment_store, ana, "welcome", AttemptOutcome.FAILURE)
        self.record(enrollment_store, ana, "welcome", AttemptOutcome.SUCCESS)
        self.record(enrollment_store, bo, "welcome", AttemptOutcome.SUCCESS)
        self.record(enrollment_store, ana, "wait", AttemptOutcome.SUCCESS, node_kind=NodeKind.DELAY)
        self.record(enrollment_store, bo, None, AttemptOutcome.SKIPPED)
        self.record(enrollment_store, elsewhere, "welcome", AttemptOutcome.FAILURE)
        enrollment_store.cancel_enrollment(bo.id, "operator", now=NOW)

        stats = enrollment_store.summarize_attempts(workflow.id, tenant_id=TENANT)

        assert stats.total_enrollments == 2
        assert stats.enrollments_by_status["pending"] == 1
        assert stats.enrollments_by_status["cancelled"] == 1
        assert stats.completion_rate == 0.0
        assert [(n.node_id, n.success, n.failure, n.skipped) for n in stats.nodes] == [
            ("welcome", 2, 1, 0),
            ("wait", 1, 0, 0),
            (None, 0, 0, 1),
        ]
        assert stats.nodes[0].node_kind == NodeKind.MESSAGE
        assert stats.nodes[1].node_kind == NodeKind.DELAY
        assert stats.nodes[2].node_kind is None

    def test_since_and_tenant_filters(self, enrollment_store, workflow):
        """Test older activity and other tenants are left out."""
        early = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW - timedelta(days=2))
        self.record(enrollment_store, early, "welcome", AttemptOutcome.SUCCESS, at=NOW - timedelta(days=2))
        late = enrollment_store.create_enrollment(workflow, "contact-bo", now=NOW)
        self.record(enrollment_store, late, "welcome", AttemptOutcome.FAILURE)

        recent = enrollment_store.summarize_attempts(workflow.id, since=NOW - timedelta(days=1))

        assert recent.total_enrollments == 1
        assert [(n.node_id, n.success, n.failure) for n in recent.nodes] == [("welcome", 0, 1)]
        assert recent.since == NOW - timedelta(days=1)
        assert enrollment_store.summarize_attempts(workflow.id, tenant_id="tenant-2").total_enrollments == 0

    def test_empty_workflow(self, enrollment_store, workflow):
        """Test a workflow without activity."""
        stats = enrollment_store.summarize_attempts(workflow.id)

        assert stats.total_enrollments == 0
        assert stats.completion_rate == 0.0
        assert stats.nodes == []
