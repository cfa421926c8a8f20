"""Tests for single-step enrollment execution."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from campaign_engine.core.error_recovery import ExponentialBackoff
from campaign_engine.core.exceptions import (
    ClaimLostError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from campaign_engine.core.step_executor import StepExecutor
from campaign_engine.integrations import InMemoryMessageChannel
from campaign_engine.models.core import AttemptOutcome, EnrollmentStatus, WorkflowStatus

from workflow_builders import TENANT, action, condition, delay, message, trigger

# Monday
NOW = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def run_step(enrollment_store, step_executor):
    """Claim an enrollment, execute one step and release the claim."""

    def _run(enrollment_id, now=NOW):
        current = enrollment_store.get_enrollment(enrollment_id)
        token = enrollment_store.claim(enrollment_id, current.version, now, 60)
        assert token is not None
        result = step_executor.execute_step(enrollment_id, token, now)
        enrollment_store.release_claim(enrollment_id, token)
        return result

    return _run


def vip_branching_nodes():
    return [
        trigger(),
        condition(clauses=[{"field": "tag", "operator": "equals", "value": "vip"}]),
        message(node_id="vip-offer", text="Thanks for being VIP, {{ name }}"),
        message(node_id="standard-offer", text="Hello {{ name }}"),
    ]


VIP_EDGES = [
    {"source": "trigger", "target": "check"},
    {"source": "check", "target": "vip-offer", "label": "true"},
    {"source": "check", "target": "standard-offer", "label": "false"},
]


class TestNodeHandlers:
    """Test each node kind."""

    def test_message_is_rendered_and_sent(self, make_workflow, enrollment_store, channel, run_step):
        """Test message delivery advances to the next node."""
        workflow = make_workflow([trigger(), message(), delay()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id)

        assert result.outcome == AttemptOutcome.SUCCESS
        assert result.status == EnrollmentStatus.RUNNING
        assert result.next_node_id == "wait"
        sent = channel.messages_for("contact-ana")
        assert len(sent) == 1
        assert sent[0].content.text == "Hi Ana"
        assert sent[0].idempotency_key == f"{enrollment.id}:welcome:1"

        stored = enrollment_store.get_enrollment(enrollment.id)
        assert stored.context["messages"]["welcome"] == sent[0].external_message_id

    def test_fallback_name(self, make_workflow, enrollment_store, directory, channel, run_step):
        """Test use_contact_name with a nameless contact."""
        directory.upsert_contact(TENANT, "contact-anon", phone="+5511999990009")
        workflow = make_workflow([trigger(), message(text="Hi {{ name }}!", use_contact_name=True,
                                                     fallback_name="there")])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-anon", now=NOW)

        run_step(enrollment.id)

        assert channel.messages_for("contact-anon")[0].content.text == "Hi there!"

    def test_delay_waits_then_resumes(self, make_workflow, enrollment_store, run_step):
        """Test a delay parks the enrollment until due."""
        workflow = make_workflow([trigger(), delay(amount=2, unit="hours"), action(tag_ids=["nudged"])])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id)
        assert result.status == EnrollmentStatus.WAITING
        assert result.due_at == NOW + timedelta(hours=2)

        result = run_step(enrollment.id, now=NOW + timedelta(hours=2))
        assert result.status == EnrollmentStatus.RUNNING
        assert result.next_node_id == "tag"

    def test_delay_is_measured_from_node_entry(self, make_workflow, enrollment_store, run_step):
        """Test a late evaluation does not extend the delay."""
        workflow = make_workflow([trigger(), delay(amount=2, unit="hours"), action(tag_ids=["nudged"])])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id, now=NOW + timedelta(hours=5))

        assert result.status == EnrollmentStatus.RUNNING
        assert result.next_node_id == "tag"

    def test_action_mutates_contact_and_completes(self, make_workflow, enrollment_store, directory, run_step):
        """Test the last node completes the enrollment."""
        workflow = make_workflow([trigger(), action(tag_ids=["welcomed"])])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id)

        assert result.status == EnrollmentStatus.COMPLETED
        assert "welcomed" in directory.get_contact_context(TENANT, "contact-ana").tags

    def test_update_field_and_list_actions(self, make_workflow, enrollment_store, directory, run_step):
        """Test field and list mutations."""
        workflow = make_workflow([
            trigger(),
            action(node_id="field", action_type="update_field", field_name="stage", field_value="onboarded"),
            action(node_id="list", action_type="add_to_list", list_id="newsletter"),
        ])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        run_step(enrollment.id)
        run_step(enrollment.id)

        assert directory.get_contact_context(TENANT, "contact-ana").custom_fields["stage"] == "onboarded"
        assert directory.list_members(TENANT, "newsletter") == ["contact-ana"]

    def test_send_notification(self, make_workflow, enrollment_store, notifier, run_step):
        """Test team notifications."""
        workflow = make_workflow([
            trigger(),
            action(node_id="notify", action_type="send_notification", notification_email="sales@example.com"),
        ])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        run_step(enrollment.id)

        tenant_id, email, text = notifier.notifications[0]
        assert tenant_id == TENANT
        assert email == "sales@example.com"
        assert "contact-ana" in text

    @pytest.mark.parametrize("contact_id, expected_node", [
        ("contact-bo", "vip-offer"),
        ("contact-ana", "standard-offer"),
    ])
    def test_condition_branches(self, make_workflow, enrollment_store, contact_id, expected_node, run_step):
        """Test condition results select the labelled edge."""
        workflow = make_workflow(vip_branching_nodes(), edges=VIP_EDGES)
        enrollment = enrollment_store.create_enrollment(workflow, contact_id, now=NOW)

        result = run_step(enrollment.id)

        assert result.next_node_id == expected_node
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert stored.context["conditions"]["check"] is (expected_node == "vip-offer")

    def test_missing_branch_fails_enrollment(self, make_workflow, enrollment_store, run_step):
        """Test a condition without the needed branch."""
        edges = [
            {"source": "trigger", "target": "check"},
            {"source": "check", "target": "vip-offer", "label": "true"},
        ]
        workflow = make_workflow(vip_branching_nodes()[:3], edges=edges)
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id)

        assert result.status == EnrollmentStatus.FAILED
        assert "false" in result.error


class TestFailureHandling:
    """Test retries and permanent failures."""

    def test_transient_failure_is_retried_with_backoff(self, make_workflow, enrollment_store, channel, run_step):
        """Test the first retry waits the base delay."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(TransientDeliveryError("gateway timeout", status_code=504))

        result = run_step(enrollment.id)

        assert result.outcome == AttemptOutcome.FAILURE
        assert result.status == EnrollmentStatus.WAITING
        assert result.due_at == NOW + timedelta(hours=1)
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert stored.retry_count == 1
        assert stored.current_node_id == "welcome"

        result = run_step(enrollment.id, now=result.due_at)
        assert result.status == EnrollmentStatus.COMPLETED
        assert len(channel.sent) == 1

    def test_retry_schedule_until_exhausted(self, make_workflow, enrollment_store, channel, run_step):
        """Test five consecutive failures with a cap of four retries."""
        workflow = make_workflow([trigger(), message(max_retries=4)])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(*[TransientDeliveryError("gateway timeout", status_code=503) for _ in range(5)])

        now = NOW
        waits = []
        for _ in range(4):
            result = run_step(enrollment.id, now=now)
            assert result.status == EnrollmentStatus.WAITING
            waits.append(result.due_at - now)
            now = result.due_at

        result = run_step(enrollment.id, now=now)

        assert waits == [timedelta(hours=1), timedelta(hours=2), timedelta(hours=4), timedelta(hours=8)]
        assert result.status == EnrollmentStatus.FAILED
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert stored.retry_count == 5
        assert "gave up after 5 attempts" in stored.last_error
        assert channel.sent == []

    def test_backoff_is_capped(self, make_workflow, enrollment_store, channel, run_step):
        """Test retry delays never exceed the cap."""
        workflow = make_workflow([trigger(), message(max_retries=10)])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(*[TransientDeliveryError("unavailable") for _ in range(7)])

        now = NOW
        for _ in range(7):
            result = run_step(enrollment.id, now=now)
            last_wait = result.due_at - now
            now = result.due_at

        assert last_wait == timedelta(hours=24)

    def test_permanent_failure_fails_immediately(self, make_workflow, enrollment_store, channel, run_step):
        """Test rejected messages are not retried."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(PermanentDeliveryError("invalid recipient", status_code=400))

        result = run_step(enrollment.id)

        assert result.status == EnrollmentStatus.FAILED
        assert enrollment_store.get_enrollment(enrollment.id).retry_count == 0

    def test_stop_on_error(self, make_workflow, enrollment_store, channel, run_step):
        """Test stop_on_error turns transient failures into final ones."""
        workflow = make_workflow([trigger(), message()], stop_on_error=True)
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(TransientDeliveryError("gateway timeout"))

        assert run_step(enrollment.id).status == EnrollmentStatus.FAILED

    def test_unknown_contact_is_retried(self, make_workflow, enrollment_store, run_step):
        """Test contact directory failures are transient."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ghost", now=NOW)

        assert run_step(enrollment.id).status == EnrollmentStatus.WAITING

    def test_attempts_are_recorded(self, make_workflow, enrollment_store, channel, run_step):
        """Test every evaluation leaves an audit record."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        channel.fail_next(TransientDeliveryError("gateway timeout"))

        run_step(enrollment.id)
        run_step(enrollment.id, now=NOW + timedelta(hours=1))

        attempts = enrollment_store.list_attempts(enrollment.id)
        assert [attempt.outcome for attempt in attempts] == [AttemptOutcome.FAILURE, AttemptOutcome.SUCCESS]
        assert attempts[0].error_code == "TransientDeliveryError"
        assert attempts[0].node_id == "welcome"

    def test_template_runtime_error_fails_enrollment(self, make_workflow, enrollment_store, directory,
                                                     channel, run_step):
        """Test an expression that cannot be evaluated for this contact."""
        directory.upsert_contact(TENANT, "contact-cy", name="Cy", custom_fields={"score": "high"})
        workflow = make_workflow([trigger(), message(text="Score {{ fields.score + 1 }}")])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-cy", now=NOW)

        result = run_step(enrollment.id)

        assert result.outcome == AttemptOutcome.FAILURE
        assert result.status == EnrollmentStatus.FAILED
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert "TypeError" in stored.last_error
        attempts = enrollment_store.list_attempts(enrollment.id)
        assert [attempt.outcome for attempt in attempts] == [AttemptOutcome.FAILURE]
        assert attempts[0].error_code == "TemplateRenderError"
        assert channel.sent == []

    def test_unexpected_adapter_error_fails_enrollment(self, make_workflow, enrollment_store, directory,
                                                       monkeypatch, run_step):
        """Test errors outside the engine's taxonomy are recorded, not raised."""
        def broken_lookup(tenant_id, contact_id):
            raise KeyError("phone")

        monkeypatch.setattr(directory, "get_contact_context", broken_lookup)
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)

        result = run_step(enrollment.id)

        assert result.status == EnrollmentStatus.FAILED
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert "KeyError" in stored.last_error
        attempts = enrollment_store.list_attempts(enrollment.id)
        assert attempts[0].outcome == AttemptOutcome.FAILURE
        assert attempts[0].error_code == "UnexpectedError"
        assert attempts[0].node_id == "welcome"


class SlowChannel(InMemoryMessageChannel):
    """Channel that answers after ``delay`` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def send(self, tenant_id, contact_id, content, idempotency_key=None):
        time.sleep(self.delay)
        return super().send(tenant_id, contact_id, content, idempotency_key)


class TestChannelTimeout:
    """Test channel calls bounded by send_timeout."""

    def test_timeout_is_retried_like_a_delivery_failure(self, make_workflow, definition_store, enrollment_store,
                                                         directory, notifier, clock):
        """Test a channel slower than send_timeout leaves the enrollment waiting."""
        executor = StepExecutor(
            definition_store=definition_store,
            enrollment_store=enrollment_store,
            channel=SlowChannel(delay=0.5),
            directory=directory,
            notifier=notifier,
            backoff=ExponentialBackoff(base_delay=3600, max_delay=86400, max_retries=5),
            send_timeout=0.1,
            max_concurrent_sends=1,
            clock=clock
        )
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        try:
            result = executor.execute_step(enrollment.id, token, NOW)
        finally:
            executor.shutdown()

        assert result.outcome == AttemptOutcome.FAILURE
        assert result.status == EnrollmentStatus.WAITING
        assert result.due_at == NOW + timedelta(hours=1)
        stored = enrollment_store.get_enrollment(enrollment.id)
        assert stored.retry_count == 1
        assert "did not answer within 0.1 seconds" in stored.last_error
        attempts = enrollment_store.list_attempts(enrollment.id)
        assert len(attempts) == 1
        assert attempts[0].error_code == "TransientDeliveryError"


class TestStepGuards:
    """Test steps that must not run."""

    def test_wrong_claim_token(self, make_workflow, enrollment_store, step_executor):
        """Test a step needs the current lease."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)

        with pytest.raises(ClaimLostError):
            step_executor.execute_step(enrollment.id, "stale-token", NOW)

    def test_terminal_enrollment_is_skipped(self, make_workflow, enrollment_store, step_executor, channel):
        """Test cancelled enrollments are left alone."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)
        enrollment_store.cancel_enrollment(enrollment.id, "operator", now=NOW)

        result = step_executor.execute_step(enrollment.id, token, NOW)

        assert result.outcome == AttemptOutcome.SKIPPED
        assert result.status == EnrollmentStatus.CANCELLED
        assert channel.sent == []

    def test_paused_workflow_is_skipped(self, make_workflow, definition_store, enrollment_store,
                                        step_executor, channel):
        """Test enrollments of paused workflows do not advance."""
        workflow = make_workflow([trigger(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        definition_store.set_status(workflow.id, WorkflowStatus.PAUSED)
        token = enrollment_store.claim(enrollment.id, enrollment.version, NOW, 60)

        result = step_executor.execute_step(enrollment.id, token, NOW)

        assert result.outcome == AttemptOutcome.SKIPPED
        assert enrollment_store.get_enrollment(enrollment.id).status == EnrollmentStatus.PENDING
        assert channel.sent == []

    def test_deleted_node_fails_enrollment(self, make_workflow, enrollment_store, run_step):
        """Test an enrollment whose node disappeared from the definition."""
        workflow = make_workflow([trigger(), delay(), message()])
        enrollment = enrollment_store.create_enrollment(workflow, "contact-ana", now=NOW)
        run_step(enrollment.id)

        make_workflow([trigger(), message()])
        result = run_step(enrollment.id, now=NOW + timedelta(days=1))

        assert result.status == EnrollmentStatus.FAILED
