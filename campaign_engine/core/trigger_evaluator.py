"""Trigger Evaluator: turns contact events and calendar occurrences into enrollments."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from ..integrations.base import ContactDirectory
from ..models.core import (
    TriggerConfig,
    TriggerEvaluationResult,
    TriggerEvent,
    TriggerType,
    WorkflowDefinition,
    WorkflowStatus,
)
from .clock import ensure_utc, utc_now
from .definition_store import DefinitionStore
from .delay_calculator import parse_time_of_day, resolve_timezone
from .enrollment_store import EnrollmentStore
from .exceptions import ConfigurationError, TransientError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)

STOP_ON_REPLY_REASON = "stop_on_reply"


def _parse_date(value: str, config_key: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid date '{value}', expected YYYY-MM-DD", config_key=config_key) from e


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value]
    return [str(value)]


def _same_value(expected: Any, actual: Any) -> bool:
    if expected is None:
        return True
    if actual is None:
        return False
    return str(expected).strip().lower() == str(actual).strip().lower()


def matches(config: TriggerConfig, event: TriggerEvent) -> bool:
    """
    Check whether an event satisfies a trigger's filter.

    Filters that are not configured match anything. The event type itself is
    compared by the caller when it selects candidate workflows.
    """
    if config.trigger_type != event.type:
        return False
    data = event.data

    if config.tag_ids:
        applied = set(_as_list(data.get("tag_ids"))) | set(_as_list(data.get("tag_id")))
        if not applied & set(config.tag_ids):
            return False

    if config.field_name:
        if str(data.get("field_name", "")) != config.field_name:
            return False
        if config.field_value is not None and not _same_value(config.field_value, data.get("field_value")):
            return False

    if config.list_id and str(data.get("list_id", "")) != config.list_id:
        return False

    if config.webhook_key and str(data.get("webhook_key", "")) != config.webhook_key:
        return False

    return True


def latest_occurrence(config: TriggerConfig, now: datetime, default_timezone: str = "UTC") -> Optional[datetime]:
    """
    Latest scheduled occurrence of a date_time trigger at or before ``now``.

    A trigger without ``interval_minutes`` or ``cron_expression`` fires once at
    its scheduled date and time. A recurring trigger fires every
    ``interval_minutes`` from then, or at each local time its cron expression
    matches, until the end of ``end_date`` (local time). For cron triggers the
    scheduled date is optional and only sets the earliest occurrence. Returns
    None before the first occurrence.
    """
    if config.trigger_type != TriggerType.DATE_TIME:
        raise ConfigurationError(f"'{config.trigger_type.value}' is not a scheduled trigger",
                                 config_key="trigger_type")

    zone = resolve_timezone(config.timezone or default_timezone)
    now = ensure_utc(now)

    start = None
    if config.scheduled_date:
        start_day = _parse_date(config.scheduled_date, "scheduled_date")
        start_time = parse_time_of_day(config.scheduled_time or "00:00", "scheduled_time")
        start = datetime.combine(start_day, start_time, tzinfo=zone).astimezone(timezone.utc)
        if now < start:
            return None
        if not config.interval_minutes and not config.cron_expression:
            return start

    horizon = now
    if config.end_date:
        end_day = _parse_date(config.end_date, "end_date")
        end = datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=zone)
        horizon = min(now, end.astimezone(timezone.utc) - timedelta(microseconds=1))
        if start is not None and horizon < start:
            return None

    if config.cron_expression:
        occurrence = _previous_cron_match(config.cron_expression, horizon, zone)
        if start is not None and occurrence < start:
            return None
        return occurrence

    interval = timedelta(minutes=config.interval_minutes)
    return start + ((horizon - start) // interval) * interval


def _previous_cron_match(expression: str, horizon: datetime, zone) -> datetime:
    """Last minute at or before ``horizon`` matching ``expression`` on the local wall clock."""
    local = horizon.astimezone(zone).replace(tzinfo=None, second=0, microsecond=0)
    try:
        # get_prev is exclusive of its start
        previous = croniter(expression, local + timedelta(minutes=1)).get_prev(datetime)
    except (ValueError, KeyError) as e:
        raise ConfigurationError(f"Invalid cron expression '{expression}': {e}",
                                 config_key="cron_expression") from e
    return previous.replace(tzinfo=zone).astimezone(timezone.utc)


class TriggerEvaluator:
    """Decides which workflows an event or the clock starts for which contacts."""

    def __init__(self, definition_store: DefinitionStore, enrollment_store: EnrollmentStore,
                 directory: Optional[ContactDirectory] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.definition_store = definition_store
        self.enrollment_store = enrollment_store
        self.directory = directory
        self._clock = clock

    def handle_event(self, event: TriggerEvent) -> TriggerEvaluationResult:
        """
        Apply an incoming contact event.

        Inbound messages first cancel the contact's live enrollments in
        workflows that stop on reply; then every active workflow of the tenant
        whose trigger matches the event enrolls the contact.

        Raises:
            StorageError: If definitions or enrollments cannot be read or written
        """
        now = ensure_utc(event.occurred_at) or self._clock()
        result = TriggerEvaluationResult(event_type=event.type)
        logger.info(f"Evaluating '{event.type.value}' event for contact '{event.contact_id}' "
                    f"of tenant '{event.tenant_id}'")

        if event.type == TriggerType.INBOUND_MESSAGE:
            result.cancelled_enrollment_ids = self.cancel_on_reply(event.tenant_id, event.contact_id, now)

        for definition in self.definition_store.list_active(event.tenant_id, trigger_type=event.type):
            trigger = definition.trigger_node
            if trigger is None or not matches(trigger.config, event):
                continue
            result.matched_workflow_ids.append(definition.id)

            enrollment = self.enroll(
                definition,
                event.contact_id,
                trigger_type=event.type,
                payload=event.data,
                now=now,
                event_id=event.event_id,
            )
            if enrollment is None:
                result.skipped[definition.id] = "already enrolled, limit reached or duplicate event"
            else:
                result.enrollment_ids.append(enrollment.id)

        logger.info(f"Event for contact '{event.contact_id}' matched {len(result.matched_workflow_ids)} "
                    f"workflow(s), created {len(result.enrollment_ids)} enrollment(s)")
        return result

    def cancel_on_reply(self, tenant_id: str, contact_id: str, now: Optional[datetime] = None) -> List[str]:
        """Cancel the contact's live enrollments in workflows with ``stop_on_reply``."""
        workflow_ids = [
            definition.id
            for definition in self.definition_store.list_definitions(tenant_id=tenant_id)
            if definition.settings.stop_on_reply
        ]
        cancelled = self.enrollment_store.cancel_active_for_contact(
            tenant_id, contact_id, workflow_ids, STOP_ON_REPLY_REASON, now=now
        )
        if cancelled:
            logger.info(f"Contact '{contact_id}' replied; cancelled {len(cancelled)} enrollment(s)")
        return cancelled

    def enroll(self, definition: WorkflowDefinition, contact_id: str,
               trigger_type: Optional[TriggerType] = None, payload: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None, event_id: Optional[str] = None):
        """
        Enroll one contact into one workflow.

        Returns:
            The new Enrollment, or None when the store declined it
        """
        if definition.status != WorkflowStatus.ACTIVE:
            logger.debug(f"Not enrolling into '{definition.id}': workflow is {definition.status.value}")
            return None
        if trigger_type is None and definition.trigger_node is not None:
            trigger_type = definition.trigger_node.config.trigger_type
        return self.enrollment_store.create_enrollment(
            definition,
            contact_id,
            trigger_type=trigger_type,
            trigger_payload=payload,
            now=now or self._clock(),
            event_id=event_id,
        )

    def evaluate_scheduled_triggers(self, now: Optional[datetime] = None) -> int:
        """
        Fire due ``date_time`` triggers.

        Each occurrence is reserved in the store before any contact is
        enrolled, so concurrent schedulers fire it once. Only the latest missed
        occurrence of a recurring trigger fires after downtime.

        Returns:
            Number of enrollments created
        """
        now = ensure_utc(now) or self._clock()
        if self.directory is None:
            logger.debug("No contact directory configured; date_time triggers are not evaluated")
            return 0

        created = 0
        for definition in self.definition_store.list_active(trigger_type=TriggerType.DATE_TIME):
            try:
                created += self._fire_scheduled(definition, now)
            except ConfigurationError as e:
                logger.error(f"Skipping date_time trigger of workflow '{definition.id}': {e.message}")
            except TransientError as e:
                logger.warning(f"Scheduled trigger of workflow '{definition.id}' will be retried: {e.message}")
        return created

    def _fire_scheduled(self, definition: WorkflowDefinition, now: datetime) -> int:
        trigger = definition.trigger_node
        if trigger is None:
            return 0

        occurrence = latest_occurrence(trigger.config, now, definition.settings.timezone)
        if occurrence is None:
            return 0
        if not self.enrollment_store.record_trigger_firing(definition.id, occurrence, now):
            return 0

        logger.info(f"Firing date_time trigger of workflow '{definition.id}' for {occurrence.isoformat()}")
        event_id = f"{TriggerType.DATE_TIME.value}:{occurrence.isoformat()}"
        enrolled = 0
        try:
            contact_ids = self.directory.list_contacts(definition.tenant_id, tag_ids=trigger.config.tag_ids or None)
            for contact_id in contact_ids:
                enrollment = self.enroll(
                    definition,
                    contact_id,
                    trigger_type=TriggerType.DATE_TIME,
                    payload={"scheduled_for": occurrence.isoformat()},
                    now=now,
                    event_id=f"{event_id}:{contact_id}",
                )
                if enrollment is not None:
                    enrolled += 1
        except WorkflowEngineError:
            # Contacts already enrolled are deduplicated by event id on the next attempt
            self.enrollment_store.release_trigger_firing(definition.id, occurrence)
            raise

        self.enrollment_store.update_trigger_firing(definition.id, occurrence, enrolled)
        logger.info(f"Scheduled trigger of workflow '{definition.id}' enrolled {enrolled} contact(s)")
        return enrolled
