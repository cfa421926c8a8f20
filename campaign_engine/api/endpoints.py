"""FastAPI REST endpoints for the campaign engine."""

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.definition_store import DefinitionStore
from ..core.enrollment_store import EnrollmentStore
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.scheduler import Scheduler, TickResult
from ..core.trigger_evaluator import TriggerEvaluator
from ..models.core import (
    Enrollment,
    EnrollmentStatus,
    ExecutionAttempt,
    TriggerEvaluationResult,
    TriggerEvent,
    ValidationResult,
    WorkflowStats,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["campaigns"])

# Global instances (initialized by the application factory)
_definition_store: Optional[DefinitionStore] = None
_enrollment_store: Optional[EnrollmentStore] = None
_trigger_evaluator: Optional[TriggerEvaluator] = None
_scheduler: Optional[Scheduler] = None


def init_dependencies(
    definition_store: DefinitionStore,
    enrollment_store: EnrollmentStore,
    trigger_evaluator: TriggerEvaluator,
    scheduler: Scheduler
):
    """Initialize the global dependencies."""
    global _definition_store, _enrollment_store, _trigger_evaluator, _scheduler
    _definition_store = definition_store
    _enrollment_store = enrollment_store
    _trigger_evaluator = trigger_evaluator
    _scheduler = scheduler


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_definition_store() -> DefinitionStore:
    """Dependency to get the definition store."""
    return _require(_definition_store, "Definition store")


def get_enrollment_store() -> EnrollmentStore:
    """Dependency to get the enrollment store."""
    return _require(_enrollment_store, "Enrollment store")


def get_trigger_evaluator() -> TriggerEvaluator:
    """Dependency to get the trigger evaluator."""
    return _require(_trigger_evaluator, "Trigger evaluator")


def get_scheduler() -> Scheduler:
    """Dependency to get the scheduler."""
    return _require(_scheduler, "Scheduler")


def _http_error(error: WorkflowEngineError) -> HTTPException:
    return HTTPException(status_code=status_code_for_error(error), detail=create_error_response(error))


# Request/Response models
class CancelEnrollmentRequest(BaseModel):
    """Request model for operator cancellation."""
    reason: str = Field(default="operator", description="Why the enrollment is cancelled")
    tenant_id: Optional[str] = Field(None, description="Restrict the lookup to this tenant")


class CancelEnrollmentResponse(BaseModel):
    """Response model for operator cancellation."""
    enrollment_id: str
    cancelled: bool = Field(..., description="False when the enrollment had already finished")
    status: EnrollmentStatus


# Endpoints

@router.post(
    "/events",
    response_model=TriggerEvaluationResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver a contact event",
    description="Evaluate triggers for a contact event and enroll the contact into matching workflows"
)
async def receive_event(
    event: TriggerEvent,
    trigger_evaluator: TriggerEvaluator = Depends(get_trigger_evaluator)
) -> TriggerEvaluationResult:
    """
    Deliver an event from the CRM.

    Inbound messages also cancel enrollments in workflows that stop on reply.
    """
    try:
        return trigger_evaluator.handle_event(event)
    except WorkflowEngineError as e:
        logger.warning(f"Event for contact '{event.contact_id}' could not be evaluated: {e.message}")
        raise _http_error(e)


@router.get(
    "/enrollments",
    response_model=List[Enrollment],
    summary="List enrollments"
)
async def list_enrollments(
    workflow_id: Optional[str] = Query(None),
    contact_id: Optional[str] = Query(None),
    status_filter: Optional[EnrollmentStatus] = Query(None, alias="status"),
    tenant_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> List[Enrollment]:
    try:
        return enrollment_store.list_enrollments(
            workflow_id=workflow_id,
            contact_id=contact_id,
            status=status_filter,
            tenant_id=tenant_id,
            limit=limit
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/enrollments/{enrollment_id}",
    response_model=Enrollment,
    summary="Get an enrollment"
)
async def get_enrollment(
    enrollment_id: str,
    tenant_id: Optional[str] = Query(None),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> Enrollment:
    try:
        return enrollment_store.get_enrollment(enrollment_id, tenant_id=tenant_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/enrollments/{enrollment_id}/attempts",
    response_model=List[ExecutionAttempt],
    summary="Get the execution history of an enrollment"
)
async def get_enrollment_attempts(
    enrollment_id: str,
    tenant_id: Optional[str] = Query(None),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> List[ExecutionAttempt]:
    try:
        enrollment_store.get_enrollment(enrollment_id, tenant_id=tenant_id)
        return enrollment_store.list_attempts(enrollment_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/enrollments/{enrollment_id}/cancel",
    response_model=CancelEnrollmentResponse,
    summary="Cancel an enrollment",
    description="Stop an enrollment; a step already in flight is discarded when it tries to save"
)
async def cancel_enrollment(
    enrollment_id: str,
    request: Optional[CancelEnrollmentRequest] = None,
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> CancelEnrollmentResponse:
    request = request or CancelEnrollmentRequest()
    try:
        enrollment_store.get_enrollment(enrollment_id, tenant_id=request.tenant_id)
        cancelled = enrollment_store.cancel_enrollment(enrollment_id, request.reason, tenant_id=request.tenant_id)
        current = enrollment_store.get_enrollment(enrollment_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    logger.info(f"Operator cancellation of enrollment {enrollment_id}: cancelled={cancelled}")
    return CancelEnrollmentResponse(enrollment_id=enrollment_id, cancelled=cancelled, status=current.status)


@router.get(
    "/workflows/{workflow_id}/validation",
    response_model=ValidationResult,
    summary="Validate a stored workflow"
)
async def validate_workflow(
    workflow_id: str,
    tenant_id: Optional[str] = Query(None),
    definition_store: DefinitionStore = Depends(get_definition_store)
) -> ValidationResult:
    try:
        definition = definition_store.get_definition(workflow_id, tenant_id=tenant_id)
        return definition_store.validate_definition(definition)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/workflows/{workflow_id}/stats",
    response_model=WorkflowStats,
    summary="Get workflow statistics",
    description="Enrollment counts by status and per-node success, failure and skipped attempt counts"
)
async def get_workflow_stats(
    workflow_id: str,
    tenant_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None, description="Only count activity from this instant"),
    definition_store: DefinitionStore = Depends(get_definition_store),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> WorkflowStats:
    try:
        definition_store.get_definition(workflow_id, tenant_id=tenant_id)
        return enrollment_store.summarize_attempts(workflow_id, tenant_id=tenant_id, since=since)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/scheduler/tick",
    response_model=TickResult,
    summary="Run one scheduler pass now"
)
def run_scheduler_tick(scheduler: Scheduler = Depends(get_scheduler)) -> TickResult:
    return scheduler.tick()
