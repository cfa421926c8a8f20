"""SQLAlchemy database models for the campaign engine.

Timestamps are stored as naive UTC.
"""

from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from ..core.clock import utc_now, to_naive_utc
from .database import Base


def _now():
    return to_naive_utc(utc_now())


class WorkflowDefinitionModel(Base):
    """Database model for workflow definitions written by the authoring layer."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")
    trigger_type = Column(String, index=True)
    version = Column(Integer, nullable=False, default=1)
    definition = Column(JSON, nullable=False)  # Stores the complete node/edge/settings document
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    enrollments = relationship("EnrollmentModel", back_populates="workflow")


class EnrollmentModel(Base):
    """Database model for a contact's run through a workflow."""
    __tablename__ = "enrollments"
    __table_args__ = (
        # Non-null only while non-terminal and re-entry is disallowed
        UniqueConstraint("active_key", name="uq_enrollments_active_key"),
        UniqueConstraint("workflow_id", "contact_id", "entry_number", name="uq_enrollments_entry"),
        UniqueConstraint("workflow_id", "event_key", name="uq_enrollments_event"),
        Index("idx_enrollments_due", "status", "next_due_at"),
        Index("idx_enrollments_contact", "tenant_id", "contact_id", "status"),
    )

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    contact_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # pending, running, waiting, completed, failed, cancelled
    current_node_id = Column(String)
    execution_path = Column(JSON)  # List of visited node IDs
    node_entered_at = Column(DateTime)
    next_due_at = Column(DateTime)
    context = Column(JSON)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    trigger_type = Column(String)
    trigger_payload = Column(JSON)
    event_key = Column(String)
    entry_number = Column(Integer, nullable=False, default=1)
    active_key = Column(String)
    version = Column(Integer, nullable=False, default=0)
    claim_token = Column(String)
    claimed_until = Column(DateTime)
    cancel_reason = Column(String)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowDefinitionModel", back_populates="enrollments")
    attempts = relationship("ExecutionAttemptModel", back_populates="enrollment")


class ExecutionAttemptModel(Base):
    """Append-only audit of node evaluations."""
    __tablename__ = "execution_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False)
    enrollment_id = Column(String, ForeignKey("enrollments.id"), nullable=False, index=True)
    node_id = Column(String)
    node_kind = Column(String)
    outcome = Column(String, nullable=False)  # success, failure, skipped
    error_code = Column(String)
    error_detail = Column(Text)
    details = Column(JSON)
    created_at = Column(DateTime, default=_now)

    enrollment = relationship("EnrollmentModel", back_populates="attempts")


class TriggerFiringModel(Base):
    """One row per fired date_time occurrence."""
    __tablename__ = "trigger_firings"
    __table_args__ = (
        UniqueConstraint("workflow_id", "scheduled_for", name="uq_trigger_firings_occurrence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    fired_at = Column(DateTime, default=_now)
    enrolled_count = Column(Integer, nullable=False, default=0)
