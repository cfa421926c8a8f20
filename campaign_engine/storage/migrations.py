"""Database migrations for scheduler query performance."""

from typing import Optional

from sqlalchemy import Engine, text

from .database import get_database_engine, create_tables
from ..core.logging import get_logger

logger = get_logger(__name__)


def create_indexes_for_scheduler_queries(engine: Optional[Engine] = None):
    """Create indexes used by due-enrollment selection and audit reads."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            # Due selection: waiting enrollments ordered by due time
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_status_due
                ON enrollments(status, next_due_at, created_at)
            """))

            # Expired lease sweep
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_claimed_until
                ON enrollments(claimed_until)
            """))

            # Stop-on-reply cancellation looks up a contact's live enrollments
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_workflow_contact
                ON enrollments(workflow_id, contact_id, status)
            """))

            # Attempt history per enrollment
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_execution_attempts_enrollment_created
                ON execution_attempts(enrollment_id, created_at)
            """))

            # Trigger matching per tenant
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_workflow_definitions_tenant_status
                ON workflow_definitions(tenant_id, status, trigger_type)
            """))

            connection.commit()
            logger.info("Successfully created database indexes for scheduler queries")

    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_database(engine: Optional[Engine] = None):
    """Apply backend-specific settings for concurrent scheduler workers."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            if engine.dialect.name == "sqlite" and engine.url.database not in (None, "", ":memory:"):
                # WAL lets readers proceed while a worker holds the write lock
                connection.execute(text("PRAGMA journal_mode=WAL"))
                connection.execute(text("PRAGMA optimize"))
                logger.info("Applied SQLite optimizations")
            connection.commit()

    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None):
    """Create tables, indexes and backend settings."""
    try:
        logger.info("Starting database migrations")
        create_tables(engine)
        create_indexes_for_scheduler_queries(engine)
        optimize_database(engine)
        logger.info("Database migrations completed successfully")

    except Exception as e:
        logger.error(f"Database migrations failed: {str(e)}")
        raise
