"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from campaign_engine.core.definition_store import DefinitionStore
from campaign_engine.core.enrollment_store import EnrollmentStore
from campaign_engine.core.error_recovery import ExponentialBackoff
from campaign_engine.core.scheduler import Scheduler
from campaign_engine.core.step_executor import StepExecutor
from campaign_engine.core.trigger_evaluator import TriggerEvaluator
from campaign_engine.integrations import InMemoryContactDirectory, InMemoryMessageChannel, InMemoryNotifier
from campaign_engine.storage.database import create_database_engine, get_session_factory
from campaign_engine.storage.migrations import run_migrations

from workflow_builders import TENANT, build_workflow

# Saturday
DEFAULT_NOW = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock whose current instant is moved by the test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="function")
def db_engine():
    """Create a temporary test database."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = create_database_engine(f"sqlite:///{db_path}")
    run_migrations(engine)

    yield engine

    engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def clock():
    return FrozenClock(DEFAULT_NOW)


@pytest.fixture
def definition_store(session_factory):
    return DefinitionStore(session_factory)


@pytest.fixture
def enrollment_store(session_factory):
    return EnrollmentStore(session_factory)


@pytest.fixture
def channel():
    return InMemoryMessageChannel()


@pytest.fixture
def directory():
    directory = InMemoryContactDirectory()
    directory.upsert_contact(TENANT, "contact-ana", name="Ana", phone="+5511999990001",
                             tags=["lead"], status="lead", source="ads")
    directory.upsert_contact(TENANT, "contact-bo", name="Bo", phone="+5511999990002",
                             tags=["vip"], status="customer", source="referral")
    return directory


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def step_executor(definition_store, enrollment_store, channel, directory, notifier, clock):
    executor = StepExecutor(
        definition_store=definition_store,
        enrollment_store=enrollment_store,
        channel=channel,
        directory=directory,
        notifier=notifier,
        backoff=ExponentialBackoff(base_delay=3600, max_delay=86400, max_retries=5),
        send_timeout=5.0,
        max_concurrent_sends=4,
        clock=clock
    )
    yield executor
    executor.shutdown()


@pytest.fixture
def trigger_evaluator(definition_store, enrollment_store, directory, clock):
    return TriggerEvaluator(definition_store, enrollment_store, directory=directory, clock=clock)


@pytest.fixture
def scheduler(enrollment_store, step_executor, trigger_evaluator, clock):
    scheduler = Scheduler(
        enrollment_store,
        step_executor,
        trigger_evaluator=trigger_evaluator,
        interval_seconds=0.05,
        batch_size=50,
        lease_seconds=60,
        max_workers=4,
        clock=clock
    )
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def make_workflow(definition_store):
    """Build a workflow from node dicts and store it (active by default)."""

    def _make(nodes, edges=None, save=True, **kwargs):
        definition = build_workflow(nodes, edges=edges, **kwargs)
        return definition_store.save_definition(definition) if save else definition

    return _make
