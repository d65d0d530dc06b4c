"""
Shared pytest fixtures.

The schedule store runs against an in-memory SQLite database; the API
client and queue publisher are replaced by recording fakes.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from analysis_scheduler.config import SchedulerConfig
from analysis_scheduler.errors import ExecutionCreateError, DispatchError
from analysis_scheduler.models import ScheduledAnalysis
from analysis_scheduler.store import ScheduleStore

NOW = datetime(2026, 10, 19, 12, 0, 0)


class FakeExecutionClient:
    """Records create_execution calls and returns sequential IDs"""

    def __init__(self, fail: bool = False, ids=None):
        self.fail = fail
        self.ids = list(ids or [])
        self.calls = []
        self.closed = False

    def create_execution(self, organization_id, project_id, analysis_id, idempotency_key=None):
        self.calls.append({
            'organization_id': organization_id,
            'project_id': project_id,
            'analysis_id': analysis_id,
            'idempotency_key': idempotency_key,
        })
        if self.fail:
            raise ExecutionCreateError("API returned status 500", status_code=500)
        if self.ids:
            return self.ids.pop(0)
        return f"exec-{len(self.calls)}"

    def close(self):
        self.closed = True


class FakePublisher:
    """Records published messages"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []
        self.attempts = 0
        self.closed = False

    def publish(self, message, message_id=None):
        self.attempts += 1
        if self.fail:
            raise DispatchError("Failed to connect to broker: connection refused")
        self.messages.append((message.to_message(), message_id))

    def close(self):
        self.closed = True


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    store = ScheduleStore(engine=engine)
    store.create_schema()
    return store


@pytest.fixture
def add_analysis(store):
    """Insert a scheduled analysis row and return its ID."""

    def _add(analysis_id, **overrides):
        values = {
            'id': analysis_id,
            'organization_id': 'org-1',
            'project_id': 'proj-1',
            'analyzer_id': 'analyzer-1',
            'created_by_id': 'user-1',
            'integration_id': None,
            'config': {'js-sbom': {'branch': 'main'}},
            'is_active': True,
            'schedule_type': 'daily',
            'next_scheduled_run': NOW - timedelta(minutes=5),
            'last_scheduled_run': None,
            'created_on': NOW - timedelta(days=30),
            'branch': 'main',
            'status': 'completed',
            'stage': 0,
        }
        values.update(overrides)
        with store.Session.begin() as session:
            session.add(ScheduledAnalysis(**values))
        return analysis_id

    return _add


@pytest.fixture
def client():
    return FakeExecutionClient()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def config(tmp_path):
    return SchedulerConfig(data_dir=tmp_path / "scheduler")
