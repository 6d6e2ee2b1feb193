"""
Pytest fixtures for task broker tests.
"""

import os
from datetime import timedelta
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

# Ensure test config is set before importing taskbroker modules.
os.environ.setdefault("TASKBROKER_ENV", "development")
os.environ.setdefault("TASKBROKER_RUN_WORKER", "false")
os.environ.setdefault("TASKBROKER_DATABASE_URL", "sqlite+aiosqlite:///./taskbroker_test.db")

from taskbroker.actions import ActionRegistry, register_builtin_actions
from taskbroker.db.base import close_db, create_engine, create_session_factory, init_db
from taskbroker.db.store import TaskStore
from taskbroker.db.tables import TaskTable
from taskbroker.engine import TaskBroker
from taskbroker.models import TaskSpec, TaskStep
from taskbroker.utils.time import utc_now


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'taskbroker.db'}"


@pytest.fixture
async def engine(database_url):
    """Fresh database per test."""
    engine = create_engine(database_url)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return TaskStore(session_factory)


@pytest.fixture
async def broker(store):
    """Broker with short intervals so polling tests finish quickly."""
    broker = TaskBroker(
        store,
        claim_poll_interval_seconds=0.01,
        claim_max_poll_interval_seconds=0.05,
        observe_poll_interval_seconds=0.01,
        heartbeat_interval_seconds=0.05,
        store_fault_max_retries=2,
        store_fault_backoff_seconds=0.001,
    )
    yield broker
    broker.close()


@pytest.fixture
def registry():
    return register_builtin_actions(ActionRegistry())


@pytest.fixture
def spec():
    """Two-step workflow spec."""
    return TaskSpec(
        values={"name": "demo"},
        steps=[
            TaskStep(id="greet", name="Greet", action="debug:log", parameters={"message": "hi"}),
            TaskStep(id="bye", name="Bye", action="debug:log", parameters={"message": "bye"}),
        ],
        output={"name": "{{ parameters.name }}"},
    )


@pytest.fixture
async def client(broker, registry):
    """Async test client wired to the test broker (lifespan not run)."""
    from taskbroker.main import app

    app.state.broker = broker
    app.state.registry = registry

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def backdate_heartbeat(session_factory):
    """Pretend a task's last heartbeat happened ``seconds`` ago."""

    async def _backdate(task_id: UUID, seconds: float) -> None:
        async with session_factory() as session:
            await session.execute(
                update(TaskTable)
                .where(TaskTable.task_id == task_id)
                .values(last_heartbeat_at=utc_now() - timedelta(seconds=seconds))
            )
            await session.commit()

    return _backdate
