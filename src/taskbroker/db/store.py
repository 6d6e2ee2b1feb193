"""Durable task store - the only component that touches persistent state."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncGenerator
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskbroker.db import base
from taskbroker.db.tables import TaskEventTable, TaskTable
from taskbroker.engine.errors import AlreadyTerminal, StoreFault, TaskNotFound
from taskbroker.models import (
    TaskEvent,
    TaskEventType,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)
from taskbroker.utils.time import utc_now

logger = logging.getLogger("taskbroker.store")

# Driver-level failures surfaced to callers as StoreFault
STORE_FAULT_ERRORS = (DBAPIError, OSError)


class TaskStore:
    """Task and event persistence shared by every worker, observer and sweep.

    Each operation runs in its own transaction. Cross-process exclusivity is
    enforced by conditional updates on ``tasks.status`` so that two callers
    can never both flip the same row, whatever process they live in.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Open a transaction, translating driver failures into StoreFault."""
        try:
            async with base.get_session(self._session_factory or base.async_session_factory) as session:
                yield session
        except STORE_FAULT_ERRORS as e:
            logger.warning(f"Store fault during {operation}: {e}")
            raise StoreFault(operation, str(e)) from e

    async def create_task(self, spec: TaskSpec) -> UUID:
        """Insert a new open task and return its id."""
        task_id = uuid4()
        async with self._transaction("create_task") as session:
            session.add(
                TaskTable(
                    task_id=task_id,
                    spec=spec.model_dump(mode="json"),
                    status=TaskStatus.OPEN,
                    created_at=utc_now(),
                    last_heartbeat_at=None,
                    last_event_id=0,
                )
            )
        return task_id

    async def get_task(self, task_id: UUID) -> TaskRecord:
        """Get a task by ID."""
        async with self._transaction("get_task") as session:
            row = await session.get(TaskTable, task_id)
            if row is None:
                raise TaskNotFound(str(task_id))
            return self._row_to_record(row)

    async def claim_task(self) -> TaskRecord | None:
        """
        Atomically claim the oldest open task.

        The candidate is selected first (with SKIP LOCKED on PostgreSQL so
        concurrent claimers fan out over different rows), then flipped with a
        conditional update that only matches while the row is still open. If
        another claimer won the row, the next candidate is tried.

        Returns:
            The claimed record, or None when no open task exists.
        """
        while True:
            async with self._transaction("claim_task") as session:
                result = await session.execute(
                    select(TaskTable.task_id)
                    .where(TaskTable.status == TaskStatus.OPEN)
                    .order_by(TaskTable.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                candidate = result.scalar_one_or_none()
                if candidate is None:
                    return None

                claimed = await session.execute(
                    update(TaskTable)
                    .where(
                        TaskTable.task_id == candidate,
                        TaskTable.status == TaskStatus.OPEN,
                    )
                    .values(status=TaskStatus.PROCESSING, last_heartbeat_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    row = await session.get(TaskTable, candidate)
                    return self._row_to_record(row)

            logger.debug(f"Lost claim race for task {candidate}, retrying")

    async def complete_task(
        self,
        task_id: UUID,
        status: TaskStatus,
        event_body: dict[str, Any],
    ) -> TaskEvent:
        """
        Move a processing task to a terminal status and append its completion event.

        Both writes share one transaction, so a reader never sees the terminal
        status without the completion event.

        Raises:
            TaskNotFound: No such task.
            AlreadyTerminal: The task is not processing.
        """
        if not status.is_terminal():
            raise ValueError(f"Cannot complete task with non-terminal status '{status.value}'")

        async with self._transaction("complete_task") as session:
            result = await session.execute(
                update(TaskTable)
                .where(
                    TaskTable.task_id == task_id,
                    TaskTable.status == TaskStatus.PROCESSING,
                )
                .values(
                    status=status,
                    last_heartbeat_at=None,
                    last_event_id=TaskTable.last_event_id + 1,
                )
                .returning(TaskTable.last_event_id)
                .execution_options(synchronize_session=False)
            )
            event_id = result.scalar_one_or_none()
            if event_id is None:
                current = await session.scalar(
                    select(TaskTable.status).where(TaskTable.task_id == task_id)
                )
                if current is None:
                    raise TaskNotFound(str(task_id))
                raise AlreadyTerminal(str(task_id), current.value, status.value)

            event_row = self._new_event_row(
                session, task_id, event_id, TaskEventType.COMPLETION, event_body
            )
            return self._row_to_event(event_row)

    async def heartbeat_task(self, task_id: UUID) -> bool:
        """
        Refresh the heartbeat of a processing task.

        A heartbeat for a task that is no longer processing is ignored so a
        late worker can never resurrect a reclaimed task.

        Returns:
            True if the heartbeat was recorded, False if it was ignored.
        """
        async with self._transaction("heartbeat_task") as session:
            result = await session.execute(
                update(TaskTable)
                .where(
                    TaskTable.task_id == task_id,
                    TaskTable.status == TaskStatus.PROCESSING,
                )
                .values(last_heartbeat_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def list_stale_tasks(self, timeout_s: float) -> list[UUID]:
        """List processing tasks whose heartbeat is older than timeout_s seconds."""
        cutoff = utc_now() - timedelta(seconds=timeout_s)
        async with self._transaction("list_stale_tasks") as session:
            result = await session.execute(
                select(TaskTable.task_id)
                .where(
                    TaskTable.status == TaskStatus.PROCESSING,
                    TaskTable.last_heartbeat_at < cutoff,
                )
                .order_by(TaskTable.last_heartbeat_at.asc())
            )
            return list(result.scalars().all())

    async def emit_log_event(self, task_id: UUID, body: dict[str, Any]) -> TaskEvent:
        """Append a log event with the next task-scoped id."""
        async with self._transaction("emit_log_event") as session:
            result = await session.execute(
                update(TaskTable)
                .where(TaskTable.task_id == task_id)
                .values(last_event_id=TaskTable.last_event_id + 1)
                .returning(TaskTable.last_event_id)
                .execution_options(synchronize_session=False)
            )
            event_id = result.scalar_one_or_none()
            if event_id is None:
                raise TaskNotFound(str(task_id))

            event_row = self._new_event_row(session, task_id, event_id, TaskEventType.LOG, body)
            return self._row_to_event(event_row)

    async def list_events(self, task_id: UUID, after: int | None = None) -> list[TaskEvent]:
        """List events with id greater than ``after`` (all when None), ascending."""
        query = select(TaskEventTable).where(TaskEventTable.task_id == task_id)
        if after is not None:
            query = query.where(TaskEventTable.event_id > after)
        query = query.order_by(TaskEventTable.event_id.asc())

        async with self._transaction("list_events") as session:
            result = await session.execute(query)
            return [self._row_to_event(row) for row in result.scalars().all()]

    def _new_event_row(
        self,
        session: AsyncSession,
        task_id: UUID,
        event_id: int,
        event_type: TaskEventType,
        body: dict[str, Any],
    ) -> TaskEventTable:
        event_row = TaskEventTable(
            task_id=task_id,
            event_id=event_id,
            event_type=event_type,
            body=body,
            created_at=utc_now(),
        )
        session.add(event_row)
        return event_row

    def _row_to_record(self, row: TaskTable) -> TaskRecord:
        """Convert database row to model."""
        return TaskRecord(
            task_id=row.task_id,
            spec=TaskSpec.model_validate(row.spec),
            status=row.status,
            created_at=row.created_at,
            last_heartbeat_at=row.last_heartbeat_at,
        )

    def _row_to_event(self, row: TaskEventTable) -> TaskEvent:
        return TaskEvent(
            id=row.event_id,
            task_id=row.task_id,
            body=row.body,
            type=row.event_type,
            created_at=row.created_at,
        )
