"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from taskbroker.db.base import Base
from taskbroker.models.enums import TaskEventType, TaskStatus
from taskbroker.utils.time import ensure_utc

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class TaskTable(Base):
    """Tasks table - one row per dispatched workflow."""

    __tablename__ = "tasks"

    task_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    # Client-supplied spec, stored verbatim
    spec: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="task_status", values_callable=_enum_values),
        nullable=False,
        default=TaskStatus.OPEN,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Highest event id allocated for this task
    last_event_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        # Index for claim queries (oldest open task first)
        Index("idx_tasks_claimable", "status", "created_at"),
        # Index for stale task sweeps
        Index("idx_tasks_heartbeat", "status", "last_heartbeat_at"),
    )


class TaskEventTable(Base):
    """Task events table - append-only per-task log."""

    __tablename__ = "task_events"

    task_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tasks.task_id", ondelete="CASCADE"),
        primary_key=True,
    )
    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    event_type: Mapped[TaskEventType] = mapped_column(
        Enum(TaskEventType, name="task_event_type", values_callable=_enum_values),
        nullable=False,
    )
    body: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default={})
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
