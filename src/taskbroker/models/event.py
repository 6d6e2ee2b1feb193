"""Event model - append-only task event log."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from taskbroker.models.enums import TaskEventType


class TaskEvent(BaseModel):
    """A single entry of a task's event log.

    ``id`` is scoped to the task, starts at 1 and strictly increases; it is
    the cursor observers pass back as ``after``.
    """

    id: int
    task_id: UUID
    body: dict[str, Any] = Field(default_factory=dict)
    type: TaskEventType
    created_at: datetime


class EventBatch(BaseModel):
    """Ordered batch of events delivered to an observer."""

    events: list[TaskEvent] = Field(default_factory=list)

    @property
    def last_id(self) -> int | None:
        return self.events[-1].id if self.events else None
