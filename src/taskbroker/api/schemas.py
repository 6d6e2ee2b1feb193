"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskbroker.models import TaskEvent, TaskSpec, TaskStatus


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class DispatchResponse(BaseModel):
    """Dispatch task response."""

    task_id: UUID


class TaskResponse(BaseModel):
    """Task response."""

    task_id: UUID
    spec: TaskSpec
    status: TaskStatus
    created_at: datetime
    last_heartbeat_at: Optional[datetime] = None


class ListEventsResponse(BaseModel):
    """Events after the requested cursor, ascending by id."""

    events: list[TaskEvent] = Field(default_factory=list)


class ActionResponse(BaseModel):
    """Registered step action."""

    id: str
    description: str = ""
    parameters_schema: dict[str, Any] = Field(default_factory=dict)
