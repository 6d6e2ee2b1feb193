"""Task model - workflow specification and persisted task record."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from taskbroker.models.enums import TaskStatus


class TaskStep(BaseModel):
    """One step of a workflow, executed by the action named in ``action``."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class TaskSpec(BaseModel):
    """Declarative unit of work submitted by a client.

    ``values`` are the user inputs, ``steps`` run in order, and ``output``
    maps output names to templates resolved once every step has finished.
    """

    model_config = ConfigDict(frozen=True)

    values: dict[str, Any] = Field(default_factory=dict)
    steps: list[TaskStep] = Field(default_factory=list)
    output: dict[str, str] = Field(default_factory=dict)


class TaskRecord(BaseModel):
    """Persisted task row."""

    task_id: UUID
    spec: TaskSpec
    status: TaskStatus = TaskStatus.OPEN
    created_at: datetime
    last_heartbeat_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        """Check if task is in a terminal state."""
        return self.status.is_terminal()


class DispatchResult(BaseModel):
    """Identifier of a newly dispatched task."""

    task_id: UUID
