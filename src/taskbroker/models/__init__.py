"""Task broker data models."""

from taskbroker.models.enums import CompletedTaskState, TaskEventType, TaskStatus
from taskbroker.models.event import EventBatch, TaskEvent
from taskbroker.models.task import DispatchResult, TaskRecord, TaskSpec, TaskStep

__all__ = [
    "CompletedTaskState",
    "DispatchResult",
    "EventBatch",
    "TaskEvent",
    "TaskEventType",
    "TaskRecord",
    "TaskSpec",
    "TaskStatus",
    "TaskStep",
]
