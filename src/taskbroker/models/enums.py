"""Task broker enumerations."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    OPEN = "open"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @classmethod
    def terminal_states(cls) -> set["TaskStatus"]:
        """Return terminal states."""
        return {cls.FAILED, cls.CANCELLED, cls.COMPLETED}

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in self.terminal_states()


class CompletedTaskState(str, Enum):
    """Outcome a worker may report for a claimed task."""

    FAILED = "failed"
    COMPLETED = "completed"

    def to_status(self) -> TaskStatus:
        return TaskStatus(self.value)


class TaskEventType(str, Enum):
    """Kinds of entries in a task's event log."""

    LOG = "log"
    COMPLETION = "completion"
