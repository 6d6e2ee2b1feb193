"""Task broker database layer."""

from taskbroker.db.base import Base, close_db, get_session, init_db
from taskbroker.db.tables import TaskEventTable, TaskTable

__all__ = [
    "Base",
    "TaskEventTable",
    "TaskTable",
    "close_db",
    "get_session",
    "init_db",
]
