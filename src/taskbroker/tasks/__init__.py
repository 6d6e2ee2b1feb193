"""Task broker background tasks."""

from taskbroker.tasks.sweep import start_vacuum_sweep, stop_vacuum_sweep
from taskbroker.tasks.worker import TaskWorker

__all__ = ["TaskWorker", "start_vacuum_sweep", "stop_vacuum_sweep"]
