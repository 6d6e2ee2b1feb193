"""Claimed-task handle used by workers to report progress and completion."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from taskbroker.engine.errors import AlreadyTerminal, LostClaim, StoreFault
from taskbroker.models import CompletedTaskState, TaskRecord, TaskSpec

if TYPE_CHECKING:
    from taskbroker.db.store import TaskStore

logger = logging.getLogger("taskbroker.agent")


class TaskAgent:
    """Live handle on one claimed task.

    While the handle is not done it heartbeats the task in the background.
    A heartbeat the store ignores means the task was reclaimed by a vacuum
    sweep; the handle then flags ``claim_lost`` and stops heartbeating.
    """

    def __init__(
        self,
        record: TaskRecord,
        store: "TaskStore",
        heartbeat_interval_seconds: float = 1.0,
    ):
        self._record = record
        self._store = store
        self._heartbeat_interval = heartbeat_interval_seconds
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._done = False
        self._claim_lost = False

    @classmethod
    def create(
        cls,
        record: TaskRecord,
        store: "TaskStore",
        heartbeat_interval_seconds: float = 1.0,
    ) -> "TaskAgent":
        """Create a handle and start heartbeating."""
        agent = cls(record, store, heartbeat_interval_seconds)
        agent.start_heartbeat()
        return agent

    @property
    def task_id(self) -> UUID:
        return self._record.task_id

    @property
    def spec(self) -> TaskSpec:
        return self._record.spec

    @property
    def done(self) -> bool:
        return self._done

    @property
    def claim_lost(self) -> bool:
        return self._claim_lost

    def get_workspace_name(self) -> str:
        """Stable, collision-free name for this task's working directory."""
        return f"task-{self._record.task_id}"

    async def emit_log(self, message: str, metadata: Any = None) -> None:
        """Append a log event to the task's event log."""
        await self._store.emit_log_event(
            self.task_id, {"message": message, "metadata": metadata}
        )

    async def complete(self, state: CompletedTaskState, metadata: Any = None) -> None:
        """
        Report the terminal outcome of the task. One-shot per handle.

        Raises:
            AlreadyTerminal: complete() was already called on this handle.
            LostClaim: The task was completed elsewhere (e.g. reclaimed by
                the vacuum sweep) before this worker reported.
        """
        state = CompletedTaskState(state)
        status = state.to_status()
        if self._done:
            raise AlreadyTerminal(str(self.task_id), "done", status.value)

        try:
            await self._store.complete_task(
                self.task_id,
                status,
                {
                    "message": f"Run completed with status: {state.value}",
                    "metadata": metadata,
                },
            )
        except AlreadyTerminal as e:
            self._done = True
            self._claim_lost = True
            self.stop_heartbeat()
            raise LostClaim(e.task_id, e.current_status, e.requested_status) from e

        self._done = True
        self.stop_heartbeat()

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None and not self._done:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while not self._done:
            await asyncio.sleep(self._heartbeat_interval)
            if self._done:
                return
            try:
                alive = await self._store.heartbeat_task(self.task_id)
            except StoreFault as e:
                logger.warning(f"Heartbeat failed for task {self.task_id}, will retry: {e}")
                continue

            if not alive:
                logger.warning(
                    f"Task {self.task_id} is no longer processing; worker lost its claim"
                )
                self._claim_lost = True
                self._heartbeat_task = None
                return
