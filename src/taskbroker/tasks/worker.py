"""Task worker - claims tasks and runs their steps through registered actions."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Optional

from taskbroker.actions import ActionContext, ActionRegistry, templating
from taskbroker.config import settings
from taskbroker.engine import LostClaim, StoreFault, TaskAgent, TaskBroker
from taskbroker.models import CompletedTaskState, TaskStep

logger = logging.getLogger("taskbroker.worker")


class StepLogStream:
    """Line-buffered sink that forwards raw step output into the task event log.

    ``write`` is synchronous so it can back a ``logging.StreamHandler``;
    complete lines are queued and appended as log events by a drain task.
    """

    def __init__(self, agent: TaskAgent, step_id: str):
        self._agent = agent
        self._step_id = step_id
        self._buffer = ""
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._drain_task = asyncio.create_task(self._drain())

    def write(self, text: str) -> int:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            if line:
                self._queue.put_nowait(line)
        return len(text)

    def flush(self) -> None:
        pass

    def create_logger(self) -> logging.Logger:
        """A logger outside the logging hierarchy whose records land in this stream."""
        step_logger = logging.Logger(f"taskbroker.task.{self._agent.task_id}.{self._step_id}")
        handler = logging.StreamHandler(self)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        step_logger.addHandler(handler)
        step_logger.setLevel(logging.INFO)
        return step_logger

    async def aclose(self) -> None:
        """Flush the partial line and wait until every line has been emitted."""
        if self._buffer:
            self._queue.put_nowait(self._buffer)
            self._buffer = ""
        self._queue.put_nowait(None)
        await self._drain_task

    async def _drain(self) -> None:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            await self._agent.emit_log(line, {"stepId": self._step_id})


class TaskWorker:
    """Runs claimed tasks step by step.

    Each step resolves its action from the registry, gets its parameters
    rendered against the task values and earlier step outputs, and runs in
    the task's private workspace directory.
    """

    def __init__(
        self,
        broker: TaskBroker,
        registry: ActionRegistry,
        workspace_root: str | Path | None = None,
    ):
        self.broker = broker
        self.registry = registry
        self.workspace_root = Path(workspace_root or settings.workspace_root)
        self._loops: list[asyncio.Task] = []
        self._stopping = False

    async def run_one_task(self, agent: TaskAgent) -> None:
        """Execute every step of a claimed task and report its outcome."""
        workspace = self.workspace_root / agent.get_workspace_name()
        context: dict[str, Any] = {"parameters": dict(agent.spec.values), "steps": {}}

        try:
            await asyncio.to_thread(workspace.mkdir, parents=True, exist_ok=True)
            for step in agent.spec.steps:
                if agent.claim_lost:
                    logger.warning(
                        f"Abandoning task {agent.task_id} before step '{step.id}': claim lost"
                    )
                    return
                await self._run_step(agent, step, workspace, context)

            output = templating.render(dict(agent.spec.output), context)
        except Exception as e:
            logger.error(f"Task {agent.task_id} failed: {e}")
            await self._report(
                agent,
                CompletedTaskState.FAILED,
                {"error": {"name": type(e).__name__, "message": str(e)}},
            )
        else:
            await self._report(agent, CompletedTaskState.COMPLETED, {"output": output})
        finally:
            agent.stop_heartbeat()
            await asyncio.to_thread(shutil.rmtree, workspace, ignore_errors=True)

    async def _report(
        self,
        agent: TaskAgent,
        state: CompletedTaskState,
        metadata: dict[str, Any],
    ) -> None:
        """
        Complete the task, retrying store faults with the broker's backoff.

        Once the retry budget is spent the task is left processing; its
        heartbeat stops, so the vacuum sweep fails it later.
        """
        faults = 0
        while True:
            try:
                await agent.complete(state, metadata)
            except LostClaim as e:
                logger.warning(f"Task {agent.task_id} was completed elsewhere: {e.message}")
                return
            except StoreFault as e:
                faults += 1
                if faults > self.broker.store_fault_max_retries:
                    logger.error(
                        f"Giving up reporting task {agent.task_id} as {state.value}, "
                        f"leaving it to the vacuum sweep: {e}"
                    )
                    return
                delay = self.broker.store_fault_backoff * 2 ** (faults - 1)
                logger.warning(
                    f"Reporting task {agent.task_id} failed (attempt {faults}), "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            logger.info(f"Task {agent.task_id} {state.value}")
            return

    async def _run_step(
        self,
        agent: TaskAgent,
        step: TaskStep,
        workspace: Path,
        context: dict[str, Any],
    ) -> None:
        await agent.emit_log(
            f"Beginning step {step.name}", {"stepId": step.id, "status": "processing"}
        )

        outputs: dict[str, Any] = {}
        error: Exception | None = None
        stream = StepLogStream(agent, step.id)
        try:
            action = self.registry.get(step.action)
            parameters = templating.render(dict(step.parameters), context)
            await action.handler(
                ActionContext(
                    logger=stream.create_logger(),
                    log_stream=stream,
                    workspace_path=workspace,
                    parameters=parameters,
                    output=outputs.__setitem__,
                )
            )
        except Exception as e:
            error = e
        finally:
            await stream.aclose()

        if error is not None:
            await agent.emit_log(
                f"Step {step.name} failed: {error}", {"stepId": step.id, "status": "failed"}
            )
            raise error

        context["steps"][step.id] = {"output": outputs}
        await agent.emit_log(
            f"Finished step {step.name}", {"stepId": step.id, "status": "completed"}
        )

    def start(self, concurrency: int | None = None) -> None:
        """Start claim-and-run loops as background tasks."""
        self._stopping = False
        count = settings.worker_concurrency if concurrency is None else concurrency
        self._loops = [asyncio.create_task(self._work_loop(slot)) for slot in range(count)]
        logger.info(f"Task worker started with {count} slot(s)")

    async def stop(self) -> None:
        """Stop all loops; tasks in flight are left for the vacuum sweep."""
        self._stopping = True
        for loop_task in self._loops:
            loop_task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        logger.info("Task worker stopped")

    async def _work_loop(self, slot: int) -> None:
        while not self._stopping:
            try:
                agent = await self.broker.claim()
            except StoreFault as e:
                logger.error(f"Worker slot {slot} could not claim a task: {e}")
                await asyncio.sleep(self.broker.claim_max_poll_interval)
                continue

            try:
                await self.run_one_task(agent)
            except Exception as e:
                logger.error(f"Worker slot {slot} crashed running task {agent.task_id}: {e}", exc_info=True)
