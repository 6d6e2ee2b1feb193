"""Task broker - claim, dispatch, vacuum and observe on top of the task store."""

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional
from uuid import UUID

from taskbroker.config import settings
from taskbroker.engine.agent import TaskAgent
from taskbroker.engine.errors import AlreadyTerminal, StoreFault, TaskNotFound
from taskbroker.models import DispatchResult, EventBatch, TaskSpec, TaskStatus

if TYPE_CHECKING:
    from taskbroker.db.store import TaskStore

logger = logging.getLogger("taskbroker.broker")

ObserveCallback = Callable[[Optional[Exception], Optional[EventBatch]], None]

VACUUM_MESSAGE = (
    "The task was failed because the task worker lost connection to the task broker"
)


class EventSubscription:
    """Polls one task's event log from a cursor and hands batches to a callback.

    ``unsubscribe`` clears the liveness flag checked before every delivery,
    so no callback runs afterwards even if a fetch was already in flight.
    A fetch error that outlasts the retry budget, or any unexpected error,
    is delivered once as ``callback(error, None)`` and ends the subscription.
    """

    def __init__(
        self,
        store: "TaskStore",
        task_id: UUID,
        after: int | None,
        callback: ObserveCallback,
        poll_interval_seconds: float,
        max_retries: int,
        backoff_seconds: float,
        on_close: Callable[["EventSubscription"], None] | None = None,
    ):
        self.task_id = task_id
        self.cursor = after
        self._store = store
        self._callback = callback
        self._poll_interval = poll_interval_seconds
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._on_close = on_close
        self._active = True
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        if self._on_close is not None:
            self._on_close(self)

    async def _run(self) -> None:
        faults = 0
        while self._active:
            try:
                events = await self._store.list_events(self.task_id, after=self.cursor)
            except StoreFault as e:
                faults += 1
                if faults > self._max_retries:
                    logger.error(
                        f"Giving up on event subscription for task {self.task_id}: {e}"
                    )
                    if self._active:
                        self._deliver(e, None)
                    self.unsubscribe()
                    return
                await asyncio.sleep(self._backoff * 2 ** (faults - 1))
                continue
            except Exception as e:
                logger.error(
                    f"Event subscription for task {self.task_id} failed: {e}", exc_info=True
                )
                if self._active:
                    self._deliver(e, None)
                self.unsubscribe()
                return

            faults = 0
            if events and self._active:
                self.cursor = events[-1].id
                if not self._deliver(None, EventBatch(events=events)):
                    self.unsubscribe()
                    return

            await asyncio.sleep(self._poll_interval)

    def _deliver(self, error: Optional[Exception], batch: Optional[EventBatch]) -> bool:
        try:
            self._callback(error, batch)
        except Exception:
            logger.exception(f"Observer callback for task {self.task_id} raised")
            return False
        return True


class TaskBroker:
    """Worker- and client-facing orchestration over a TaskStore.

    Holds no persistent state: only the in-process dispatch signal and the
    set of live subscriptions, both of which are lost on restart.
    """

    def __init__(
        self,
        store: "TaskStore",
        *,
        claim_poll_interval_seconds: float | None = None,
        claim_max_poll_interval_seconds: float | None = None,
        observe_poll_interval_seconds: float | None = None,
        heartbeat_interval_seconds: float | None = None,
        store_fault_max_retries: int | None = None,
        store_fault_backoff_seconds: float | None = None,
    ):
        self.store = store
        self.claim_poll_interval = _or_default(
            claim_poll_interval_seconds, settings.claim_poll_interval_seconds
        )
        self.claim_max_poll_interval = _or_default(
            claim_max_poll_interval_seconds, settings.claim_max_poll_interval_seconds
        )
        self.observe_poll_interval = _or_default(
            observe_poll_interval_seconds, settings.observe_poll_interval_seconds
        )
        self.heartbeat_interval = _or_default(
            heartbeat_interval_seconds, settings.heartbeat_interval_seconds
        )
        self.store_fault_max_retries = _or_default(
            store_fault_max_retries, settings.store_fault_max_retries
        )
        self.store_fault_backoff = _or_default(
            store_fault_backoff_seconds, settings.store_fault_backoff_seconds
        )
        self._dispatched = asyncio.Event()
        self._subscriptions: set[EventSubscription] = set()

    async def dispatch(self, spec: TaskSpec) -> DispatchResult:
        """Create a new open task and wake local claimers."""
        task_id = await self.store.create_task(spec)
        logger.info(f"Dispatched task {task_id} with {len(spec.steps)} steps")
        self._signal_dispatch()
        return DispatchResult(task_id=task_id)

    async def claim(self) -> TaskAgent:
        """
        Claim the next open task, waiting until one is available.

        Between empty attempts the wait backs off exponentially up to the
        configured maximum, and is cut short when this broker dispatches a
        task. Consecutive store faults are retried with backoff and re-raised
        once the retry budget is exhausted.
        """
        wait = self.claim_poll_interval
        faults = 0
        while True:
            try:
                record = await self.store.claim_task()
            except StoreFault:
                faults += 1
                if faults > self.store_fault_max_retries:
                    raise
                delay = self.store_fault_backoff * 2 ** (faults - 1)
                logger.warning(f"Claim attempt {faults} failed, retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                continue

            faults = 0
            if record is not None:
                logger.info(f"Claimed task {record.task_id}")
                return TaskAgent.create(record, self.store, self.heartbeat_interval)

            await self._wait_for_dispatch(wait)
            wait = min(wait * 2, self.claim_max_poll_interval)

    async def vacuum_tasks(self, timeout_s: float) -> int:
        """
        Fail every processing task whose heartbeat is older than timeout_s.

        Losing the race against a worker that completes the task first is
        expected and ignored. Store faults on one task are logged and the
        sweep moves on to the next.

        Returns:
            Number of tasks failed by this sweep.
        """
        stale = await self.store.list_stale_tasks(timeout_s)
        count = 0
        for task_id in stale:
            try:
                await self.store.complete_task(
                    task_id,
                    TaskStatus.FAILED,
                    {
                        "message": VACUUM_MESSAGE,
                        "metadata": {"reason": "heartbeat_timeout", "timeout_s": timeout_s},
                    },
                )
                count += 1
                logger.warning(f"Failed stale task {task_id} (no heartbeat for {timeout_s}s)")
            except AlreadyTerminal:
                logger.debug(f"Stale task {task_id} finished before it was vacuumed")
            except TaskNotFound:
                logger.warning(f"Stale task {task_id} disappeared during vacuum")
            except StoreFault as e:
                logger.error(f"Failed to vacuum task {task_id}: {e}")
        return count

    def observe(
        self,
        task_id: UUID,
        after: int | None,
        callback: ObserveCallback,
    ) -> Callable[[], None]:
        """
        Subscribe to new events of a task, starting after the given cursor.

        Returns:
            A function that cancels the subscription.
        """
        subscription = EventSubscription(
            self.store,
            task_id,
            after,
            callback,
            poll_interval_seconds=self.observe_poll_interval,
            max_retries=self.store_fault_max_retries,
            backoff_seconds=self.store_fault_backoff,
            on_close=self._subscriptions.discard,
        )
        self._subscriptions.add(subscription)
        subscription.start()
        return subscription.unsubscribe

    async def iter_events(self, task_id: UUID, after: int | None = None) -> AsyncIterator[EventBatch]:
        """Yield event batches as they arrive; stops observing when the consumer stops."""
        queue: asyncio.Queue = asyncio.Queue()

        def callback(error: Optional[Exception], batch: Optional[EventBatch]) -> None:
            queue.put_nowait((error, batch))

        unsubscribe = self.observe(task_id, after, callback)
        try:
            while True:
                error, batch = await queue.get()
                if error is not None:
                    raise error
                yield batch
        finally:
            unsubscribe()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        """Cancel every live subscription."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _signal_dispatch(self) -> None:
        self._dispatched.set()
        self._dispatched = asyncio.Event()

    async def _wait_for_dispatch(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._dispatched.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass


def _or_default(value, default):
    return default if value is None else value
