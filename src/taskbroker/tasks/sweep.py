"""Vacuum sweep background task."""

import asyncio
import logging
import random
from typing import Optional

from taskbroker.config import settings
from taskbroker.engine import TaskBroker

logger = logging.getLogger("taskbroker.sweep")

_sweep_task: Optional[asyncio.Task] = None
_shutdown_event: Optional[asyncio.Event] = None


async def vacuum_sweep_loop(
    broker: TaskBroker,
    interval_seconds: float,
    timeout_seconds: float,
) -> None:
    """
    Background loop that fails tasks whose worker stopped heartbeating.

    This never contacts worker processes (they may live on other hosts); a
    task is stale purely because its heartbeat is older than the timeout.
    The interval is jittered by ±20% so several broker processes sharing a
    store do not sweep in lockstep.
    """
    logger.info(
        f"Vacuum sweep loop started (base interval: {interval_seconds}s with ±20% jitter, "
        f"timeout: {timeout_seconds}s)"
    )

    while not _shutdown_event.is_set():
        try:
            failed = await broker.vacuum_tasks(timeout_seconds)
            if failed > 0:
                logger.info(f"Vacuumed {failed} stale tasks")
        except Exception as e:
            logger.error(f"Vacuum sweep error: {e}", exc_info=True)

        jittered_interval = interval_seconds * random.uniform(0.8, 1.2)

        # Wait for next sweep interval or shutdown
        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=jittered_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Vacuum sweep loop stopped")


async def start_vacuum_sweep(
    broker: TaskBroker,
    interval_seconds: float | None = None,
    timeout_seconds: float | None = None,
) -> None:
    """Start the vacuum sweep background task."""
    global _sweep_task, _shutdown_event

    if interval_seconds is None:
        interval_seconds = settings.vacuum_interval_seconds
    if timeout_seconds is None:
        timeout_seconds = settings.vacuum_timeout_seconds

    _shutdown_event = asyncio.Event()
    _sweep_task = asyncio.create_task(
        vacuum_sweep_loop(broker, interval_seconds, timeout_seconds)
    )


async def stop_vacuum_sweep() -> None:
    """Stop the vacuum sweep background task."""
    global _sweep_task, _shutdown_event

    if _shutdown_event:
        _shutdown_event.set()

    if _sweep_task:
        try:
            await asyncio.wait_for(_sweep_task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Vacuum sweep task did not stop gracefully, cancelling")
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass

    _sweep_task = None
    _shutdown_event = None
