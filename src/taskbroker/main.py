"""Task broker main application."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from taskbroker import __version__
from taskbroker.actions import ActionRegistry, register_builtin_actions
from taskbroker.api import router
from taskbroker.config import settings
from taskbroker.db import base
from taskbroker.db.store import TaskStore
from taskbroker.engine import TaskBroker
from taskbroker.tasks import TaskWorker, start_vacuum_sweep, stop_vacuum_sweep

logger = logging.getLogger("taskbroker")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_broker() -> tuple[TaskBroker, ActionRegistry]:
    """Wire the store, broker and action registry for this process."""
    store = TaskStore(base.async_session_factory)
    broker = TaskBroker(store)
    registry = register_builtin_actions(ActionRegistry())
    return broker, registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting task broker server...")
    logger.info(f"Environment: {settings.env.value}")

    # Initialize database
    await base.init_db()
    logger.info("Database initialized")

    broker, registry = build_broker()
    app.state.broker = broker
    app.state.registry = registry

    # Start background tasks
    await start_vacuum_sweep(broker)
    logger.info("Vacuum sweep task started")

    worker = None
    if settings.run_worker:
        worker = TaskWorker(broker, registry)
        worker.start()

    yield

    # Cleanup
    logger.info("Shutting down task broker server...")
    if worker is not None:
        await worker.stop()
    broker.close()
    await stop_vacuum_sweep()
    await base.close_db()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="taskbroker",
    description="Durable task-execution broker with claimable tasks and live event logs",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(router)


async def run_worker() -> None:
    """Run a standalone worker process (workers plus vacuum sweep, no HTTP)."""
    await base.init_db()
    broker, registry = build_broker()
    worker = TaskWorker(broker, registry)
    await start_vacuum_sweep(broker)
    worker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await worker.stop()
        await stop_vacuum_sweep()
        await base.close_db()


def main():
    """Entry point for the API server."""
    configure_logging()
    uvicorn.run(
        "taskbroker.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


def worker_main():
    """Entry point for a standalone worker."""
    configure_logging()
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")


if __name__ == "__main__":
    main()
