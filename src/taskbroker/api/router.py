"""REST API router."""

from contextlib import aclosing
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from taskbroker import __version__
from taskbroker.actions import ActionRegistry
from taskbroker.api.deps import get_broker, get_registry
from taskbroker.api.schemas import (
    ActionResponse,
    DispatchResponse,
    HealthResponse,
    ListEventsResponse,
    TaskResponse,
)
from taskbroker.engine import StoreFault, TaskBroker, TaskNotFound
from taskbroker.models import TaskEvent, TaskEventType, TaskSpec

router = APIRouter(prefix="/v2")


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.post("/tasks", response_model=DispatchResponse, status_code=201)
async def dispatch_task(
    spec: TaskSpec,
    broker: TaskBroker = Depends(get_broker),
):
    """Dispatch a new task."""
    try:
        result = await broker.dispatch(spec)
    except StoreFault as e:
        raise HTTPException(status_code=503, detail=e.message)
    return DispatchResponse(task_id=result.task_id)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID,
    broker: TaskBroker = Depends(get_broker),
):
    """Get a task by ID."""
    try:
        record = await broker.store.get_task(task_id)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StoreFault as e:
        raise HTTPException(status_code=503, detail=e.message)
    return TaskResponse(**record.model_dump())


@router.get("/tasks/{task_id}/events", response_model=ListEventsResponse)
async def list_task_events(
    task_id: UUID,
    after: Optional[int] = Query(None, ge=0),
    broker: TaskBroker = Depends(get_broker),
):
    """List events of a task newer than the ``after`` cursor."""
    try:
        await broker.store.get_task(task_id)
        events = await broker.store.list_events(task_id, after=after)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StoreFault as e:
        raise HTTPException(status_code=503, detail=e.message)
    return ListEventsResponse(events=events)


@router.get("/tasks/{task_id}/eventstream")
async def stream_task_events(
    task_id: UUID,
    after: Optional[int] = Query(None, ge=0),
    broker: TaskBroker = Depends(get_broker),
):
    """
    Live-tail a task's event log as server-sent events.

    The stream ends after the completion event; a client that reconnects
    passes the id of the last event it saw as ``after``. For a task that is
    already terminal the remaining events are replayed and the stream closes
    straight away, even when none are left.
    """
    try:
        record = await broker.store.get_task(task_id)
        backlog = None
        if record.is_terminal():
            backlog = await broker.store.list_events(task_id, after=after)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StoreFault as e:
        raise HTTPException(status_code=503, detail=e.message)

    async def event_source():
        if backlog is not None:
            for event in backlog:
                yield _format_sse(event)
            return

        async with aclosing(broker.iter_events(task_id, after)) as batches:
            async for batch in batches:
                for event in batch.events:
                    yield _format_sse(event)
                    if event.type == TaskEventType.COMPLETION:
                        return

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/actions", response_model=list[ActionResponse])
async def list_actions(
    registry: ActionRegistry = Depends(get_registry),
):
    """List registered step actions."""
    return [
        ActionResponse(
            id=action.id,
            description=action.description,
            parameters_schema=action.parameters_schema,
        )
        for action in registry.list()
    ]


def _format_sse(event: TaskEvent) -> str:
    return f"id: {event.id}\nevent: {event.type.value}\ndata: {event.model_dump_json()}\n\n"
