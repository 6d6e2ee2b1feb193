"""API dependencies."""

from fastapi import Request

from taskbroker.actions import ActionRegistry
from taskbroker.engine import TaskBroker


async def get_broker(request: Request) -> TaskBroker:
    """Broker created during application startup."""
    return request.app.state.broker


async def get_registry(request: Request) -> ActionRegistry:
    """Action registry created during application startup."""
    return request.app.state.registry
