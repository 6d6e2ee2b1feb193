"""Task broker engine - claiming, completion and observation."""

from taskbroker.engine.agent import TaskAgent
from taskbroker.engine.broker import EventSubscription, TaskBroker
from taskbroker.engine.errors import (
    ActionAlreadyRegistered,
    ActionNotFound,
    AlreadyTerminal,
    LostClaim,
    StoreFault,
    TaskBrokerError,
    TaskNotFound,
    TemplateError,
)

__all__ = [
    "ActionAlreadyRegistered",
    "ActionNotFound",
    "AlreadyTerminal",
    "EventSubscription",
    "LostClaim",
    "StoreFault",
    "TaskAgent",
    "TaskBroker",
    "TaskBrokerError",
    "TaskNotFound",
    "TemplateError",
]
