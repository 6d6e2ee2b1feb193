"""Registry of named step actions."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from taskbroker.engine.errors import ActionAlreadyRegistered, ActionNotFound


class LogStream(Protocol):
    """Append-only text sink for raw step output."""

    def write(self, text: str) -> int: ...


@dataclass
class ActionContext:
    """Everything an action handler may touch while a step runs."""

    logger: logging.Logger
    log_stream: LogStream
    workspace_path: Path
    parameters: dict[str, Any]
    output: Callable[[str, Any], None]


ActionHandler = Callable[[ActionContext], Awaitable[None]]


@dataclass(frozen=True)
class TemplateAction:
    """A step action addressable by its identifier, e.g. ``debug:log``."""

    id: str
    handler: ActionHandler
    description: str = ""
    parameters_schema: dict[str, Any] = field(default_factory=dict)


class ActionRegistry:
    """Maps action identifiers to handlers; new actions register without touching the broker."""

    def __init__(self) -> None:
        self._actions: dict[str, TemplateAction] = {}

    def register(self, action: TemplateAction) -> None:
        if action.id in self._actions:
            raise ActionAlreadyRegistered(action.id)
        self._actions[action.id] = action

    def get(self, action_id: str) -> TemplateAction:
        try:
            return self._actions[action_id]
        except KeyError:
            raise ActionNotFound(action_id) from None

    def list(self) -> list[TemplateAction]:
        return sorted(self._actions.values(), key=lambda action: action.id)

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._actions
