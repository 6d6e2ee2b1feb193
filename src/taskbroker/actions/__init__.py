"""Step actions and their registry."""

from taskbroker.actions.builtin import BUILTIN_ACTIONS, register_builtin_actions
from taskbroker.actions.registry import (
    ActionContext,
    ActionRegistry,
    TemplateAction,
)

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "BUILTIN_ACTIONS",
    "TemplateAction",
    "register_builtin_actions",
]
