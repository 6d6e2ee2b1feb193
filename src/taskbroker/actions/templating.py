"""Placeholder substitution for step parameters and task outputs."""

import re
from typing import Any

from taskbroker.engine.errors import TemplateError

PLACEHOLDER = re.compile(r"\{\{\s*([\w\-:]+(?:\.[\w\-:]+)*)\s*\}\}")


def resolve(expression: str, context: dict[str, Any]) -> Any:
    """Look up a dotted path such as ``steps.fetch.output.url``."""
    value: Any = context
    for part in expression.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            raise TemplateError(expression)
    return value


def render(value: Any, context: dict[str, Any]) -> Any:
    """
    Render placeholders in strings, recursing through dicts and lists.

    A string consisting of a single placeholder resolves to the raw value,
    so ``"{{ parameters.count }}"`` keeps an integer an integer.
    """
    if isinstance(value, dict):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    if not isinstance(value, str):
        return value

    whole = PLACEHOLDER.fullmatch(value.strip())
    if whole:
        return resolve(whole.group(1), context)

    return PLACEHOLDER.sub(lambda match: str(resolve(match.group(1), context)), value)
