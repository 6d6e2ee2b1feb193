"""Built-in step actions."""

import asyncio
from pathlib import Path

from taskbroker.actions.registry import ActionContext, ActionRegistry, TemplateAction


def _list_files(root: Path) -> list[str]:
    return sorted(str(path.relative_to(root)) for path in root.rglob("*") if path.is_file())


def _write_file(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


async def debug_log(ctx: ActionContext) -> None:
    """Write a message to the task log, optionally listing the workspace."""
    message = ctx.parameters.get("message")
    if message is not None:
        ctx.logger.info(str(message))

    if ctx.parameters.get("listWorkspace"):
        files = await asyncio.to_thread(_list_files, ctx.workspace_path)
        listing = "\n".join(files)
        ctx.log_stream.write(f"Workspace tree:\n{listing}\n")
        ctx.output("files", files)


async def fs_write(ctx: ActionContext) -> None:
    """Write text content to a file inside the workspace."""
    relative = ctx.parameters.get("path")
    if not relative:
        raise ValueError("fs:write requires a 'path' parameter")

    workspace = ctx.workspace_path.resolve()
    target = (workspace / str(relative)).resolve()
    try:
        target.relative_to(workspace)
    except ValueError:
        raise ValueError(f"Relative path is not allowed to refer to a directory outside its parent: {relative}")

    content = str(ctx.parameters.get("content", ""))
    await asyncio.to_thread(_write_file, target, content)
    ctx.logger.info(f"Wrote {len(content)} characters to {relative}")
    ctx.output("path", str(Path(relative)))


BUILTIN_ACTIONS = [
    TemplateAction(
        id="debug:log",
        handler=debug_log,
        description="Writes a message into the task log",
        parameters_schema={"message": "string", "listWorkspace": "boolean"},
    ),
    TemplateAction(
        id="fs:write",
        handler=fs_write,
        description="Writes a text file into the task workspace",
        parameters_schema={"path": "string", "content": "string"},
    ),
]


def register_builtin_actions(registry: ActionRegistry) -> ActionRegistry:
    for action in BUILTIN_ACTIONS:
        registry.register(action)
    return registry
