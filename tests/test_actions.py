"""
Action registry and template rendering tests.
"""

import logging

import pytest

from taskbroker.actions import ActionContext, ActionRegistry, TemplateAction
from taskbroker.actions import templating
from taskbroker.engine import ActionAlreadyRegistered, ActionNotFound, TemplateError


async def noop(ctx: ActionContext) -> None:
    return None


class ListStream:
    def __init__(self):
        self.chunks = []

    def write(self, text: str) -> int:
        self.chunks.append(text)
        return len(text)


def make_context(tmp_path, parameters):
    outputs = {}
    ctx = ActionContext(
        logger=logging.getLogger("test.actions"),
        log_stream=ListStream(),
        workspace_path=tmp_path,
        parameters=parameters,
        output=outputs.__setitem__,
    )
    return ctx, outputs


class TestActionRegistry:
    def test_builtins_are_registered(self, registry: ActionRegistry):
        assert [action.id for action in registry.list()] == ["debug:log", "fs:write"]
        assert "debug:log" in registry

    def test_duplicate_registration_rejected(self, registry: ActionRegistry):
        with pytest.raises(ActionAlreadyRegistered):
            registry.register(TemplateAction(id="debug:log", handler=noop))

    def test_unknown_action_raises(self):
        with pytest.raises(ActionNotFound) as exc_info:
            ActionRegistry().get("missing:action")
        assert exc_info.value.action_id == "missing:action"

    def test_custom_action_registers_without_broker_changes(self, registry: ActionRegistry):
        action = TemplateAction(id="custom:thing", handler=noop, description="Does a thing")
        registry.register(action)

        assert registry.get("custom:thing") is action


class TestBuiltinActions:
    @pytest.mark.asyncio
    async def test_fs_write_creates_nested_file(self, registry: ActionRegistry, tmp_path):
        ctx, outputs = make_context(tmp_path, {"path": "out/notes.txt", "content": "abc"})

        await registry.get("fs:write").handler(ctx)

        assert (tmp_path / "out" / "notes.txt").read_text() == "abc"
        assert outputs == {"path": "out/notes.txt"}

    @pytest.mark.asyncio
    async def test_fs_write_requires_path(self, registry: ActionRegistry, tmp_path):
        ctx, _ = make_context(tmp_path, {"content": "abc"})

        with pytest.raises(ValueError):
            await registry.get("fs:write").handler(ctx)

    @pytest.mark.asyncio
    async def test_debug_log_lists_workspace(self, registry: ActionRegistry, tmp_path):
        (tmp_path / "b.txt").write_text("b")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "a.txt").write_text("a")
        ctx, outputs = make_context(tmp_path, {"listWorkspace": True})

        await registry.get("debug:log").handler(ctx)

        assert outputs == {"files": ["b.txt", "sub/a.txt"]}
        assert ctx.log_stream.chunks == ["Workspace tree:\nb.txt\nsub/a.txt\n"]


class TestTemplating:
    context = {
        "parameters": {"name": "demo", "count": 3, "tags": ["a", "b"]},
        "steps": {"fetch": {"output": {"url": "https://example.test"}}},
    }

    def test_single_placeholder_keeps_raw_value(self):
        assert templating.render("{{ parameters.count }}", self.context) == 3
        assert templating.render("{{parameters.tags}}", self.context) == ["a", "b"]

    def test_embedded_placeholders_are_stringified(self):
        rendered = templating.render("{{ parameters.name }} x{{ parameters.count }}", self.context)
        assert rendered == "demo x3"

    def test_renders_nested_structures(self):
        rendered = templating.render(
            {"url": "{{ steps.fetch.output.url }}", "items": ["{{ parameters.tags.1 }}", 7]},
            self.context,
        )
        assert rendered == {"url": "https://example.test", "items": ["b", 7]}

    def test_plain_values_pass_through(self):
        assert templating.render("no placeholders", self.context) == "no placeholders"
        assert templating.render(True, self.context) is True

    def test_missing_path_raises_template_error(self):
        with pytest.raises(TemplateError) as exc_info:
            templating.render("{{ steps.absent.output }}", self.context)
        assert exc_info.value.expression == "steps.absent.output"
