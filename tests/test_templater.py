import pytest

from vaultbridge.mcp.capabilities.templater import TemplaterTools, capabilities, interpolate


def test_interpolate_fills_known_keys() -> None:
    assert interpolate("Hi {{ name }}, <% day %> {{missing}}", {"name": "Ada", "day": 3}) == (
        "Hi Ada, 3 {{missing}}"
    )


@pytest.mark.asyncio
async def test_render_without_extension_interpolates() -> None:
    tools = TemplaterTools()
    assert await tools.render("# {{title}}", {"title": "Plan"}) == "# Plan"
    with pytest.raises(ValueError):
        await tools.render("")


@pytest.mark.asyncio
async def test_render_prefers_render_template() -> None:
    calls = []

    class Api:
        async def renderTemplate(self, template, context, path):
            calls.append((template, context, path))
            return "rendered"

        def run(self, *args):
            raise AssertionError("run should not be used")

    assert await TemplaterTools(Api()).render("t.md", {"a": 1}, "note.md") == "rendered"
    assert calls == [("t.md", {"a": 1}, "note.md")]


@pytest.mark.asyncio
async def test_render_with_compile() -> None:
    class Api:
        def compile(self, template):
            return lambda context: template.upper() + str(context.get("n", ""))

    assert await TemplaterTools(Api()).render("abc", {"n": 2}) == "ABC2"


def test_capability_found_under_either_id() -> None:
    class Plugin:
        api = object()

    (capability,) = capabilities({"templater": Plugin()})
    assert capability.name == "templater.render"
    assert capability.input_schema["required"] == ["template"]
