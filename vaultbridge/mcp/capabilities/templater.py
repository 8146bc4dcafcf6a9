"""
Template rendering.

When a templating extension is loaded its API is tried in order:
``renderTemplate``, ``run``, ``compile``. Without one, ``{{ key }}`` and
``<% key %>`` placeholders are filled from the context.
"""

import re
from typing import Any, Optional

from ..core import Capability
from .dataview import find_api, maybe_await

TEMPLATER_IDS = ("templater-obsidian", "templater")

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}|<%\s*([\w.-]+)\s*%>")


def interpolate(template: str, context: dict) -> str:
    """Fill known placeholders; unknown ones are left as they are."""

    def substitute(match: re.Match) -> str:
        key = match.group(1) or match.group(2)
        if key not in context:
            return match.group(0)
        return str(context[key])

    return _PLACEHOLDER.sub(substitute, str(template))


class TemplaterTools:
    def __init__(self, api: Any = None):
        self.api = api

    async def render(
        self,
        template: str,
        context: Optional[dict] = None,
        path: Optional[str] = None,
    ) -> Any:
        """
        Render a template with an optional context object

        Args:
            template: Template string or template path depending on the templating extension
            context: Key/value context provided to the template
            path: Note path to render in the context of
        """
        if not template:
            raise ValueError("missing template")
        context = context or {}
        api = self.api

        if callable(getattr(api, "renderTemplate", None)):
            return await maybe_await(api.renderTemplate(template, context, path))
        if callable(getattr(api, "run", None)):
            return await maybe_await(api.run(template, context, path))
        if callable(getattr(api, "compile", None)):
            compiled = await maybe_await(api.compile(template))
            if callable(compiled):
                return await maybe_await(compiled(context))
            return compiled
        return interpolate(template, context)


def capabilities(plugins: dict[str, Any]) -> list[Capability]:
    api = None
    for plugin_id in TEMPLATER_IDS:
        api = find_api(plugins.get(plugin_id))
        if api is not None:
            break
    tools = TemplaterTools(api)
    return [Capability.from_function(tools.render, "templater.render")]
