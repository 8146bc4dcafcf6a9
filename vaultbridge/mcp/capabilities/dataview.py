"""
Query-language (Dataview) capabilities.

The extension API is duck-typed: any of its methods may be plain or async,
and query results may be objects or dicts exposing ``successful``, ``value``
and ``error``.
"""

import inspect
from typing import Any, Optional

from ..core import Capability

DATAVIEW_ID = "dataview"


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def result_field(result: Any, name: str, default: Any = None) -> Any:
    if isinstance(result, dict):
        return result.get(name, default)
    return getattr(result, name, default)


def find_api(plugin: Any) -> Any:
    if plugin is None:
        return None
    return getattr(plugin, "api", None)


async def query_markdown(api: Any, query: str) -> Any:
    """
    Run a query through ``queryMarkdown``, falling back to ``tryQueryMarkdown``.

    Returns:
        The markdown on success, the extension's error text otherwise
    """
    if callable(getattr(api, "queryMarkdown", None)):
        result = await maybe_await(api.queryMarkdown(query))
        if result_field(result, "successful"):
            return result_field(result, "value")
        return result_field(result, "error")
    if callable(getattr(api, "tryQueryMarkdown", None)):
        return await maybe_await(api.tryQueryMarkdown(query))
    raise RuntimeError("Dataview queryMarkdown API not available")


class DataviewTools:
    def __init__(self, api: Any):
        self.api = api

    async def query(self, query: str) -> Any:
        """
        Execute a Dataview query string and return results (string or structured)

        Args:
            query: Dataview query
        """
        if not query:
            raise ValueError("missing query")
        return await query_markdown(self.api, query)

    async def page(self, path: str) -> Any:
        """
        Return Dataview page object for a given note path

        Args:
            path: Note path
        """
        if not path:
            raise ValueError("missing path")
        if not callable(getattr(self.api, "page", None)):
            raise RuntimeError("dataview api does not expose page()")
        return await maybe_await(self.api.page(path))


class DataviewFallback:
    """Used when the extension is missing or exposes no ``api``."""

    def __init__(self, plugin: Optional[Any]):
        self.plugin = plugin

    async def query(self, query: str) -> Any:
        """
        Execute a Dataview query string (fallback direct API access)

        Args:
            query: Dataview query
        """
        if not query:
            raise ValueError("Missing query parameter")
        dv = self.plugin
        if dv is None:
            raise RuntimeError("Dataview plugin not accessible")
        if callable(getattr(dv, "query", None)):
            return await maybe_await(dv.query(query))
        if callable(getattr(dv, "queryMarkdown", None)):
            return await maybe_await(dv.queryMarkdown(query))
        raise RuntimeError("Dataview query method not found")


def capabilities(plugins: dict[str, Any]) -> list[Capability]:
    plugin = plugins.get(DATAVIEW_ID)
    api = find_api(plugin)
    if api is not None:
        tools = DataviewTools(api)
        return [
            Capability.from_function(tools.query, "dataview.query"),
            Capability.from_function(tools.page, "dataview.page"),
        ]
    fallback = DataviewFallback(plugin)
    return [Capability.from_function(fallback.query, "dataview.query")]
