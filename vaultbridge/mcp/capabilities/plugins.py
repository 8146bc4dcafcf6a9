"""Extension inspection capabilities."""

from typing import Any, Optional

from ..core import Capability


def _public_names(obj: Any) -> list[str]:
    return sorted(name for name in dir(obj) if not name.startswith("_"))


def _manifest(plugin: Any) -> Any:
    manifest = getattr(plugin, "manifest", None)
    if manifest is None and isinstance(plugin, dict):
        manifest = plugin.get("manifest")
    return manifest


class PluginTools:
    def __init__(self, plugins: dict[str, Any]):
        self.plugins = plugins

    def inspect_plugin(self, plugin: Optional[str] = None) -> Any:
        """
        Inspect a plugin by id or list available plugin ids when none provided

        Args:
            plugin: Plugin id to inspect
        """
        if not plugin:
            return list(self.plugins)
        target = self.plugins.get(plugin)
        if target is None:
            return {"error": "Plugin not found"}

        api = getattr(target, "api", None)
        keys = list(vars(target)) if hasattr(target, "__dict__") else _public_names(target)
        return {
            "id": plugin,
            "manifest": _manifest(target),
            "hasApi": api is not None,
            "apiMethods": _public_names(api) if api is not None else [],
            "pluginType": type(target).__name__,
            "keys": keys,
        }

    def list_plugins(self) -> list[str]:
        """Return a list of installed plugin ids"""
        return list(self.plugins)


def capabilities(plugins: dict[str, Any]) -> list[Capability]:
    tools = PluginTools(plugins)
    return [
        Capability.from_function(tools.inspect_plugin, "plugins.inspect"),
        Capability.from_function(tools.list_plugins, "plugins.list"),
    ]
