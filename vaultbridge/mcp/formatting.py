"""
Render capability results as text for ``tools/call``.

Lists get a counted markdown heading; note bodies and query output pass
through untouched; anything else is pretty-printed JSON.
"""

import json
from typing import Any


def _json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _bullet_list(title: str, items: list, render=str) -> str:
    bullets = "\n".join(f"- {render(item)}" for item in items)
    return f"# {title} ({len(items)})\n\n{bullets}"


def _task_line(item: Any) -> str:
    if isinstance(item, dict):
        text = str(item.get("line") or item.get("text") or item.get("description", "")).strip()
        location = item.get("metadata") or {}
        if location.get("file") and location.get("lineNumber"):
            return f"{text} ({location['file']}:{location['lineNumber']})"
        return text
    return str(item)


def _plugin_line(item: Any) -> str:
    if isinstance(item, dict):
        name = item.get("name") or item.get("id", "")
        version = item.get("version")
        return f"{name} ({version})" if version else str(name)
    return str(item)


def _verbatim(result: Any) -> str:
    if isinstance(result, str):
        return result
    return _json(result)


def format_notes(result: Any) -> str:
    if isinstance(result, list):
        return _bullet_list("Notes in Vault", result)
    return _json(result)


def format_search(result: Any) -> str:
    if isinstance(result, list):
        return _bullet_list("Search Results", result)
    return _json(result)


def format_tasks(result: Any) -> str:
    if isinstance(result, list):
        return _bullet_list("Tasks", result, _task_line)
    if isinstance(result, dict) and isinstance(result.get("markdown"), str):
        return result["markdown"]
    return _verbatim(result)


def format_plugins(result: Any) -> str:
    if isinstance(result, list):
        return _bullet_list("Loaded Plugins", result, _plugin_line)
    return _json(result)


# External tool name -> renderer
FORMATTERS = {
    "vault_list_notes": format_notes,
    "vault_search": format_search,
    "vault_get_note": _verbatim,
    "dataview_query": _verbatim,
    "tasks_query": format_tasks,
    "tasks_list": format_tasks,
    "templater_render": _verbatim,
    "plugins_list": format_plugins,
}


def format_tool_result(tool_name: str, result: Any) -> str:
    """Render ``result`` for the tool the client called."""
    formatter = FORMATTERS.get(tool_name, _json)
    return formatter(result)
