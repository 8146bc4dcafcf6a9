"""
File-based task tools.

Tasks are markdown checklist lines anywhere in the vault:

    - [ ] Call the plumber #home [due:: 2024-05-01] [id:: k3x9qa]
    - [x] Renew passport ⏫

Inline fields use the ``[key:: value]`` form; ``#tags`` are single words.
Due dates and recurrence are also recognised in the emoji form (📅, 🔁).
"""

import re
import secrets
import string
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Any, Iterator, Optional

from ..core import Capability
from ..logger import get_logger
from .dataview import find_api, maybe_await, result_field

if TYPE_CHECKING:
    from ...vault import Vault

logger = get_logger("vaultbridge-tasks")

TASK_LINE = re.compile(r"^(\s*)- \[([ xX])\]\s*(.*)$")
INLINE_FIELD = re.compile(r"\[([\w-]+)::\s*([^\]]*)\]")
TAG = re.compile(r"#(\w+)")
DUE_EMOJI = re.compile(r"📅\s*(\d{4}-\d{2}-\d{2})")
RECURRING_EMOJI = "🔁"

PRIORITY_MARKERS = {
    "high": "⏫",
    "medium": "🔼",
    "low": "🔽",
}

DEFAULT_TASK_FILE = "tasks_for_review.md"
TASK_ID_LENGTH = 6
_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class Task:
    path: str
    line_number: int  # 1-based
    line: str
    indent: str
    status: str
    body: str

    @property
    def completed(self) -> bool:
        return self.status.lower() == "x"

    @property
    def tags(self) -> list[str]:
        return TAG.findall(self.body)

    @property
    def fields(self) -> dict[str, str]:
        return {key: value.strip() for key, value in INLINE_FIELD.findall(self.body)}

    @property
    def description(self) -> str:
        text = INLINE_FIELD.sub("", self.body)
        text = TAG.sub("", text)
        return " ".join(text.split())

    @property
    def due(self) -> Optional[str]:
        due = self.fields.get("due")
        if due:
            return due
        match = DUE_EMOJI.search(self.body)
        return match.group(1) if match else None

    @property
    def recurring(self) -> bool:
        return "repeat" in self.fields or RECURRING_EMOJI in self.body

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "completed": self.completed,
            "status": self.status,
            "indent": self.indent,
            "tags": self.tags,
            "inlineMetadata": self.fields,
            "due": self.due,
            "line": self.line,
            "metadata": {"file": self.path, "lineNumber": self.line_number},
        }


def parse_task_line(line: str, path: str = "", line_number: int = 0) -> Optional[Task]:
    """Parse one line; returns None when it is not a checklist item."""
    match = TASK_LINE.match(line.rstrip("\r"))
    if not match:
        return None
    indent, status, body = match.groups()
    return Task(
        path=path,
        line_number=line_number,
        line=line.rstrip("\r"),
        indent=indent,
        status=status,
        body=body,
    )


def iter_tasks(text: str, path: str = "") -> Iterator[Task]:
    for number, line in enumerate(text.split("\n"), start=1):
        task = parse_task_line(line, path, number)
        if task is not None:
            yield task


def build_task_line(
    description: str,
    tags: Optional[list[str]] = None,
    metadata: Optional[dict] = None,
    indent: str = "",
    status: str = " ",
) -> str:
    line = f"{indent}- [{status}] {description}"
    if tags:
        line += " " + " ".join(f"#{tag.lstrip('#')}" for tag in tags)
    for key, value in (metadata or {}).items():
        if value is None or value == "":
            continue
        line += f" [{key}:: {value}]"
    return line


def generate_task_id(existing: set[str]) -> str:
    while True:
        task_id = "".join(secrets.choice(_ID_ALPHABET) for _ in range(TASK_ID_LENGTH))
        if task_id not in existing:
            return task_id


def _parse_date(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a YYYY-MM-DD date, got {value!r}") from None


class TaskTools:
    def __init__(self, vault: "Vault", dataview_api: Any = None):
        self.vault = vault
        self.dataview_api = dataview_api

    # -- reading ---------------------------------------------------------

    def _all_tasks(self, path: Optional[str] = None) -> list[Task]:
        if path:
            return list(iter_tasks(self.vault.read(path), path))
        tasks = []
        for note in self.vault.markdown_files():
            tasks.extend(iter_tasks(self.vault.read(note.path), note.path))
        return tasks

    def _existing_ids(self) -> set[str]:
        return {task.fields["id"] for task in self._all_tasks() if task.fields.get("id")}

    def list_tasks(self, status: Optional[str] = None, path: Optional[str] = None) -> list[dict]:
        """
        List tasks in the vault, optionally filtered by status and file

        Args:
            status: 'todo', 'done' or 'all' (default all)
            path: Only tasks from this note
        """
        status = (status or "all").lower()
        if status not in ("all", "todo", "done"):
            raise ValueError("Invalid status. Use: todo, done, or all")
        tasks = self._all_tasks(path)
        if status == "todo":
            tasks = [t for t in tasks if not t.completed]
        elif status == "done":
            tasks = [t for t in tasks if t.completed]
        return [t.to_dict() for t in tasks]

    def search(self, text: str) -> list[dict]:
        """
        Search tasks by text content

        Args:
            text: Substring to look for in the task line
        """
        if not text:
            raise ValueError("missing text parameter")
        return [t.to_dict() for t in self._all_tasks() if text in t.body]

    def by_tag(self, tag: str) -> list[dict]:
        """
        Get tasks carrying a tag

        Args:
            tag: Tag name, with or without the leading '#'
        """
        tag = (tag or "").lstrip("#")
        if not tag:
            raise ValueError("missing tag parameter")
        return [t.to_dict() for t in self._all_tasks() if tag in t.tags]

    def by_priority(self, priority: str) -> list[dict]:
        """
        Get tasks by priority (Tasks emoji format)

        Args:
            priority: 'high', 'medium' or 'low'
        """
        marker = PRIORITY_MARKERS.get((priority or "").lower())
        if marker is None:
            raise ValueError("Invalid priority. Use: high, medium, or low")
        return [t.to_dict() for t in self._all_tasks() if marker in t.body]

    def with_due_dates(self, before: Optional[str] = None, after: Optional[str] = None) -> list[dict]:
        """
        Get tasks that have a due date, optionally inside a window

        Args:
            before: Only tasks due strictly before this date (YYYY-MM-DD)
            after: Only tasks due strictly after this date (YYYY-MM-DD)
        """
        upper = _parse_date(before, "before") if before else None
        lower = _parse_date(after, "after") if after else None
        result = []
        for task in self._all_tasks():
            if not task.due:
                continue
            if upper or lower:
                try:
                    due = date.fromisoformat(task.due)
                except ValueError:
                    continue
                if upper and not due < upper:
                    continue
                if lower and not due > lower:
                    continue
            result.append(task.to_dict())
        return result

    def overdue(self, today: Optional[str] = None) -> list[dict]:
        """
        Get open tasks whose due date has passed

        Args:
            today: Reference date (YYYY-MM-DD), defaults to the current date
        """
        reference = _parse_date(today, "today") if today else date.today()
        result = []
        for task in self._all_tasks():
            if task.completed or not task.due:
                continue
            try:
                due = date.fromisoformat(task.due)
            except ValueError:
                continue
            if due < reference:
                result.append(task.to_dict())
        return result

    def recurring(self) -> list[dict]:
        """Get recurring tasks"""
        return [t.to_dict() for t in self._all_tasks() if t.recurring]

    def stats(self, path: Optional[str] = None) -> dict:
        """
        Count tasks overall and per note

        Args:
            path: Only count tasks in this note
        """
        tasks = self._all_tasks(path)
        by_file: dict[str, int] = {}
        for task in tasks:
            by_file[task.path] = by_file.get(task.path, 0) + 1
        completed = sum(1 for t in tasks if t.completed)
        return {
            "total": len(tasks),
            "completed": completed,
            "todo": len(tasks) - completed,
            "withDueDate": sum(1 for t in tasks if t.due),
            "recurring": sum(1 for t in tasks if t.recurring),
            "byFile": by_file,
        }

    def find_by_id(self, task_id: str, search_path: Optional[str] = None) -> dict:
        """
        Find a task by its [id:: value] field

        Args:
            task_id: Task id to look for
            search_path: Only search this note
        """
        if not task_id:
            raise ValueError("missing task_id parameter")
        wanted = task_id.lower()
        for task in self._all_tasks(search_path):
            if task.fields.get("id", "").lower() == wanted:
                return {
                    "found": True,
                    "taskId": task_id,
                    "taskLine": task.line,
                    "metadata": {"file": task.path, "lineNumber": task.line_number},
                }
        return {"found": False, "taskId": task_id, "message": "Task not found"}

    # -- writing ---------------------------------------------------------

    def _prepare_metadata(self, metadata: Optional[dict]) -> dict:
        final = dict(metadata or {})
        if not final.get("id"):
            final["id"] = generate_task_id(self._existing_ids())
        if not final.get("created"):
            final["created"] = date.today().isoformat()
        return final

    def create_temporary(
        self,
        description: str,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Generate a task line without saving it

        Args:
            description: Task text
            tags: Tags to append
            metadata: Inline fields to append as [key:: value]
        """
        if not description:
            raise ValueError("missing description parameter")
        final = self._prepare_metadata(metadata)
        return {
            "success": True,
            "taskLine": build_task_line(description, tags, final),
            "taskId": final["id"],
            "inlineMetadata": final,
            "message": "Task line generated (not saved)",
        }

    def create(
        self,
        description: str,
        file: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Append a new task to a note, creating the note if needed

        Args:
            description: Task text
            file: Target note (default tasks_for_review.md)
            tags: Tags to append
            metadata: Inline fields to append as [key:: value]
        """
        if not description:
            raise ValueError("missing description parameter")
        target = file or DEFAULT_TASK_FILE

        # Ids are unique across the vault
        with self.vault.lock:
            final = self._prepare_metadata(metadata)
            task_line = build_task_line(description, tags, final)
            content = self.vault.read(target) if self.vault.exists(target) else ""
            if not content:
                new_content, line_number = task_line, 1
            elif content.endswith("\n"):
                new_content, line_number = content + task_line, content.count("\n") + 1
            else:
                new_content, line_number = content + "\n" + task_line, content.count("\n") + 2
            self.vault.write(target, new_content)
        logger.info("Task %s created in %s:%d", final["id"], target, line_number)

        return {
            "success": True,
            "taskLine": task_line,
            "taskId": final["id"],
            "metadata": {"file": target, "lineNumber": line_number},
            "message": f"Task created and added to {target}:{line_number}",
        }

    def _load_task(self, file: str, line_number: int) -> tuple[list[str], Task]:
        if not file:
            raise ValueError("missing file parameter")
        if not self.vault.exists(file):
            raise FileNotFoundError(f"File not found: {file}")
        lines = self.vault.read(file).split("\n")
        if not isinstance(line_number, int) or line_number < 1 or line_number > len(lines):
            raise ValueError(f"Invalid line number: {line_number}")
        task = parse_task_line(lines[line_number - 1], file, line_number)
        if task is None:
            raise ValueError("Line is not a valid task")
        return lines, task

    def edit(
        self,
        file: str,
        line_number: int,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Rewrite a task line in place, keeping its status and indentation

        Args:
            file: Note containing the task
            line_number: 1-based line of the task
            description: New task text (default keeps the current text)
            tags: New tag list (default keeps the current tags)
            metadata: Inline fields to set; an empty value removes the field
        """
        with self.vault.lock:
            lines, task = self._load_task(file, line_number)
            fields: dict[str, Any] = dict(task.fields)
            fields.update(metadata or {})
            new_line = build_task_line(
                description or task.description,
                task.tags if tags is None else tags,
                fields,
                indent=task.indent,
                status=task.status,
            )
            lines[line_number - 1] = new_line
            self.vault.write(file, "\n".join(lines))
        return {
            "success": True,
            "originalTaskLine": task.line,
            "editedTaskLine": new_line,
            "metadata": {"file": file, "lineNumber": line_number},
            "message": "Task updated in file",
        }

    def toggle(self, file: str, line_number: int) -> dict:
        """
        Flip a task between done and not done

        Args:
            file: Note containing the task
            line_number: 1-based line of the task
        """
        with self.vault.lock:
            lines, task = self._load_task(file, line_number)
            new_status = " " if task.completed else "x"
            updated = f"{task.indent}- [{new_status}] {task.body}"
            lines[line_number - 1] = updated
            self.vault.write(file, "\n".join(lines))
        completed = new_status == "x"
        return {
            "success": True,
            "originalTaskLine": task.line,
            "updatedLine": updated,
            "completed": completed,
            "metadata": {"file": file, "lineNumber": line_number},
            "message": f"Task marked as {'completed' if completed else 'incomplete'}",
        }

    # -- query language --------------------------------------------------

    async def query(self, query: str, include_metadata: bool = True) -> Any:
        """
        Query tasks with a Dataview TASK query

        Args:
            query: Full TASK query or just the WHERE condition
            include_metadata: Also return the vault's tasks as structured data
        """
        if not query:
            raise ValueError("missing query parameter")
        task_query = query if query.startswith("TASK") else f"TASK WHERE {query}"
        api = self.dataview_api
        if not callable(getattr(api, "queryMarkdown", None)):
            raise RuntimeError("Dataview API not available")

        result = await maybe_await(api.queryMarkdown(task_query))
        if not result_field(result, "successful"):
            return result_field(result, "error")
        markdown = result_field(result, "value")
        if include_metadata and callable(getattr(api, "pages", None)):
            return {"markdown": markdown, "tasks": [t.to_dict() for t in self._all_tasks()]}
        return markdown


def capabilities(vault: "Vault", plugins: dict[str, Any]) -> list[Capability]:
    api = find_api(plugins.get("dataview"))
    tools = TaskTools(vault, api)
    found = [
        Capability.from_function(tools.list_tasks, "tasks.list"),
        Capability.from_function(tools.search, "tasks.search"),
        Capability.from_function(tools.by_tag, "tasks.byTag"),
        Capability.from_function(tools.by_priority, "tasks.byPriority"),
        Capability.from_function(tools.with_due_dates, "tasks.withDueDates"),
        Capability.from_function(tools.overdue, "tasks.overdue"),
        Capability.from_function(tools.recurring, "tasks.recurring"),
        Capability.from_function(tools.stats, "tasks.stats"),
        Capability.from_function(tools.create, "tasks.create"),
        Capability.from_function(tools.create_temporary, "tasks.createTemporary"),
        Capability.from_function(tools.edit, "tasks.edit"),
        Capability.from_function(tools.toggle, "tasks.toggle"),
        Capability.from_function(tools.find_by_id, "tasks.findById"),
    ]
    if api is not None:
        found.append(Capability.from_function(tools.query, "tasks.query"))
    return found
