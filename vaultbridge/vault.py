"""
Note vault and host environment.

A Vault is a directory of markdown notes. Paths handed in by clients are
vault-relative POSIX strings; anything that would resolve outside the root
is refused.
"""

import importlib
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from .mcp.logger import get_logger

logger = get_logger("vaultbridge-vault")

NOTE_SUFFIX = ".md"


@dataclass(frozen=True)
class NoteFile:
    """A markdown file inside the vault."""

    path: str  # vault-relative, POSIX separators
    size: int
    mtime: float

    @property
    def basename(self) -> str:
        return PurePosixPath(self.path).stem

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name


class Vault:
    """
    Directory-backed note store.

    Capabilities run in worker threads. Anything that reads a note, changes
    it and writes it back holds ``lock`` for the whole round trip; ``write``
    takes it too.
    """

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).expanduser().resolve()
        if not self.root.is_dir():
            raise NotADirectoryError(f"Vault root is not a directory: {self.root}")
        self.lock = threading.RLock()

    def __repr__(self):
        return f"Vault({str(self.root)!r})"

    def resolve(self, path: str) -> Path:
        """
        Map a vault-relative path to a filesystem path.

        Raises:
            ValueError: If the path is empty, absolute, or escapes the vault
        """
        if not isinstance(path, str) or not path.strip():
            raise ValueError("missing path")
        relative = PurePosixPath(path.replace("\\", "/"))
        if relative.is_absolute():
            raise ValueError(f"Path must be relative to the vault: {path}")
        full = (self.root / relative).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValueError(f"Path escapes the vault: {path}")
        return full

    def relative(self, full: Path) -> str:
        return full.relative_to(self.root).as_posix()

    def markdown_files(self) -> list[NoteFile]:
        """All notes, sorted by path. Hidden directories are skipped."""
        notes = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in filenames:
                if not filename.endswith(NOTE_SUFFIX):
                    continue
                full = Path(dirpath) / filename
                stat = full.stat()
                notes.append(
                    NoteFile(path=self.relative(full), size=stat.st_size, mtime=stat.st_mtime)
                )
        notes.sort(key=lambda note: note.path)
        return notes

    def get(self, path: str) -> Optional[NoteFile]:
        full = self.resolve(path)
        if not full.is_file():
            return None
        stat = full.stat()
        return NoteFile(path=self.relative(full), size=stat.st_size, mtime=stat.st_mtime)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read(self, path: str) -> str:
        full = self.resolve(path)
        if not full.exists():
            raise FileNotFoundError("file not found")
        if not full.is_file():
            raise IsADirectoryError("not a file")
        return full.read_text(encoding="utf-8")

    def write(self, path: str, content: str) -> NoteFile:
        """Create or overwrite a note, creating parent folders as needed."""
        full = self.resolve(path)
        if full.is_dir():
            raise IsADirectoryError("not a file")
        with self.lock:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content, encoding="utf-8")
        logger.debug("Wrote %s (%d chars)", path, len(content))
        stat = full.stat()
        return NoteFile(path=self.relative(full), size=stat.st_size, mtime=stat.st_mtime)


@dataclass
class HostEnvironment:
    """The vault plus the extensions loaded next to it, keyed by extension id."""

    vault: Vault
    plugins: dict[str, Any] = field(default_factory=dict)

    def plugin(self, *ids: str) -> Any:
        """First loaded plugin among ``ids``, or None."""
        for plugin_id in ids:
            plugin = self.plugins.get(plugin_id)
            if plugin is not None:
                return plugin
        return None

    @classmethod
    def from_path(cls, root: str | os.PathLike, plugin_entries: Optional[list[str]] = None) -> "HostEnvironment":
        plugins = {}
        for entry in plugin_entries or ():
            plugin_id, plugin = load_plugin(entry)
            plugins[plugin_id] = plugin
        return cls(vault=Vault(root), plugins=plugins)


def load_plugin(entry: str) -> tuple[str, Any]:
    """
    Load an extension object from ``"id=package.module:attribute"``.

    Raises:
        ValueError: If the entry is malformed
        ImportError / AttributeError: If the target cannot be found
    """
    plugin_id, sep, target = entry.partition("=")
    module_name, colon, attribute = target.partition(":")
    if not sep or not colon or not plugin_id.strip() or not module_name or not attribute:
        raise ValueError(f"Plugin entry must look like 'id=module:attribute', got {entry!r}")

    module = importlib.import_module(module_name)
    plugin = module
    for part in attribute.split("."):
        plugin = getattr(plugin, part)
    logger.info("Loaded plugin %s from %s", plugin_id, target)
    return plugin_id.strip(), plugin
