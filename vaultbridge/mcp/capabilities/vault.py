"""Core vault capabilities: list, read, search, metadata, write."""

from typing import TYPE_CHECKING

from ..core import Capability

if TYPE_CHECKING:
    from ...vault import Vault


class VaultTools:
    def __init__(self, vault: "Vault"):
        self.vault = vault

    def list_notes(self) -> list[str]:
        """List all markdown note paths in the vault"""
        return [note.path for note in self.vault.markdown_files()]

    def get_note(self, path: str) -> str:
        """
        Return the full markdown content of a note by path

        Args:
            path: Path to the markdown file inside the vault
        """
        return self.vault.read(path)

    def search(self, query: str) -> list[str]:
        """
        Search note paths containing the query substring (case-sensitive) in path or basename

        Args:
            query: Substring to match in file path or basename
        """
        return [
            note.path
            for note in self.vault.markdown_files()
            if query in note.path or query in note.basename
        ]

    def get_file_metadata(self, path: str) -> dict:
        """
        Get basic metadata (path, basename, size) for a markdown file

        Args:
            path: Path to the markdown file
        """
        note = self.vault.get(path)
        if note is None:
            raise FileNotFoundError("file not found")
        return {"path": note.path, "basename": note.basename, "size": note.size}

    def write_note(self, path: str, content: str) -> dict:
        """
        Create or overwrite a markdown note

        Args:
            path: Path of the note inside the vault
            content: Full markdown content to store
        """
        created = not self.vault.exists(path)
        note = self.vault.write(path, content)
        return {"path": note.path, "size": note.size, "created": created}


def capabilities(vault: "Vault") -> list[Capability]:
    tools = VaultTools(vault)
    return [
        Capability.from_function(tools.list_notes, "vault.listNotes"),
        Capability.from_function(tools.get_note, "vault.getNote"),
        Capability.from_function(tools.search, "vault.search"),
        Capability.from_function(tools.get_file_metadata, "vault.getFileMetadata"),
        Capability.from_function(tools.write_note, "vault.writeNote"),
    ]
