"""Static safety classification of every action the agent may invoke."""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from shellpilot.exceptions import ValidationError


class SafetyTier(str, Enum):
    """Blast radius of an action."""

    READ_ONLY = "read_only"
    SAFE_WRITE = "safe_write"
    REQUIRES_CONFIRMATION = "requires_confirmation"

    @property
    def needs_confirmation(self) -> bool:
        return self is not SafetyTier.READ_ONLY


@dataclass(frozen=True)
class SafetyEntry:
    """Catalog entry for one action name."""

    name: str
    tier: SafetyTier
    category: str
    description: str


class SafetyCatalog:
    """Read-only name -> entry mapping, fixed at construction."""

    def __init__(self, entries: list[SafetyEntry]):
        self._entries: Mapping[str, SafetyEntry] = MappingProxyType(
            {entry.name.strip().lower(): entry for entry in entries}
        )

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def validate(self, name: str) -> SafetyEntry:
        """Return the entry for ``name`` or raise ``ValidationError``."""
        entry = self._entries.get(str(name or "").strip().lower())
        if entry is None:
            raise ValidationError(str(name))
        return entry

    def entries(self) -> list[SafetyEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.category, e.name))


_DEFAULT_ENTRIES: tuple[tuple[str, SafetyTier, str, str], ...] = (
    # files
    ("read_file", SafetyTier.READ_ONLY, "files", "Read a text file"),
    ("list_files", SafetyTier.READ_ONLY, "files", "List files matching a glob pattern"),
    ("create_file", SafetyTier.SAFE_WRITE, "files", "Create a new file with content"),
    ("copy_file", SafetyTier.SAFE_WRITE, "files", "Copy a file to a new path"),
    ("move_file", SafetyTier.REQUIRES_CONFIRMATION, "files", "Move or rename a file"),
    ("delete_file", SafetyTier.REQUIRES_CONFIRMATION, "files", "Delete a file (backed up first)"),
    # shell
    ("run_command", SafetyTier.REQUIRES_CONFIRMATION, "shell", "Run a shell command"),
    # web
    ("web_fetch", SafetyTier.READ_ONLY, "web", "Fetch readable text from a URL"),
    ("web_search", SafetyTier.READ_ONLY, "web", "Search the web"),
    # documents
    ("create_document", SafetyTier.SAFE_WRITE, "documents", "Generate a document file"),
    # git
    ("git_status", SafetyTier.READ_ONLY, "git", "Show working tree status"),
    ("git_log", SafetyTier.READ_ONLY, "git", "Show recent commits"),
    ("git_commit", SafetyTier.REQUIRES_CONFIRMATION, "git", "Commit staged changes"),
    ("git_push", SafetyTier.REQUIRES_CONFIRMATION, "git", "Push commits to a remote"),
    # calendar
    ("calendar_list", SafetyTier.READ_ONLY, "calendar", "List upcoming events"),
    ("calendar_add", SafetyTier.SAFE_WRITE, "calendar", "Add a calendar event"),
    # os services
    ("service_status", SafetyTier.READ_ONLY, "services", "Show an OS service status"),
    ("service_restart", SafetyTier.REQUIRES_CONFIRMATION, "services", "Restart an OS service"),
)


def default_catalog() -> SafetyCatalog:
    """Catalog covering built-in and external actions."""
    return SafetyCatalog(
        [
            SafetyEntry(name=name, tier=tier, category=category, description=description)
            for name, tier, category, description in _DEFAULT_ENTRIES
        ]
    )
